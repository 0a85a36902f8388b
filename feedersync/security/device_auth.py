"""Device authentication for the poll protocol.

Two strategies share one interface and are selected once at startup from
``DEVICE_SIGNATURE_ENABLED``:

* :class:`PermissiveDeviceAuthenticator`: bootstrap/demo mode.  No header,
  nonce or signature checks; the caller has already resolved the device.
* :class:`EnforcingDeviceAuthenticator`: runs the full check sequence and
  raises :class:`~feedersync.errors.ApiError` on the first failure:

  1. ``X-Device-Id`` equals the body ``deviceId``   → ``invalid_device_header``
  2. ``X-Nonce`` / ``X-Sign`` present                → ``nonce_required`` / ``signature_required``
  3. ``|now - ts| <= window``                        → ``timestamp_out_of_window``
  4. purge stale nonces, register this one           → ``replay_detected``
  5. decrypted secret hashes to the stored hash      → ``secret_integrity_check_failed``
  6. HMAC of the raw body matches ``X-Sign``         → ``invalid_signature``

The nonce is registered before the signature is checked: a request that fails
verification still consumes its nonce.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from feedersync.config import Settings
from feedersync.errors import ApiError
from feedersync.security import signing
from feedersync.security.device_secrets import SecretHasher

logger = logging.getLogger("feedersync.auth")


class NonceRegistry(Protocol):
    async def purge_older_than(self, min_ts: int) -> None: ...

    async def register_nonce(self, device_id: str, nonce: str, ts: int) -> bool: ...


@dataclass(frozen=True)
class DeviceCredentials:
    """What the authenticator needs to know about the polling device."""

    device_id: str
    secret_hash: str
    secret: str


@dataclass(frozen=True)
class PollHeaders:
    device_id: str | None = None
    nonce: str | None = None
    signature: str | None = None


class DeviceAuthenticator(Protocol):
    signature_enabled: bool

    async def authenticate(
        self,
        credentials: DeviceCredentials,
        headers: PollHeaders,
        request_ts: int,
        body: bytes,
    ) -> None: ...


class PermissiveDeviceAuthenticator:
    """Accepts every poll for a known device."""

    signature_enabled = False

    async def authenticate(
        self,
        credentials: DeviceCredentials,
        headers: PollHeaders,
        request_ts: int,
        body: bytes,
    ) -> None:
        return None


class EnforcingDeviceAuthenticator:
    """Header, timestamp-window, replay, integrity and HMAC checks."""

    signature_enabled = True

    def __init__(
        self,
        nonces: NonceRegistry,
        window_seconds: int,
        hasher: SecretHasher | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._nonces = nonces
        self._window = window_seconds
        self._hasher = hasher or SecretHasher()
        self._clock = clock

    async def authenticate(
        self,
        credentials: DeviceCredentials,
        headers: PollHeaders,
        request_ts: int,
        body: bytes,
    ) -> None:
        device_id = credentials.device_id

        header_device_id = (headers.device_id or "").strip()
        if not header_device_id or header_device_id != device_id:
            raise self._reject(ApiError.unauthorized("invalid_device_header"), device_id)
        if not headers.nonce or not headers.nonce.strip():
            raise self._reject(ApiError.unauthorized("nonce_required"), device_id)
        if not headers.signature or not headers.signature.strip():
            raise self._reject(ApiError.unauthorized("signature_required"), device_id)

        now = int(self._clock())
        if abs(now - request_ts) > self._window:
            raise self._reject(ApiError.forbidden("timestamp_out_of_window"), device_id)

        await self._nonces.purge_older_than(now - self._window)
        if not await self._nonces.register_nonce(device_id, headers.nonce.strip(), request_ts):
            raise self._reject(ApiError.forbidden("replay_detected"), device_id)

        if not self._hasher.matches(credentials.secret, credentials.secret_hash):
            raise self._reject(
                ApiError.forbidden("secret_integrity_check_failed"), device_id
            )

        if not signing.verify(body, credentials.secret, headers.signature):
            raise self._reject(ApiError.forbidden("invalid_signature"), device_id)

    @staticmethod
    def _reject(error: ApiError, device_id: str) -> ApiError:
        logger.warning("Device auth rejected: device=%s code=%s", device_id, error.code)
        return error


def build_authenticator(
    settings: Settings,
    nonces: NonceRegistry,
    clock: Callable[[], float] = time.time,
) -> DeviceAuthenticator:
    """Pick the authentication strategy for the lifetime of the process."""
    if settings.device_signature_enabled:
        logger.info(
            "Device signature enforcement ON (nonce window %ds)",
            settings.nonce_window_sec,
        )
        return EnforcingDeviceAuthenticator(
            nonces, settings.nonce_window_sec, clock=clock
        )
    logger.warning("Device signature enforcement OFF, polls are not authenticated")
    return PermissiveDeviceAuthenticator()
