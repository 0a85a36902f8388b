"""Operator-side device management that feeds the poll protocol.

These are the collaborator entry points the admin subsystem calls: issue and
rotate device secrets, queue commands, change the active profile, and cancel
commands that were never acknowledged.  Every mutation that a device should
hear about becomes a queued command; every one an operator should see later
becomes a feed-log event.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from feedersync.errors import ApiError
from feedersync.models.devices import CommandType, DeviceSecretRead, LogType
from feedersync.models.base import utc_now
from feedersync.security.device_secrets import SecretEnvelope, SecretHasher, generate_secret
from feedersync.services.storage import DeviceRecord, FeedLogEntry, PostgresStorage

logger = logging.getLogger("feedersync.management")

FALLBACK_PORTION_MS = 1000


class DeviceManagementService:
    def __init__(
        self,
        storage: PostgresStorage,
        envelope: SecretEnvelope,
        hasher: SecretHasher | None = None,
    ) -> None:
        self._storage = storage
        self._envelope = envelope
        self._hasher = hasher or SecretHasher()

    async def _require_device(self, account_id: uuid.UUID, device_id: str) -> DeviceRecord:
        device = await self._storage.find_device(device_id, account_id=account_id)
        if device is None:
            raise ApiError.not_found("device_not_found")
        return device

    # ---------- Secrets ----------

    async def provision_device(
        self, account_id: uuid.UUID, device_id: str, name: str
    ) -> DeviceSecretRead:
        """Create a device and return its secret.  The secret is shown once."""
        device_id = device_id.strip()
        name = name.strip()
        if not device_id:
            raise ApiError.bad_request("device_id_required")
        if not name:
            raise ApiError.bad_request("name_required")

        secret = generate_secret()
        created = await self._storage.create_device(
            account_id,
            device_id,
            name,
            self._hasher.hash(secret),
            self._envelope.encrypt(secret),
        )
        if not created:
            raise ApiError.conflict("device_id_exists")

        logger.info("Device provisioned: %s", device_id)
        return DeviceSecretRead(
            device_id=device_id,
            secret=secret,
            note="Secret is shown once. Store it in firmware config.",
        )

    async def rotate_secret(
        self, account_id: uuid.UUID, device_id: str
    ) -> DeviceSecretRead:
        """Issue a new secret; hash and envelope are replaced in one statement."""
        await self._require_device(account_id, device_id)

        secret = generate_secret()
        await self._storage.rotate_device_secret(
            device_id,
            self._hasher.hash(secret),
            self._envelope.encrypt(secret),
            FeedLogEntry(
                ts=utc_now(),
                type=LogType.SECRET_ROTATED.value,
                message="Secret rotated",
            ),
        )
        logger.info("Device secret rotated: %s", device_id)
        return DeviceSecretRead(
            device_id=device_id,
            secret=secret,
            note="Secret rotated and shown once.",
        )

    # ---------- Commands ----------

    async def enqueue_command(
        self,
        account_id: uuid.UUID,
        device_id: str,
        command_type: CommandType,
        payload: dict[str, Any] | None = None,
    ) -> uuid.UUID:
        await self._require_device(account_id, device_id)
        return await self._storage.enqueue_command(device_id, command_type, payload)

    async def feed_now(
        self,
        account_id: uuid.UUID,
        device_id: str,
        portion_ms: int | None = None,
    ) -> uuid.UUID:
        device = await self._require_device(account_id, device_id)
        if portion_ms is not None and portion_ms <= 0:
            raise ApiError.bad_request("portion_ms_must_be_positive")
        portion = portion_ms or await self._default_portion(device)

        return await self._storage.enqueue_command(
            device_id,
            CommandType.FEED_NOW,
            {"portionMs": portion},
            event=FeedLogEntry(
                ts=utc_now(),
                type=LogType.MANUAL_FEED.value,
                message="Manual feed requested",
                meta={"portionMs": portion},
            ),
        )

    async def set_active_profile(
        self, account_id: uuid.UUID, device_id: str, profile_name: str
    ) -> uuid.UUID:
        await self._require_device(account_id, device_id)
        wanted = profile_name.strip()
        if not wanted:
            raise ApiError.bad_request("profile_name_required")

        profiles = await self._storage.list_profiles(device_id)
        profile = next((p for p in profiles if p.name == wanted), None)
        if profile is None:
            raise ApiError.not_found("profile_not_found")

        return await self._storage.set_active_profile(
            device_id,
            profile,
            FeedLogEntry(
                ts=utc_now(),
                type=LogType.PROFILE_CHANGED.value,
                message=f"Active profile changed to {profile.name}",
            ),
        )

    async def cancel_command(
        self, account_id: uuid.UUID, device_id: str, command_id: uuid.UUID
    ) -> None:
        await self._require_device(account_id, device_id)
        if not await self._storage.fail_command(device_id, command_id):
            raise ApiError.not_found("command_not_cancellable")

    async def list_commands(
        self, account_id: uuid.UUID, device_id: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        await self._require_device(account_id, device_id)
        return await self._storage.list_commands(device_id, limit)

    async def _default_portion(self, device: DeviceRecord) -> int:
        """Active profile's default, else the first profile's, else 1000 ms."""
        profiles = await self._storage.list_profiles(device.device_id)
        if device.active_profile_id is not None:
            for p in profiles:
                if p.profile_id == device.active_profile_id:
                    return p.default_portion_ms
        if profiles:
            return profiles[0].default_portion_ms
        return FALLBACK_PORTION_MS
