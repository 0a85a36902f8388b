"""Poll orchestration: the single entry point of the device protocol.

A poll runs these steps, each with a distinct failure code:

1. ``deviceId`` present in the body             → 400 ``device_id_required``
2. per-device rate limit                         → 429 ``poll_rate_limit_exceeded``
3. device exists                                 → 401 ``unknown_device``
4. decrypt the stored secret and authenticate    → see ``security.device_auth``
5. store last-seen + status snapshot  ┐
6. ingest device logs                 │ one transaction
7. acknowledge reported command ids   │
8. claim up to N due commands         ┘
9. answer with commands + a full configuration snapshot

Steps 1-4 never mutate anything but the nonce table.  Steps 5-8 commit or
roll back together.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from feedersync.errors import ApiError
from feedersync.models.poll import (
    PollCommand,
    PollConfig,
    PollLogItem,
    PollRequest,
    PollResponse,
    ProfileConfig,
    ScheduleConfig,
)
from feedersync.security.device_auth import (
    DeviceAuthenticator,
    DeviceCredentials,
    PollHeaders,
)
from feedersync.security.device_secrets import SecretEnvelope
from feedersync.services.rate_limiter import PollRateLimiter
from feedersync.services.storage import ConfigSnapshot, DeviceRecord, FeedLogEntry

logger = logging.getLogger("feedersync.poll")

DEFAULT_LOG_TYPE = "INFO"


class PollStore(Protocol):
    async def find_device(self, device_id: str) -> DeviceRecord | None: ...

    def poll_transaction(self) -> Any: ...

    async def get_config_snapshot(self, device_id: str) -> ConfigSnapshot: ...


def normalize_log_type(value: str | None) -> str:
    if value is None or not value.strip():
        return DEFAULT_LOG_TYPE
    return value.strip().upper()


def to_feed_log(item: PollLogItem, now: datetime) -> FeedLogEntry:
    """Map a device-reported log item; ``ts <= 0`` means "use server time".

    A timestamp outside the representable range (typically milliseconds sent
    as seconds) is also replaced by server time.
    """
    ts = now
    if item.ts > 0:
        try:
            ts = datetime.fromtimestamp(item.ts, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.warning("Device log ts out of range, using server time: ts=%s", item.ts)
    return FeedLogEntry(
        ts=ts,
        type=normalize_log_type(item.type),
        message=item.msg or "",
        meta=item.meta or {},
    )


class PollService:
    """Authenticates a poll, ingests what the device reported, returns work."""

    def __init__(
        self,
        store: PollStore,
        authenticator: DeviceAuthenticator,
        envelope: SecretEnvelope,
        rate_limiter: PollRateLimiter,
        poll_interval_sec: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._authenticator = authenticator
        self._envelope = envelope
        self._rate_limiter = rate_limiter
        self._poll_interval_sec = poll_interval_sec
        self._clock = clock

    async def handle_poll(
        self,
        raw_body: bytes,
        request: PollRequest,
        headers: PollHeaders,
    ) -> PollResponse:
        if request.device_id is None or not request.device_id.strip():
            raise ApiError.bad_request("device_id_required")
        device_id = request.device_id.strip()

        if not self._rate_limiter.allow(device_id):
            logger.warning("Poll rate limit exceeded: device=%s", device_id)
            raise ApiError.too_many_requests("poll_rate_limit_exceeded")

        device = await self._store.find_device(device_id)
        if device is None:
            logger.warning("Poll from unknown device id=%s", device_id)
            raise ApiError.unauthorized("unknown_device")

        secret = self._envelope.decrypt(device.encrypted_secret)
        await self._authenticator.authenticate(
            DeviceCredentials(
                device_id=device_id,
                secret_hash=device.secret_hash,
                secret=secret,
            ),
            headers,
            request.ts,
            raw_body,
        )

        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        status = request.status.model_dump(by_alias=True) if request.status else {}
        firmware = request.status.fw if request.status else None
        logs = [to_feed_log(item, now) for item in request.log]

        async with self._store.poll_transaction() as tx:
            await tx.update_status(device_id, now, status, firmware)
            await tx.insert_logs(device_id, logs)
            acked = await tx.ack_commands(device_id, request.ack) if request.ack else 0
            claimed = await tx.claim_commands(device_id)

        snapshot = await self._store.get_config_snapshot(device_id)

        logger.info(
            "Poll ok: device=%s logs=%d acked=%d commands=%d",
            device_id,
            len(logs),
            acked,
            len(claimed),
        )
        return PollResponse(
            server_time=int(self._clock()),
            interval_sec=self._poll_interval_sec,
            commands=[
                PollCommand(
                    id=str(c.command_id),
                    command_type=c.command_type,
                    payload_json=c.payload,
                )
                for c in claimed
            ],
            config=_config_from_snapshot(snapshot),
        )


def _config_from_snapshot(snapshot: ConfigSnapshot) -> PollConfig:
    return PollConfig(
        active_profile=snapshot.active_profile,
        profiles=[
            ProfileConfig(name=p.name, default_portion_ms=p.default_portion_ms)
            for p in snapshot.profiles
        ],
        schedule=[
            ScheduleConfig(
                profile_name=s.profile_name,
                hh=s.hh,
                mm=s.mm,
                portion_ms=s.portion_ms,
            )
            for s in snapshot.schedule
        ],
    )
