"""Device, profile, schedule and feed-log persistence.

``PostgresStorage`` is the only place that knows the table layout outside the
command queue and nonce registry.  The poll path writes through
:meth:`PostgresStorage.poll_transaction`, which keeps the status update, log
ingestion, acknowledgments and command claim in one transaction.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncContextManager, AsyncGenerator, Callable, Iterable

import asyncpg

from feedersync.models.devices import CommandType
from feedersync.services.command_queue import ClaimedCommand, CommandQueue
from feedersync.services.postgres import get_connection

logger = logging.getLogger("feedersync.storage")

ConnectionFactory = Callable[[], AsyncContextManager[asyncpg.Connection]]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeviceRecord:
    device_id: str
    account_id: uuid.UUID
    name: str
    secret_hash: str
    encrypted_secret: bytes
    last_seen_at: datetime | None = None
    last_status: dict[str, Any] | None = None
    firmware_version: str | None = None
    active_profile_id: uuid.UUID | None = None


@dataclass(frozen=True)
class ProfileRecord:
    profile_id: uuid.UUID
    device_id: str
    name: str
    default_portion_ms: int


@dataclass(frozen=True)
class ScheduleRecord:
    profile_name: str
    hh: int
    mm: int
    portion_ms: int


@dataclass(frozen=True)
class FeedLogEntry:
    """One append-only feed/event log row."""

    ts: datetime
    type: str
    message: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigSnapshot:
    """Authoritative device configuration sent on every poll."""

    active_profile: str | None
    profiles: list[ProfileRecord]
    schedule: list[ScheduleRecord]


# ---------------------------------------------------------------------------
# Poll unit of work
# ---------------------------------------------------------------------------


class PollTransaction:
    """Writes of a single poll, bound to one connection and transaction."""

    def __init__(self, conn: asyncpg.Connection, queue: CommandQueue) -> None:
        self._conn = conn
        self._queue = queue

    async def update_status(
        self,
        device_id: str,
        seen_at: datetime,
        status: dict[str, Any],
        firmware_version: str | None,
    ) -> None:
        """Last write wins; earlier snapshots survive only in the logs."""
        await self._conn.execute(
            """
            UPDATE devices
            SET last_seen_at = $2, last_status = $3, firmware_version = $4
            WHERE device_id = $1
            """,
            device_id,
            seen_at,
            status,
            firmware_version,
        )

    async def insert_logs(self, device_id: str, entries: list[FeedLogEntry]) -> None:
        if not entries:
            return
        await self._conn.executemany(
            """
            INSERT INTO feed_logs (log_id, device_id, ts, type, message, meta)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            [
                (uuid.uuid4(), device_id, e.ts, e.type, e.message, e.meta)
                for e in entries
            ],
        )

    async def ack_commands(self, device_id: str, raw_ids: Iterable[str]) -> int:
        return await self._queue.ack(self._conn, device_id, raw_ids)

    async def claim_commands(self, device_id: str) -> list[ClaimedCommand]:
        return await self._queue.claim(self._conn, device_id)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def _device_from_row(row: asyncpg.Record) -> DeviceRecord:
    return DeviceRecord(
        device_id=row["device_id"],
        account_id=row["account_id"],
        name=row["name"],
        secret_hash=row["secret_hash"],
        encrypted_secret=bytes(row["encrypted_secret"]),
        last_seen_at=row["last_seen_at"],
        last_status=row["last_status"],
        firmware_version=row["firmware_version"],
        active_profile_id=row["active_profile_id"],
    )


def _profile_from_row(row: asyncpg.Record) -> ProfileRecord:
    return ProfileRecord(
        profile_id=row["profile_id"],
        device_id=row["device_id"],
        name=row["name"],
        default_portion_ms=row["default_portion_ms"],
    )


class PostgresStorage:
    """Store operations used by the poll path and management service."""

    def __init__(
        self,
        queue: CommandQueue | None = None,
        connect: ConnectionFactory = get_connection,
    ) -> None:
        self._queue = queue or CommandQueue()
        self._connect = connect

    # ---------- Devices ----------

    async def find_device(
        self, device_id: str, account_id: uuid.UUID | None = None
    ) -> DeviceRecord | None:
        """Look a device up by id, optionally scoped to its owning account."""
        query = """
            SELECT device_id, account_id, name, secret_hash, encrypted_secret,
                   last_seen_at, last_status, firmware_version, active_profile_id
            FROM devices
            WHERE device_id = $1
        """
        args: list[Any] = [device_id]
        if account_id is not None:
            query += " AND account_id = $2"
            args.append(account_id)
        async with self._connect() as conn:
            row = await conn.fetchrow(query, *args)
        return _device_from_row(row) if row else None

    async def create_device(
        self,
        account_id: uuid.UUID,
        device_id: str,
        name: str,
        secret_hash: str,
        encrypted_secret: bytes,
    ) -> bool:
        """Insert a device; False when the id is already taken."""
        async with self._connect() as conn:
            created = await conn.fetchval(
                """
                INSERT INTO devices (device_id, account_id, name, secret_hash, encrypted_secret)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (device_id) DO NOTHING
                RETURNING TRUE
                """,
                device_id,
                account_id,
                name,
                secret_hash,
                encrypted_secret,
            )
        return bool(created)

    async def rotate_device_secret(
        self,
        device_id: str,
        secret_hash: str,
        encrypted_secret: bytes,
        event: FeedLogEntry,
    ) -> None:
        """Replace hash and envelope together, with the audit log entry."""
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE devices
                SET secret_hash = $2, encrypted_secret = $3
                WHERE device_id = $1
                """,
                device_id,
                secret_hash,
                encrypted_secret,
            )
            await self._insert_log(conn, device_id, event)

    # ---------- Poll ----------

    @asynccontextmanager
    async def poll_transaction(self) -> AsyncGenerator[PollTransaction, None]:
        async with self._connect() as conn:
            yield PollTransaction(conn, self._queue)

    async def get_config_snapshot(self, device_id: str) -> ConfigSnapshot:
        async with self._connect() as conn:
            active = await conn.fetchval(
                """
                SELECT p.name
                FROM devices d
                JOIN profiles p ON p.profile_id = d.active_profile_id
                WHERE d.device_id = $1
                """,
                device_id,
            )
            profile_rows = await conn.fetch(
                """
                SELECT profile_id, device_id, name, default_portion_ms
                FROM profiles
                WHERE device_id = $1
                ORDER BY created_at ASC, name ASC
                """,
                device_id,
            )
            schedule_rows = await conn.fetch(
                """
                SELECT p.name AS profile_name, s.hh, s.mm, s.portion_ms
                FROM schedule_events s
                JOIN profiles p ON p.profile_id = s.profile_id
                WHERE p.device_id = $1
                ORDER BY p.name ASC, s.hh ASC, s.mm ASC
                """,
                device_id,
            )
        return ConfigSnapshot(
            active_profile=active,
            profiles=[_profile_from_row(r) for r in profile_rows],
            schedule=[
                ScheduleRecord(
                    profile_name=r["profile_name"],
                    hh=r["hh"],
                    mm=r["mm"],
                    portion_ms=r["portion_ms"],
                )
                for r in schedule_rows
            ],
        )

    # ---------- Profiles ----------

    async def list_profiles(self, device_id: str) -> list[ProfileRecord]:
        async with self._connect() as conn:
            rows = await conn.fetch(
                """
                SELECT profile_id, device_id, name, default_portion_ms
                FROM profiles
                WHERE device_id = $1
                ORDER BY created_at ASC, name ASC
                """,
                device_id,
            )
        return [_profile_from_row(r) for r in rows]

    async def set_active_profile(
        self,
        device_id: str,
        profile: ProfileRecord,
        event: FeedLogEntry,
    ) -> uuid.UUID:
        """Point the device at ``profile`` and queue SET_PROFILE, atomically."""
        async with self._connect() as conn:
            await conn.execute(
                "UPDATE devices SET active_profile_id = $2 WHERE device_id = $1",
                device_id,
                profile.profile_id,
            )
            command_id = await self._queue.enqueue(
                conn,
                device_id,
                CommandType.SET_PROFILE,
                {"profileName": profile.name},
            )
            await self._insert_log(conn, device_id, event)
        return command_id

    # ---------- Commands & logs ----------

    async def enqueue_command(
        self,
        device_id: str,
        command_type: CommandType | str,
        payload: dict[str, Any] | None = None,
        event: FeedLogEntry | None = None,
    ) -> uuid.UUID:
        async with self._connect() as conn:
            command_id = await self._queue.enqueue(conn, device_id, command_type, payload)
            if event is not None:
                await self._insert_log(conn, device_id, event)
        return command_id

    async def fail_command(self, device_id: str, command_id: uuid.UUID) -> bool:
        async with self._connect() as conn:
            return await self._queue.fail(conn, device_id, command_id)

    async def list_commands(self, device_id: str, limit: int = 50) -> list[dict[str, Any]]:
        async with self._connect() as conn:
            return await self._queue.list_recent(conn, device_id, limit)

    @staticmethod
    async def _insert_log(
        conn: asyncpg.Connection, device_id: str, entry: FeedLogEntry
    ) -> None:
        await conn.execute(
            """
            INSERT INTO feed_logs (log_id, device_id, ts, type, message, meta)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            uuid.uuid4(),
            device_id,
            entry.ts,
            entry.type,
            entry.message,
            entry.meta,
        )
