"""In-memory doubles for the store, nonce registry and asyncpg connections.

``InMemoryStore`` mirrors ``PostgresStorage`` closely enough to drive the
poll and management services end to end: the poll transaction is
all-or-nothing, and claiming skips rows another claimer is holding, the way
``FOR UPDATE SKIP LOCKED`` behaves.  ``CommandTable`` hands out connections
that model row locks, so the real ``CommandQueue`` SQL path can be driven by
concurrent claimers.
"""

from __future__ import annotations

import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Iterable

from feedersync.models.devices import CommandStatus, CommandType
from feedersync.services.command_queue import ClaimedCommand, parse_ack_ids
from feedersync.services.storage import (
    ConfigSnapshot,
    DeviceRecord,
    FeedLogEntry,
    ProfileRecord,
    ScheduleRecord,
)

TEST_ACCOUNT_ID = uuid.UUID("12345678-1234-5678-1234-567812345678")
OTHER_ACCOUNT_ID = uuid.UUID("87654321-4321-8765-4321-876543218765")


# ---------------------------------------------------------------------------
# Nonce registry
# ---------------------------------------------------------------------------


class InMemoryNonceRegistry:
    def __init__(self) -> None:
        self.nonces: dict[tuple[str, str], int] = {}
        self.purges: list[int] = []

    async def purge_older_than(self, min_ts: int) -> None:
        self.purges.append(min_ts)
        self.nonces = {k: ts for k, ts in self.nonces.items() if ts >= min_ts}

    async def register_nonce(self, device_id: str, nonce: str, ts: int) -> bool:
        key = (device_id, nonce)
        if key in self.nonces:
            return False
        self.nonces[key] = ts
        return True


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass
class StoredCommand:
    command_id: uuid.UUID
    device_id: str
    command_type: str
    payload: dict[str, Any]
    status: str
    created_at: datetime
    seq: int
    sent_at: datetime | None = None
    acked_at: datetime | None = None


@dataclass
class _State:
    devices: dict[str, DeviceRecord] = field(default_factory=dict)
    commands: dict[uuid.UUID, StoredCommand] = field(default_factory=dict)
    logs: list[tuple[str, FeedLogEntry]] = field(default_factory=list)


class InMemoryPollTransaction:
    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    async def update_status(
        self,
        device_id: str,
        seen_at: datetime,
        status: dict[str, Any],
        firmware_version: str | None,
    ) -> None:
        state = self._store.state
        device = state.devices[device_id]
        state.devices[device_id] = replace(
            device,
            last_seen_at=seen_at,
            last_status=status,
            firmware_version=firmware_version,
        )

    async def insert_logs(self, device_id: str, entries: list[FeedLogEntry]) -> None:
        if self._store.fail_log_insert:
            raise RuntimeError("simulated log insert failure")
        for entry in entries:
            self._store.state.logs.append((device_id, entry))

    async def ack_commands(self, device_id: str, raw_ids: Iterable[str]) -> int:
        return self._store.ack(device_id, raw_ids)

    async def claim_commands(self, device_id: str) -> list[ClaimedCommand]:
        return await self._store.claim(device_id)


class InMemoryStore:
    def __init__(self, batch_size: int = 10, redeliver_unacked: bool = True) -> None:
        self.state = _State()
        self.profiles: dict[str, list[ProfileRecord]] = {}
        self.schedule: dict[str, list[ScheduleRecord]] = {}
        self.batch_size = batch_size
        self.redeliver_unacked = redeliver_unacked
        self.fail_log_insert = False
        self._locked: set[uuid.UUID] = set()
        self._seq = 0

    # ---------- Seeding ----------

    def add_device(
        self,
        device_id: str,
        secret_hash: str,
        encrypted_secret: bytes,
        account_id: uuid.UUID = TEST_ACCOUNT_ID,
        name: str = "Kitchen feeder",
    ) -> DeviceRecord:
        record = DeviceRecord(
            device_id=device_id,
            account_id=account_id,
            name=name,
            secret_hash=secret_hash,
            encrypted_secret=encrypted_secret,
        )
        self.state.devices[device_id] = record
        return record

    def add_profile(self, device_id: str, name: str, default_portion_ms: int) -> ProfileRecord:
        profile = ProfileRecord(
            profile_id=uuid.uuid4(),
            device_id=device_id,
            name=name,
            default_portion_ms=default_portion_ms,
        )
        self.profiles.setdefault(device_id, []).append(profile)
        return profile

    def add_schedule(self, device_id: str, profile_name: str, hh: int, mm: int, portion_ms: int) -> None:
        self.schedule.setdefault(device_id, []).append(
            ScheduleRecord(profile_name=profile_name, hh=hh, mm=mm, portion_ms=portion_ms)
        )

    def activate(self, device_id: str, profile: ProfileRecord) -> None:
        device = self.state.devices[device_id]
        self.state.devices[device_id] = replace(device, active_profile_id=profile.profile_id)

    def commands_for(self, device_id: str) -> list[StoredCommand]:
        rows = [c for c in self.state.commands.values() if c.device_id == device_id]
        return sorted(rows, key=lambda c: c.seq)

    def logs_for(self, device_id: str) -> list[FeedLogEntry]:
        return [entry for d, entry in self.state.logs if d == device_id]

    # ---------- Devices ----------

    async def find_device(
        self, device_id: str, account_id: uuid.UUID | None = None
    ) -> DeviceRecord | None:
        device = self.state.devices.get(device_id)
        if device is None:
            return None
        if account_id is not None and device.account_id != account_id:
            return None
        return device

    async def create_device(
        self,
        account_id: uuid.UUID,
        device_id: str,
        name: str,
        secret_hash: str,
        encrypted_secret: bytes,
    ) -> bool:
        if device_id in self.state.devices:
            return False
        self.add_device(device_id, secret_hash, encrypted_secret, account_id, name)
        return True

    async def rotate_device_secret(
        self,
        device_id: str,
        secret_hash: str,
        encrypted_secret: bytes,
        event: FeedLogEntry,
    ) -> None:
        device = self.state.devices[device_id]
        self.state.devices[device_id] = replace(
            device, secret_hash=secret_hash, encrypted_secret=encrypted_secret
        )
        self.state.logs.append((device_id, event))

    # ---------- Poll ----------

    @asynccontextmanager
    async def poll_transaction(self) -> AsyncGenerator[InMemoryPollTransaction, None]:
        snapshot = copy.deepcopy(self.state)
        try:
            yield InMemoryPollTransaction(self)
        except BaseException:
            self.state = snapshot
            raise

    async def get_config_snapshot(self, device_id: str) -> ConfigSnapshot:
        device = self.state.devices[device_id]
        profiles = self.profiles.get(device_id, [])
        active = next(
            (p.name for p in profiles if p.profile_id == device.active_profile_id), None
        )
        return ConfigSnapshot(
            active_profile=active,
            profiles=list(profiles),
            schedule=list(self.schedule.get(device_id, [])),
        )

    # ---------- Profiles ----------

    async def list_profiles(self, device_id: str) -> list[ProfileRecord]:
        return list(self.profiles.get(device_id, []))

    async def set_active_profile(
        self, device_id: str, profile: ProfileRecord, event: FeedLogEntry
    ) -> uuid.UUID:
        self.activate(device_id, profile)
        command_id = self._enqueue(device_id, CommandType.SET_PROFILE, {"profileName": profile.name})
        self.state.logs.append((device_id, event))
        return command_id

    # ---------- Commands ----------

    def _enqueue(
        self, device_id: str, command_type: CommandType | str, payload: dict[str, Any] | None
    ) -> uuid.UUID:
        self._seq += 1
        command = StoredCommand(
            command_id=uuid.uuid4(),
            device_id=device_id,
            command_type=CommandType(command_type).value,
            payload=payload or {},
            status=CommandStatus.PENDING.value,
            created_at=datetime.now(timezone.utc),
            seq=self._seq,
        )
        self.state.commands[command.command_id] = command
        return command.command_id

    async def enqueue_command(
        self,
        device_id: str,
        command_type: CommandType | str,
        payload: dict[str, Any] | None = None,
        event: FeedLogEntry | None = None,
    ) -> uuid.UUID:
        command_id = self._enqueue(device_id, command_type, payload)
        if event is not None:
            self.state.logs.append((device_id, event))
        return command_id

    async def claim(self, device_id: str) -> list[ClaimedCommand]:
        claimable = {CommandStatus.PENDING.value}
        if self.redeliver_unacked:
            claimable.add(CommandStatus.SENT.value)
        due = [
            c
            for c in self.commands_for(device_id)
            if c.status in claimable and c.command_id not in self._locked
        ][: self.batch_size]
        ids = {c.command_id for c in due}
        self._locked |= ids
        try:
            # let concurrent claimers interleave between select and update
            await asyncio.sleep(0)
            now = datetime.now(timezone.utc)
            for c in due:
                c.status = CommandStatus.SENT.value
                c.sent_at = now
        finally:
            self._locked -= ids
        return [
            ClaimedCommand(command_id=c.command_id, command_type=c.command_type, payload=c.payload)
            for c in due
        ]

    def ack(self, device_id: str, raw_ids: Iterable[str]) -> int:
        count = 0
        for command_id in parse_ack_ids(raw_ids):
            command = self.state.commands.get(command_id)
            if command is None or command.device_id != device_id:
                continue
            if command.status in (CommandStatus.PENDING.value, CommandStatus.SENT.value):
                command.status = CommandStatus.ACKED.value
                command.acked_at = datetime.now(timezone.utc)
                count += 1
        return count

    async def fail_command(self, device_id: str, command_id: uuid.UUID) -> bool:
        command = self.state.commands.get(command_id)
        if command is None or command.device_id != device_id:
            return False
        if command.status not in (CommandStatus.PENDING.value, CommandStatus.SENT.value):
            return False
        command.status = CommandStatus.FAILED.value
        return True

    async def list_commands(self, device_id: str, limit: int = 50) -> list[dict[str, Any]]:
        rows = list(reversed(self.commands_for(device_id)))[:limit]
        return [
            {
                "command_id": c.command_id,
                "device_id": c.device_id,
                "command_type": c.command_type,
                "payload": c.payload,
                "status": c.status,
                "created_at": c.created_at,
                "sent_at": c.sent_at,
                "acked_at": c.acked_at,
            }
            for c in rows
        ]


# ---------------------------------------------------------------------------
# asyncpg connection double
# ---------------------------------------------------------------------------


class RecordingConnection:
    """Records every statement and the outcome of every transaction block.

    Results are served from per-method queues; ``fail_on`` makes any
    statement containing that text raise.
    """

    def __init__(
        self,
        fetch_results: list[list[dict[str, Any]]] | None = None,
        fetchval_results: list[Any] | None = None,
        execute_results: list[str] | None = None,
        fail_on: str | None = None,
    ) -> None:
        self.calls: list[tuple[str, str, tuple[Any, ...]]] = []
        self.transactions: list[str] = []
        self._fetch_results = list(fetch_results or [])
        self._fetchval_results = list(fetchval_results or [])
        self._execute_results = list(execute_results or [])
        self._fail_on = fail_on

    def _record(self, method: str, query: str, args: tuple[Any, ...]) -> None:
        self.calls.append((method, " ".join(query.split()), args))
        if self._fail_on and self._fail_on in query:
            raise RuntimeError(f"simulated failure on {self._fail_on}")

    def queries(self) -> list[str]:
        return [q for _, q, _ in self.calls]

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        self.transactions.append("begin")
        try:
            yield
        except BaseException:
            self.transactions.append("rollback")
            raise
        self.transactions.append("commit")

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        self._record("fetch", query, args)
        return self._fetch_results.pop(0) if self._fetch_results else []

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        self._record("fetchrow", query, args)
        rows = self._fetch_results.pop(0) if self._fetch_results else []
        return rows[0] if rows else None

    async def fetchval(self, query: str, *args: Any) -> Any:
        self._record("fetchval", query, args)
        return self._fetchval_results.pop(0) if self._fetchval_results else None

    async def execute(self, query: str, *args: Any) -> str:
        self._record("execute", query, args)
        return self._execute_results.pop(0) if self._execute_results else "UPDATE 0"

    async def executemany(self, query: str, args: list[tuple[Any, ...]]) -> None:
        self._record("executemany", query, tuple(args))


def connection_factory(conn: RecordingConnection):
    """A ``get_connection`` stand-in that always hands out ``conn`` in a transaction."""

    @asynccontextmanager
    async def connect() -> AsyncGenerator[RecordingConnection, None]:
        async with conn.transaction():
            yield conn

    return connect


# ---------------------------------------------------------------------------
# Row-locking command table
# ---------------------------------------------------------------------------


class CommandTable:
    """``devices`` + ``command_queue`` rows shared by many :class:`LockingConnection`.

    Row locks follow PostgreSQL: a ``FOR UPDATE SKIP LOCKED`` select skips
    rows another connection holds and locks the rest until that connection's
    outermost transaction ends.  ``events`` records ``(kind, conn, block, id)``
    for every lock taken and every row marked SENT, where ``block`` is the
    transaction block open at the time.
    """

    def __init__(self) -> None:
        self.devices: dict[str, dict[str, Any]] = {}
        self.rows: dict[uuid.UUID, StoredCommand] = {}
        self.locks: dict[uuid.UUID, int] = {}
        self.events: list[tuple[str, int, int, uuid.UUID]] = []
        self._seq = 0
        self._conn_ids = 0
        self._block_ids = 0

    def add_device(self, device_id: str, encrypted_secret: bytes) -> None:
        self.devices[device_id] = {
            "device_id": device_id,
            "account_id": TEST_ACCOUNT_ID,
            "name": "Kitchen feeder",
            "secret_hash": "h",
            "encrypted_secret": encrypted_secret,
            "last_seen_at": None,
            "last_status": None,
            "firmware_version": None,
            "active_profile_id": None,
        }

    def add_command(self, device_id: str, command_type: str = "PING") -> uuid.UUID:
        self._seq += 1
        command = StoredCommand(
            command_id=uuid.uuid4(),
            device_id=device_id,
            command_type=command_type,
            payload={},
            status=CommandStatus.PENDING.value,
            created_at=datetime.now(timezone.utc),
            seq=self._seq,
        )
        self.rows[command.command_id] = command
        return command.command_id

    def statuses(self) -> dict[uuid.UUID, str]:
        return {cid: c.status for cid, c in self.rows.items()}

    def next_block(self) -> int:
        self._block_ids += 1
        return self._block_ids

    def open(self) -> LockingConnection:
        self._conn_ids += 1
        return LockingConnection(self, self._conn_ids)

    @asynccontextmanager
    async def connect(self) -> AsyncGenerator[LockingConnection, None]:
        """``get_connection`` stand-in: a fresh connection inside a transaction."""
        conn = self.open()
        async with conn.transaction():
            yield conn


class LockingConnection:
    def __init__(self, table: CommandTable, conn_id: int) -> None:
        self.table = table
        self.conn_id = conn_id
        self._blocks: list[int] = []
        self._undo: list[tuple[uuid.UUID, str]] = []

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[None, None]:
        self._blocks.append(self.table.next_block())
        try:
            yield
        except BaseException:
            self._blocks.pop()
            if not self._blocks:
                self._finish(rollback=True)
            raise
        self._blocks.pop()
        if not self._blocks:
            self._finish(rollback=False)

    def _finish(self, rollback: bool) -> None:
        if rollback:
            for command_id, status in reversed(self._undo):
                self.table.rows[command_id].status = status
        self._undo.clear()
        self.table.locks = {
            cid: owner for cid, owner in self.table.locks.items() if owner != self.conn_id
        }

    def _set_status(self, command_id: uuid.UUID, status: str) -> None:
        row = self.table.rows[command_id]
        self._undo.append((command_id, row.status))
        row.status = status

    def _held_elsewhere(self, command_id: uuid.UUID) -> bool:
        return self.table.locks.get(command_id, self.conn_id) != self.conn_id

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        q = " ".join(query.split())
        if "FROM command_queue" not in q or "FOR UPDATE SKIP LOCKED" not in q:
            return []
        if not self._blocks:
            raise AssertionError("row locks taken outside a transaction")
        device_id, claimable, limit = args
        due = [
            c
            for c in sorted(self.table.rows.values(), key=lambda c: c.seq)
            if c.device_id == device_id
            and c.status in claimable
            and not self._held_elsewhere(c.command_id)
        ][:limit]
        for c in due:
            self.table.locks[c.command_id] = self.conn_id
            self.table.events.append(("lock", self.conn_id, self._blocks[-1], c.command_id))
        # other pollers run between the select and the update
        await asyncio.sleep(0)
        return [
            {"command_id": c.command_id, "command_type": c.command_type, "payload": c.payload}
            for c in due
        ]

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        if "FROM devices" in query:
            return self.table.devices.get(args[0])
        return None

    async def fetchval(self, query: str, *args: Any) -> Any:
        return None

    async def execute(self, query: str, *args: Any) -> str:
        q = " ".join(query.split())
        await asyncio.sleep(0)
        if "SET status = 'SENT'" in q:
            (ids,) = args
            for command_id in ids:
                if self.table.locks.get(command_id) != self.conn_id:
                    raise AssertionError(f"marked {command_id} SENT without holding its lock")
                self._set_status(command_id, CommandStatus.SENT.value)
                self.table.events.append(("sent", self.conn_id, self._blocks[-1], command_id))
            return f"UPDATE {len(ids)}"
        if "SET status = 'ACKED'" in q:
            device_id, ids = args
            moved = 0
            for command_id in ids:
                row = self.table.rows.get(command_id)
                if row is None or row.device_id != device_id:
                    continue
                if self._held_elsewhere(command_id):
                    raise AssertionError(f"ack of {command_id} would block on another poll")
                if row.status in (CommandStatus.PENDING.value, CommandStatus.SENT.value):
                    self._set_status(command_id, CommandStatus.ACKED.value)
                    moved += 1
            return f"UPDATE {moved}"
        return "UPDATE 1"

    async def executemany(self, query: str, args: list[tuple[Any, ...]]) -> None:
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Shared constants
# ---------------------------------------------------------------------------

# base64 of b"0123456789abcdef0123456789abcdef" (32-byte AES key)
TEST_MASTER_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
TEST_DEVICE_ID = "feeder-001"
TEST_DEVICE_SECRET = "device-secret"
FIXED_NOW = 1_700_000_000


class FixedClock:
    """Settable ``time.time`` replacement."""

    def __init__(self, now: float = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
