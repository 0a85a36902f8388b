"""Per-device command queue: enqueue, claim, acknowledge, cancel.

Lifecycle of a command row::

    PENDING --claim--> SENT --ack--> ACKED
    PENDING | SENT --operator cancel--> FAILED

Claiming is exclusive across concurrent polls.  Due rows are selected with
``FOR UPDATE SKIP LOCKED`` so a second poller skips rows the first one holds
instead of waiting on them, and the status transition runs in the same
transaction.  If the transition fails the transaction (a savepoint when the
caller already holds one) rolls back and the rows stay claimable.

With ``redeliver_unacked`` on, SENT rows are claimable again on the next poll
until the device acknowledges them.  There is no retry cap.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

import asyncpg

from feedersync.models.devices import CommandStatus, CommandType

logger = logging.getLogger("feedersync.commands")

DEFAULT_BATCH_SIZE = 10


@dataclass(frozen=True)
class ClaimedCommand:
    """A command handed to a device in a poll response."""

    command_id: uuid.UUID
    command_type: str
    payload: dict[str, Any] = field(default_factory=dict)


def parse_ack_ids(raw_ids: Iterable[str]) -> list[uuid.UUID]:
    """Keep the well-formed UUIDs from a device ack list, dropping the rest."""
    parsed: list[uuid.UUID] = []
    for raw in raw_ids:
        try:
            parsed.append(uuid.UUID(str(raw).strip()))
        except ValueError:
            logger.debug("Ignoring malformed ack id: %r", raw)
    return parsed


def _payload_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            logger.warning("Cannot parse command payload json")
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


class CommandQueue:
    """SQL for the ``command_queue`` table.  Every method takes a connection."""

    def __init__(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        redeliver_unacked: bool = True,
    ) -> None:
        self._batch_size = batch_size
        self._claimable = (
            [CommandStatus.PENDING.value, CommandStatus.SENT.value]
            if redeliver_unacked
            else [CommandStatus.PENDING.value]
        )

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def enqueue(
        self,
        conn: asyncpg.Connection,
        device_id: str,
        command_type: CommandType | str,
        payload: dict[str, Any] | None = None,
    ) -> uuid.UUID:
        command_id = uuid.uuid4()
        type_value = CommandType(command_type).value
        await conn.execute(
            """
            INSERT INTO command_queue (command_id, device_id, command_type, payload, status)
            VALUES ($1, $2, $3, $4, 'PENDING')
            """,
            command_id,
            device_id,
            type_value,
            payload or {},
        )
        logger.info(
            "Enqueued command %s type=%s device=%s", command_id, type_value, device_id
        )
        return command_id

    async def claim(
        self, conn: asyncpg.Connection, device_id: str
    ) -> list[ClaimedCommand]:
        """Atomically take up to ``batch_size`` due commands, oldest first."""
        async with conn.transaction():
            rows = await conn.fetch(
                """
                SELECT command_id, command_type, payload
                FROM command_queue
                WHERE device_id = $1 AND status = ANY($2::text[])
                ORDER BY created_at ASC
                LIMIT $3
                FOR UPDATE SKIP LOCKED
                """,
                device_id,
                self._claimable,
                self._batch_size,
            )
            if not rows:
                return []

            ids = [r["command_id"] for r in rows]
            await conn.execute(
                """
                UPDATE command_queue
                SET status = 'SENT', sent_at = NOW()
                WHERE command_id = ANY($1::uuid[])
                """,
                ids,
            )

        logger.debug("Claimed %d command(s) for device=%s", len(rows), device_id)
        return [
            ClaimedCommand(
                command_id=r["command_id"],
                command_type=r["command_type"],
                payload=_payload_dict(r["payload"]),
            )
            for r in rows
        ]

    async def ack(
        self, conn: asyncpg.Connection, device_id: str, raw_ids: Iterable[str]
    ) -> int:
        """Mark acknowledged commands ACKED.  Unknown or repeated ids are no-ops."""
        ids = parse_ack_ids(raw_ids)
        if not ids:
            return 0
        status = await conn.execute(
            """
            UPDATE command_queue
            SET status = 'ACKED', acked_at = NOW()
            WHERE device_id = $1
              AND command_id = ANY($2::uuid[])
              AND status IN ('PENDING', 'SENT')
            """,
            device_id,
            ids,
        )
        return _affected(status)

    async def fail(
        self, conn: asyncpg.Connection, device_id: str, command_id: uuid.UUID
    ) -> bool:
        """Operator cancellation of a command that has not been acknowledged."""
        status = await conn.execute(
            """
            UPDATE command_queue
            SET status = 'FAILED'
            WHERE device_id = $1
              AND command_id = $2
              AND status IN ('PENDING', 'SENT')
            """,
            device_id,
            command_id,
        )
        moved = _affected(status) > 0
        if moved:
            logger.info("Command %s cancelled for device=%s", command_id, device_id)
        return moved

    async def list_recent(
        self, conn: asyncpg.Connection, device_id: str, limit: int = 50
    ) -> list[dict[str, Any]]:
        rows = await conn.fetch(
            """
            SELECT command_id, device_id, command_type, payload, status,
                   created_at, sent_at, acked_at
            FROM command_queue
            WHERE device_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            device_id,
            limit,
        )
        return [{**dict(r), "payload": _payload_dict(r["payload"])} for r in rows]


def _affected(status: str) -> int:
    """Row count from an asyncpg status tag such as ``'UPDATE 3'``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0
