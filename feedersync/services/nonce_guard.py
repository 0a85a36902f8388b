"""Per-device nonce registry backing replay protection.

The UNIQUE (device_id, nonce) constraint on ``device_nonces`` is the
authoritative dedup mechanism, so several API instances sharing one database
never miss each other's nonces.  This class keeps no bookkeeping of its own.
"""

from __future__ import annotations

import logging
from typing import AsyncContextManager, Callable

import asyncpg

from feedersync.services.postgres import get_connection

logger = logging.getLogger("feedersync.nonces")

ConnectionFactory = Callable[[], AsyncContextManager[asyncpg.Connection]]


class NonceGuard:
    """Insert-if-absent nonce registration with windowed purging."""

    def __init__(self, connect: ConnectionFactory = get_connection) -> None:
        self._connect = connect

    async def purge_older_than(self, min_ts: int) -> None:
        """Delete nonces whose request timestamp is before ``min_ts``."""
        async with self._connect() as conn:
            status = await conn.execute(
                "DELETE FROM device_nonces WHERE ts_epoch < $1", min_ts
            )
        logger.debug("Nonce purge before %d: %s", min_ts, status)

    async def register_nonce(self, device_id: str, nonce: str, ts: int) -> bool:
        """Record ``nonce`` for ``device_id``; False means it was already used."""
        async with self._connect() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO device_nonces (device_id, nonce, ts_epoch)
                VALUES ($1, $2, $3)
                ON CONFLICT (device_id, nonce) DO NOTHING
                RETURNING TRUE
                """,
                device_id,
                nonce,
                ts,
            )
        return bool(inserted)
