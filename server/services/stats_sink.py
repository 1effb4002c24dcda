"""
Statistics sink for the achievement subsystem.

Game transitions queue counter updates keyed by principal id (see
``ledger.StatBatch``). After a game write commits, the service hands them to a
sink. Each counter is applied with its own semantics:

    inc: counter += value
    max: counter = max(counter, value)
    min: counter = min(counter, value)

Sink failures are logged by the caller and never roll back the game write.
"""

import logging
from typing import Optional

import asyncpg

from ledger import StatOp, StatUpdate

logger = logging.getLogger(__name__)


# SQL schema for player counters
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS player_statistics (
    principal_id VARCHAR(64) NOT NULL,
    stat_key VARCHAR(64) NOT NULL,
    value BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (principal_id, stat_key)
);
"""

UPSERT_SQL = {
    StatOp.INC: """
        INSERT INTO player_statistics (principal_id, stat_key, value)
        VALUES ($1, $2, $3)
        ON CONFLICT (principal_id, stat_key)
        DO UPDATE SET value = player_statistics.value + EXCLUDED.value, updated_at = NOW()
    """,
    StatOp.MAX: """
        INSERT INTO player_statistics (principal_id, stat_key, value)
        VALUES ($1, $2, $3)
        ON CONFLICT (principal_id, stat_key)
        DO UPDATE SET value = GREATEST(player_statistics.value, EXCLUDED.value), updated_at = NOW()
    """,
    StatOp.MIN: """
        INSERT INTO player_statistics (principal_id, stat_key, value)
        VALUES ($1, $2, $3)
        ON CONFLICT (principal_id, stat_key)
        DO UPDATE SET value = LEAST(player_statistics.value, EXCLUDED.value), updated_at = NOW()
    """,
}


def apply_update(current: Optional[int], update: StatUpdate) -> int:
    """Apply one counter update to a current value (None if unset)."""
    if current is None:
        return update.value
    if update.op == StatOp.INC:
        return current + update.value
    if update.op == StatOp.MAX:
        return max(current, update.value)
    return min(current, update.value)


class StatisticsSink:
    """Receives cumulative counters keyed by principal id."""

    async def record(self, principal_id: str, updates: dict[str, StatUpdate]) -> None:
        raise NotImplementedError

    async def record_batch(self, batch: dict[str, dict[str, StatUpdate]]) -> None:
        for principal_id, updates in batch.items():
            if updates:
                await self.record(principal_id, updates)

    async def close(self) -> None:
        pass


class MemoryStatisticsSink(StatisticsSink):
    """In-process counters, used in development and tests."""

    def __init__(self):
        self.counters: dict[str, dict[str, int]] = {}

    async def record(self, principal_id: str, updates: dict[str, StatUpdate]) -> None:
        counters = self.counters.setdefault(principal_id, {})
        for key, update in updates.items():
            counters[key] = apply_update(counters.get(key), update)

    def get(self, principal_id: str, key: str, default: int = 0) -> int:
        return self.counters.get(principal_id, {}).get(key, default)


class PostgresStatisticsSink(StatisticsSink):
    """
    PostgreSQL-backed counters.

    All updates for one principal are applied in a single transaction.
    """

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    @classmethod
    async def create(cls, postgres_url: str) -> "PostgresStatisticsSink":
        pool = await asyncpg.create_pool(postgres_url, min_size=1, max_size=5)
        sink = cls(pool)
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Statistics schema initialized")
        return sink

    async def record(self, principal_id: str, updates: dict[str, StatUpdate]) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for key, update in updates.items():
                    await conn.execute(UPSERT_SQL[update.op], principal_id, key, update.value)

    async def close(self) -> None:
        await self.pool.close()
