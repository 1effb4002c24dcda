"""
Game document stores with compare-and-swap writes.

Every write is conditional on the document version the caller read, so two
actors racing on the same game cannot both commit from the same snapshot.
After each successful write the store publishes a ``ChangeNotification`` to
its change feed.

Two implementations:
- MemoryGameStore: in-process dict, used in development and tests.
- PostgresGameStore: JSONB document + integer version column (asyncpg).
"""

import asyncio
import copy
import json
import logging
from typing import Optional

import asyncpg

from game import Game
from .pubsub import ChangeFeed, ChangeNotification, Operation

logger = logging.getLogger(__name__)


class ConcurrencyError(Exception):
    """Raised when a conditional write finds a newer version."""
    pass


class GameNotFound(Exception):
    """Raised when a write targets a game that no longer exists."""
    pass


# SQL schema for game documents
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS games (
    id VARCHAR(64) PRIMARY KEY,
    version INT NOT NULL DEFAULT 1,
    document JSONB NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_games_updated ON games(updated_at);
"""


class GameStore:
    """
    Base store: subclasses implement the raw document operations, this class
    publishes change notifications after every committed write.
    """

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self.feed = feed

    async def get(self, game_id: str, **runtime) -> Optional[tuple[Game, int]]:
        """
        Load a game.

        Args:
            game_id: Game to load.
            **runtime: Runtime collaborators passed to ``Game.from_dict``.

        Returns:
            (game, version) or None if the game does not exist.
        """
        row = await self._get(game_id)
        if row is None:
            return None
        document, version = row
        return Game.from_dict(document, **runtime), version

    async def get_document(self, game_id: str) -> Optional[dict]:
        row = await self._get(game_id)
        return row[0] if row else None

    async def insert(self, game: Game) -> int:
        """Insert a new game document. Returns its version (1)."""
        document = game.to_dict()
        version = await self._insert(game.id, document)
        await self._notify(game.id, Operation.INSERT, sorted(document.keys()))
        return version

    async def update(self, game: Game, expected_version: int, fields: list[str]) -> int:
        """
        Write ``game`` if the stored version still equals ``expected_version``.

        Args:
            game: Mutated game.
            expected_version: Version the mutation was computed from.
            fields: Dotted paths that changed, published with the notification.

        Returns:
            The new version.

        Raises:
            ConcurrencyError: The document moved on since it was read.
            GameNotFound: The document is gone.
        """
        version = await self._update(game.id, game.to_dict(), expected_version)
        if fields:
            await self._notify(game.id, Operation.UPDATE, fields)
        return version

    async def delete(
        self,
        game_id: str,
        fields: Optional[list[str]] = None,
        replaced_by: Optional[str] = None,
    ) -> bool:
        deleted = await self._delete(game_id)
        if deleted:
            await self._notify(game_id, Operation.DELETE, fields or [], replaced_by)
        return deleted

    async def close(self) -> None:
        pass

    async def _notify(
        self,
        game_id: str,
        operation: Operation,
        fields: list[str],
        replaced_by: Optional[str] = None,
    ) -> None:
        if self.feed is None:
            return
        try:
            await self.feed.publish(
                ChangeNotification(game_id, operation, list(fields), replaced_by)
            )
        except Exception as e:
            # The write is committed; subscribers catch up on their next read
            logger.error(f"Failed to publish change for game {game_id}: {e}")

    async def _get(self, game_id: str) -> Optional[tuple[dict, int]]:
        raise NotImplementedError

    async def _insert(self, game_id: str, document: dict) -> int:
        raise NotImplementedError

    async def _update(self, game_id: str, document: dict, expected_version: int) -> int:
        raise NotImplementedError

    async def _delete(self, game_id: str) -> bool:
        raise NotImplementedError


class MemoryGameStore(GameStore):
    """In-process store. Documents are deep-copied on the way in and out."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self._docs: dict[str, tuple[dict, int]] = {}
        self._lock = asyncio.Lock()

    async def _get(self, game_id: str) -> Optional[tuple[dict, int]]:
        row = self._docs.get(game_id)
        if row is None:
            return None
        document, version = row
        return copy.deepcopy(document), version

    async def _insert(self, game_id: str, document: dict) -> int:
        async with self._lock:
            if game_id in self._docs:
                raise ConcurrencyError(f"Game {game_id} already exists")
            self._docs[game_id] = (copy.deepcopy(document), 1)
            return 1

    async def _update(self, game_id: str, document: dict, expected_version: int) -> int:
        async with self._lock:
            row = self._docs.get(game_id)
            if row is None:
                raise GameNotFound(game_id)
            if row[1] != expected_version:
                raise ConcurrencyError(
                    f"Game {game_id} is at version {row[1]}, expected {expected_version}"
                )
            version = expected_version + 1
            self._docs[game_id] = (copy.deepcopy(document), version)
            return version

    async def _delete(self, game_id: str) -> bool:
        async with self._lock:
            return self._docs.pop(game_id, None) is not None

    def __len__(self) -> int:
        return len(self._docs)


class PostgresGameStore(GameStore):
    """
    PostgreSQL-backed game store.

    The version check and the write happen in one ``UPDATE ... WHERE version``
    statement.
    """

    def __init__(self, pool: asyncpg.Pool, feed: Optional[ChangeFeed] = None):
        """
        Initialize store with connection pool.

        Args:
            pool: asyncpg connection pool.
            feed: Change feed to publish to.
        """
        super().__init__(feed)
        self.pool = pool

    @classmethod
    async def create(cls, postgres_url: str, feed: Optional[ChangeFeed] = None) -> "PostgresGameStore":
        """
        Create a store with a new connection pool.

        Args:
            postgres_url: PostgreSQL connection URL.
            feed: Change feed to publish to.

        Returns:
            Configured PostgresGameStore instance.
        """
        pool = await asyncpg.create_pool(postgres_url, min_size=2, max_size=10)
        store = cls(pool, feed)
        await store.initialize_schema()
        return store

    async def initialize_schema(self) -> None:
        """Create database tables if they don't exist."""
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Game store schema initialized")

    async def close(self) -> None:
        """Close the connection pool."""
        await self.pool.close()

    async def _get(self, game_id: str) -> Optional[tuple[dict, int]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT document, version FROM games WHERE id = $1",
                game_id,
            )
        if row is None:
            return None
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        return document, row["version"]

    async def _insert(self, game_id: str, document: dict) -> int:
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO games (id, version, document)
                    VALUES ($1, 1, $2)
                    RETURNING version
                    """,
                    game_id,
                    json.dumps(document),
                )
            except asyncpg.UniqueViolationError:
                raise ConcurrencyError(f"Game {game_id} already exists")
        return row["version"]

    async def _update(self, game_id: str, document: dict, expected_version: int) -> int:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE games
                SET document = $2, version = version + 1, updated_at = NOW()
                WHERE id = $1 AND version = $3
                RETURNING version
                """,
                game_id,
                json.dumps(document),
                expected_version,
            )
            if row is not None:
                return row["version"]

            exists = await conn.fetchval("SELECT 1 FROM games WHERE id = $1", game_id)
        if not exists:
            raise GameNotFound(game_id)
        raise ConcurrencyError(f"Game {game_id} moved past version {expected_version}")

    async def _delete(self, game_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute("DELETE FROM games WHERE id = $1", game_id)
        return result.endswith(" 1")
