"""Stores package for Busfahrer persistence and change feeds."""

from .game_store import (
    GameStore,
    MemoryGameStore,
    PostgresGameStore,
    ConcurrencyError,
    GameNotFound,
)
from .pubsub import (
    ChangeFeed,
    ChangeNotification,
    LocalChangeFeed,
    Operation,
    RedisChangeFeed,
)

__all__ = [
    # Game store
    "GameStore",
    "MemoryGameStore",
    "PostgresGameStore",
    "ConcurrencyError",
    "GameNotFound",
    # Change feed
    "ChangeFeed",
    "ChangeNotification",
    "LocalChangeFeed",
    "Operation",
    "RedisChangeFeed",
]
