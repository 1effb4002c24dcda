"""Services package for Busfahrer session orchestration."""

from .game_service import GameService
from .identity import IdentityVerifier, bearer_token
from .stats_sink import (
    StatisticsSink,
    MemoryStatisticsSink,
    PostgresStatisticsSink,
)

__all__ = [
    "GameService",
    "IdentityVerifier",
    "bearer_token",
    "StatisticsSink",
    "MemoryStatisticsSink",
    "PostgresStatisticsSink",
]
