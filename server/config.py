"""
Centralized configuration for the Busfahrer game server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.game_defaults.shuffling)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class GameDefaults:
    """Default values for a new game's settings bag."""
    shuffling: str = "Fisher-Yates"   # "Fisher-Yates", "Chaotic", "Riffle"
    matching: str = "Number-only"     # "Number-only", "Type-only", "Exact"
    turning: str = "Default"          # "Default", "Reverse", "Random"
    bus_mode: str = "Default"         # "Default", "Reverse", "Random"
    giving: str = "Default"           # "Default", "Avatar"
    is_chaos: bool = False
    player_limit: int = 8
    is_everyone: bool = False


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    SERVER_ID: str = "default"

    # Persistence / change feed (empty = in-process fallbacks)
    POSTGRES_URL: str = ""
    REDIS_URL: str = ""

    # Identity token signing
    SECRET_KEY: str = ""

    # Probability that a chaos-mode lay in phase 1 multiplies by the round index
    CHAOS_MODE: float = 0.5
    # Probability that the chaotic shuffle continues a rank/suit streak
    CHAOTIC_STREAK_PROBABILITY: float = 0.3

    MIN_PLAYERS: int = 2
    MAX_PLAYER_LIMIT: int = 8

    # Game defaults
    game_defaults: GameDefaults = field(default_factory=GameDefaults)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            SERVER_ID=get_env("SERVER_ID", "default"),
            POSTGRES_URL=get_env("POSTGRES_URL", ""),
            REDIS_URL=get_env("REDIS_URL", ""),
            SECRET_KEY=get_env("SECRET_KEY", ""),
            CHAOS_MODE=get_env_float("CHAOS_MODE", 0.5),
            CHAOTIC_STREAK_PROBABILITY=get_env_float("CHAOTIC_STREAK_PROBABILITY", 0.3),
            MIN_PLAYERS=get_env_int("MIN_PLAYERS", 2),
            MAX_PLAYER_LIMIT=get_env_int("MAX_PLAYER_LIMIT", 8),
            game_defaults=GameDefaults(
                shuffling=get_env("DEFAULT_SHUFFLING", "Fisher-Yates"),
                matching=get_env("DEFAULT_MATCHING", "Number-only"),
                turning=get_env("DEFAULT_TURNING", "Default"),
                bus_mode=get_env("DEFAULT_BUS_MODE", "Default"),
                giving=get_env("DEFAULT_GIVING", "Default"),
                is_chaos=get_env_bool("DEFAULT_IS_CHAOS", False),
                player_limit=get_env_int("DEFAULT_PLAYER_LIMIT", 8),
                is_everyone=get_env_bool("DEFAULT_IS_EVERYONE", False),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
