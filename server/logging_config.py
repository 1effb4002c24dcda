"""
Logging setup for the Busfahrer server.

Production writes one JSON object per line; development writes colored,
abbreviated lines. Both carry the same context, gathered from the request
and game context variables and from ``extra`` fields on the record:

    request_id  set per HTTP request by RequestIDMiddleware
    user_id     principal acting inside ``game_context``
    game_id     from the URL, ``game_context`` or ``with_context``
    player_id   from ``with_context``

Several servers share one change feed, so every record is also stamped with
the id of the server that wrote it.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
game_id_var: ContextVar[Optional[str]] = ContextVar("game_id", default=None)

CONTEXT_FIELDS = ("request_id", "user_id", "game_id", "player_id")

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "user_id": user_id_var,
    "game_id": game_id_var,
}


def collect_context(record: logging.LogRecord) -> dict[str, str]:
    """Context fields for ``record``; record extras win over context variables."""
    context = {}
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if not value and name in _CONTEXT_VARS:
            value = _CONTEXT_VARS[name].get()
        if value:
            context[name] = str(value)
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shipping in production."""

    def __init__(self, server_id: Optional[str] = None):
        super().__init__()
        self.server_id = server_id

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **collect_context(record),
        }
        if self.server_id:
            log_data["server_id"] = self.server_id

        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class DevelopmentFormatter(logging.Formatter):
    """
    Colored single-line output for local runs.

    Ids are cut to eight characters: ``[req=..., game=..., player=...]``.
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"
    LABELS = {"request_id": "req", "user_id": "user", "game_id": "game", "player_id": "player"}

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]

        parts = [
            f"{self.LABELS[name]}={value[:8]}"
            for name, value in collect_context(record).items()
        ]
        context = f" [{', '.join(parts)}]" if parts else ""

        output = (
            f"{timestamp} {color}{record.levelname:8}{reset} "
            f"{record.name}{context} - {record.getMessage()}"
        )
        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)
        return output


def setup_logging(
    level: str = "INFO",
    environment: str = "development",
    server_id: Optional[str] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name; unknown names fall back to INFO.
        environment: ``production`` selects JSON output.
        server_id: Stamped on JSON records.
    """
    handler = logging.StreamHandler(sys.stdout)
    if environment == "production":
        handler.setFormatter(JSONFormatter(server_id))
    else:
        handler.setFormatter(DevelopmentFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in ("uvicorn.access", "uvicorn.error", "websockets", "asyncio", "asyncpg", "redis"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={level}, environment={environment}, server={server_id}"
    )


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that attaches fixed context to every record.

    Usage:
        logger = get_logger(__name__)
        logger.with_context(game_id="3f2a", player_id="p1").info("Card laid")
    """

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def with_context(self, **kwargs) -> "ContextLogger":
        return ContextLogger(self.logger, {**self.extra, **kwargs})

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name))


@contextmanager
def game_context(game_id: Optional[str], user_id: Optional[str] = None) -> Iterator[None]:
    """
    Bind game and user ids to every record logged inside the block.

    Usage:
        with game_context(game_id, user_id=principal):
            logger.info("Row flipped")
    """
    game_token = game_id_var.set(game_id)
    user_token = user_id_var.set(user_id) if user_id else None
    try:
        yield
    finally:
        game_id_var.reset(game_token)
        if user_token is not None:
            user_id_var.reset(user_token)
