"""
Request ID middleware for request tracing.

Propagates the X-Request-ID header into the logging context and binds the
game id of ``/api/games/{id}/...`` routes, so every record logged while an
action is handled carries both.
"""

import logging
import time
import uuid
from typing import Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from logging_config import game_id_var, request_id_var

logger = logging.getLogger(__name__)

GAMES_PREFIX = "/api/games/"


def game_id_from_path(path: str) -> Optional[str]:
    """Extract the game id from a game action path, if any."""
    if not path.startswith(GAMES_PREFIX):
        return None
    game_id = path[len(GAMES_PREFIX):].split("/", 1)[0]
    return game_id or None


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    HTTP middleware for request ID generation and propagation.

    - Reuses the caller's X-Request-ID or generates one
    - Binds request_id and game_id context vars for logging
    - Echoes X-Request-ID on the response
    """

    def __init__(
        self,
        app,
        header_name: str = "X-Request-ID",
        generator: Optional[Callable[[], str]] = None,
    ):
        super().__init__(app)
        self.header_name = header_name
        self.generator = generator or (lambda: uuid.uuid4().hex)

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(self.header_name) or self.generator()
        request.state.request_id = request_id

        request_token = request_id_var.set(request_id)
        game_token = game_id_var.set(game_id_from_path(request.url.path))
        started = time.monotonic()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = request_id
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({(time.monotonic() - started) * 1000:.1f}ms)"
            )
            return response
        finally:
            game_id_var.reset(game_token)
            request_id_var.reset(request_token)
