"""
Middleware components for the Busfahrer game server.

Provides:
- RequestIDMiddleware: Request tracing with X-Request-ID
"""

from .request_id import RequestIDMiddleware

__all__ = [
    "RequestIDMiddleware",
]
