"""WebSocket control frame handlers for Busfahrer.

The socket only carries subscriptions; game actions go through the HTTP
router. Each handler corresponds to a single frame type from the client and
is dispatched via the HANDLERS dict in main.py.
"""

import logging
from dataclasses import dataclass, field

from fastapi import WebSocket

from errors import GameError
from registry import SessionRegistry
from services.game_service import GameService

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    principal_id: str
    subscriptions: set[str] = field(default_factory=set)


async def send_error(ctx: ConnectionContext, code: str, message: str) -> None:
    await ctx.websocket.send_json({"type": "error", "code": code, "message": message})


# ---------------------------------------------------------------------------
# Subscription handlers
# ---------------------------------------------------------------------------

async def handle_subscribe(
    data: dict,
    ctx: ConnectionContext,
    *,
    registry: SessionRegistry,
    game_service: GameService,
    **kw,
) -> None:
    game_id = data.get("gameId")
    if not game_id or not isinstance(game_id, str):
        await send_error(ctx, "INVALID_FRAME", "gameId is required")
        return

    # Only players and spectators may follow the game; this also yields the initial state
    try:
        state = await game_service.get_state(game_id, ctx.principal_id)
    except GameError as e:
        await send_error(ctx, e.code, e.message)
        return

    registry.subscribe(game_id, ctx.principal_id, ctx.websocket)
    ctx.subscriptions.add(game_id)

    await ctx.websocket.send_json({
        "type": "subscribed",
        "gameId": game_id,
        "data": state,
    })


async def handle_unsubscribe(data: dict, ctx: ConnectionContext, *, registry: SessionRegistry, **kw) -> None:
    game_id = data.get("gameId")
    if not game_id or game_id not in ctx.subscriptions:
        await send_error(ctx, "NOT_SUBSCRIBED", "Not subscribed to this game")
        return

    registry.unsubscribe(game_id, ctx.websocket)
    ctx.subscriptions.discard(game_id)
    await ctx.websocket.send_json({"type": "unsubscribed", "gameId": game_id})


async def handle_ping(data: dict, ctx: ConnectionContext, **kw) -> None:
    await ctx.websocket.send_json({"type": "pong"})


async def handle_disconnect(ctx: ConnectionContext, *, registry: SessionRegistry) -> None:
    """Drop every subscription of a closed socket."""
    registry.unsubscribe_all(ctx.websocket)
    if ctx.subscriptions:
        logger.debug(
            f"Connection {ctx.connection_id} closed, left {len(ctx.subscriptions)} game(s)"
        )
    ctx.subscriptions.clear()


HANDLERS = {
    "subscribe": handle_subscribe,
    "unsubscribe": handle_unsubscribe,
    "ping": handle_ping,
}
