"""FastAPI server for Busfahrer game sessions."""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
import redis.asyncio as redis

from config import config
from dispatcher import ChangeDispatcher
from handlers import HANDLERS, ConnectionContext, handle_disconnect, send_error
from registry import SessionRegistry
from services.game_service import GameService
from services.identity import IdentityVerifier
from services.stats_sink import MemoryStatisticsSink, PostgresStatisticsSink, StatisticsSink
from stores.game_store import GameStore, MemoryGameStore, PostgresGameStore
from stores.pubsub import ChangeFeed, LocalChangeFeed, RedisChangeFeed

# Import production components
from logging_config import setup_logging

# Configure logging based on environment
setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
    server_id=config.SERVER_ID,
)
logger = logging.getLogger(__name__)


# =============================================================================
# Services (initialized in lifespan)
# =============================================================================

registry = SessionRegistry()

_redis_client: Optional[redis.Redis] = None
_feed: Optional[ChangeFeed] = None
_store: Optional[GameStore] = None
_sink: Optional[StatisticsSink] = None
_dispatcher: Optional[ChangeDispatcher] = None
_game_service: Optional[GameService] = None
_identity: Optional[IdentityVerifier] = None


async def _init_redis():
    """Initialize the Redis client used by the change feed."""
    global _redis_client
    try:
        _redis_client = redis.from_url(config.REDIS_URL, decode_responses=False)
        await _redis_client.ping()
        logger.info("Redis client connected")
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - using in-process change feed")
        _redis_client = None


async def _init_services():
    """Build the store, feed, dispatcher and game service."""
    global _feed, _store, _sink, _dispatcher, _game_service, _identity

    from routers.games import set_game_service, set_identity_verifier

    if _redis_client:
        _feed = RedisChangeFeed(_redis_client, server_id=config.SERVER_ID)
    else:
        _feed = LocalChangeFeed(server_id=config.SERVER_ID)

    if config.POSTGRES_URL:
        _store = await PostgresGameStore.create(config.POSTGRES_URL, _feed)
        _sink = await PostgresStatisticsSink.create(config.POSTGRES_URL)
        logger.info("PostgreSQL game store and statistics sink initialized")
    else:
        logger.warning("POSTGRES_URL not configured - games are kept in memory only")
        _store = MemoryGameStore(_feed)
        _sink = MemoryStatisticsSink()

    _dispatcher = ChangeDispatcher(_store, registry)
    _feed.add_handler(_dispatcher.handle)
    await _feed.start()

    _game_service = GameService(_store, _sink, config)
    _identity = IdentityVerifier(config.SECRET_KEY)
    set_game_service(_game_service)
    set_identity_verifier(_identity)
    logger.info("Game service initialized")


async def _shutdown_services():
    """Gracefully shut down all services."""
    await _close_all_websockets()

    if _feed:
        await _feed.stop()

    if _store:
        await _store.close()

    if _sink:
        await _sink.close()

    if _redis_client:
        await _redis_client.close()
        logger.info("Redis connection closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    if config.REDIS_URL:
        await _init_redis()

    try:
        await _init_services()
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}")
        raise

    # Set up health check dependencies
    from routers.health import set_health_dependencies
    set_health_dependencies(
        db_pool=getattr(_store, "pool", None),
        redis_client=_redis_client,
        registry=registry,
        memory_store=_store if isinstance(_store, MemoryGameStore) else None,
    )

    logger.info(f"Busfahrer server started (environment={config.ENVIRONMENT})")

    yield

    logger.info("Shutdown initiated...")
    await _shutdown_services()
    logger.info("Shutdown complete")


async def _close_all_websockets():
    """Close all subscribed WebSocket connections gracefully."""
    sockets = registry.all_sockets()
    for ws in sockets:
        try:
            await ws.close(code=1001, reason="Server shutting down")
        except Exception as e:
            logger.debug(f"Closing socket failed: {e}")
    logger.info(f"Closed {len(sockets)} WebSocket connection(s)")


app = FastAPI(
    title="Busfahrer",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)


# =============================================================================
# Middleware Setup
# =============================================================================

# Request ID middleware (generates/propagates request IDs)
from middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


# =============================================================================
# Routers
# =============================================================================

from routers.games import router as games_router
from routers.health import router as health_router
app.include_router(games_router)
app.include_router(health_router)


# =============================================================================
# Real-time Events
# =============================================================================

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    # Extract token from query param for authentication
    token = websocket.query_params.get("token")
    principal_id = _identity.verify(token) if _identity else None

    if not principal_id:
        await websocket.send_json({
            "type": "error",
            "code": "NOT_AUTHENTICATED",
            "message": "Authentication required",
        })
        await websocket.close(code=4001, reason="Authentication required")
        return

    connection_id = str(uuid.uuid4())
    logger.debug(f"WebSocket authenticated as {principal_id}, connection {connection_id}")

    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        principal_id=principal_id,
    )

    # Shared dependencies passed to every handler
    handler_deps = dict(
        registry=registry,
        game_service=_game_service,
    )

    try:
        while True:
            data = await websocket.receive_json()
            handler = HANDLERS.get(data.get("type")) if isinstance(data, dict) else None
            if handler:
                await handler(data, ctx, **handler_deps)
            else:
                await send_error(ctx, "UNKNOWN_FRAME", "Unknown frame type")
    except WebSocketDisconnect:
        pass
    finally:
        await handle_disconnect(ctx, registry=registry)


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting Busfahrer server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
