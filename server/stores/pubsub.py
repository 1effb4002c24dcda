"""
Change feed for game document mutations.

Every committed write to the game store is announced as a
``ChangeNotification`` naming the game, the operation and the dotted paths of
the fields that changed. The dispatcher subscribes to the feed and turns
notifications into typed real-time events.

Two feeds:
- LocalChangeFeed: in-process fan-out, used for single-server deployments
  and tests.
- RedisChangeFeed: Redis pub/sub, so every server sees writes made by every
  other server. Servers also receive their own writes back from Redis, which
  keeps delivery to local sockets on one path.

Usage:
    feed = RedisChangeFeed(redis_client)
    feed.add_handler(dispatcher.handle)
    await feed.start()

    await feed.publish(ChangeNotification(
        game_id="abc",
        operation=Operation.UPDATE,
        fields=["round", "players.0.had_turn"],
    ))

    await feed.stop()
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Kinds of document mutations."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ChangeNotification:
    """
    A committed mutation of one game document.

    Attributes:
        game_id: Mutated game.
        operation: Insert, update or delete.
        fields: Dotted paths that changed (e.g. ``players.1.cards``).
        replaced_by: Successor game of a deleted game, if any.
        sender_id: Server that committed the write.
    """

    game_id: str
    operation: Operation
    fields: list[str] = field(default_factory=list)
    replaced_by: Optional[str] = None
    sender_id: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON for Redis."""
        return json.dumps({
            "game_id": self.game_id,
            "operation": self.operation.value,
            "fields": self.fields,
            "replaced_by": self.replaced_by,
            "sender_id": self.sender_id,
        })

    @classmethod
    def from_json(cls, raw: str) -> "ChangeNotification":
        """Deserialize from JSON."""
        d = json.loads(raw)
        return cls(
            game_id=d["game_id"],
            operation=Operation(d["operation"]),
            fields=list(d.get("fields", [])),
            replaced_by=d.get("replaced_by"),
            sender_id=d.get("sender_id"),
        )


# Type alias for notification handlers
ChangeHandler = Callable[[ChangeNotification], Awaitable[None]]


class ChangeFeed:
    """Base feed: handler registration and dispatch."""

    def __init__(self, server_id: str = "default"):
        self.server_id = server_id
        self._handlers: list[ChangeHandler] = []

    def add_handler(self, handler: ChangeHandler) -> None:
        self._handlers.append(handler)

    def remove_handler(self, handler: ChangeHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, notification: ChangeNotification) -> int:
        raise NotImplementedError

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        self._handlers.clear()

    async def _dispatch(self, notification: ChangeNotification) -> None:
        for handler in list(self._handlers):
            try:
                await handler(notification)
            except Exception as e:
                logger.error(f"Error in change handler: {e}", exc_info=True)


class LocalChangeFeed(ChangeFeed):
    """In-process feed. Handlers run inline with the publishing write."""

    async def publish(self, notification: ChangeNotification) -> int:
        notification.sender_id = self.server_id
        await self._dispatch(notification)
        return len(self._handlers)


class RedisChangeFeed(ChangeFeed):
    """
    Redis pub/sub change feed.

    Publishes each notification on ``busfahrer:game:<id>`` and listens on the
    ``busfahrer:game:*`` pattern.
    """

    CHANNEL_PREFIX = "busfahrer:game:"

    def __init__(
        self,
        redis_client: redis.Redis,
        server_id: str = "default",
    ):
        """
        Initialize feed with Redis client.

        Args:
            redis_client: Async Redis client.
            server_id: Unique ID for this server instance.
        """
        super().__init__(server_id)
        self.redis = redis_client
        self.pubsub = redis_client.pubsub()
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _channel(self, game_id: str) -> str:
        """Get Redis channel name for a game."""
        return f"{self.CHANNEL_PREFIX}{game_id}"

    async def publish(self, notification: ChangeNotification) -> int:
        """
        Publish a notification to the game's channel.

        Returns:
            Number of subscribers that received the notification.
        """
        notification.sender_id = self.server_id
        channel = self._channel(notification.game_id)
        count = await self.redis.publish(channel, notification.to_json())
        logger.debug(
            f"Published {notification.operation.value} to {channel} ({count} receivers)"
        )
        return count

    async def start(self) -> None:
        """Start listening for notifications."""
        if self._running:
            return

        await self.pubsub.psubscribe(f"{self.CHANNEL_PREFIX}*")
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info("RedisChangeFeed listener started")

    async def stop(self) -> None:
        """Stop listening and clean up."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.pubsub.close()
        await super().stop()
        logger.info("RedisChangeFeed listener stopped")

    async def _listen(self) -> None:
        """Main listener loop."""
        while self._running:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message and message["type"] == "pmessage":
                    await self._handle_message(message)

            except asyncio.CancelledError:
                break
            except redis.ConnectionError as e:
                logger.error(f"Change feed connection error: {e}")
                await asyncio.sleep(1)
            except Exception as e:
                logger.error(f"Change feed listener error: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _handle_message(self, raw_message: dict) -> None:
        """Handle an incoming Redis message."""
        data = raw_message["data"]
        if isinstance(data, bytes):
            data = data.decode()

        try:
            notification = ChangeNotification.from_json(data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Invalid change notification: {e}")
            return

        await self._dispatch(notification)
