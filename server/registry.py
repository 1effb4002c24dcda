"""
Session registry: which live sockets follow which game.

One registry instance is constructed at startup and injected wherever
sockets are subscribed or messaged. Sockets are grouped per game and per
principal, since one principal may follow a game from several tabs.
"""

import logging
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps game ids to the sockets subscribed to them.

    Layout: ``game_id -> principal_id -> {websocket, ...}``.
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._games: dict[str, dict[str, set[WebSocket]]] = {}

    def subscribe(self, game_id: str, principal_id: str, websocket: WebSocket) -> None:
        """Register ``websocket`` for events of ``game_id``."""
        principals = self._games.setdefault(game_id, {})
        principals.setdefault(principal_id, set()).add(websocket)
        logger.debug(f"{principal_id} subscribed to game {game_id}")

    def unsubscribe(self, game_id: str, websocket: WebSocket) -> None:
        """Drop ``websocket`` from one game."""
        principals = self._games.get(game_id)
        if not principals:
            return
        for principal_id in list(principals):
            sockets = principals[principal_id]
            sockets.discard(websocket)
            if not sockets:
                del principals[principal_id]
        if not principals:
            del self._games[game_id]

    def unsubscribe_all(self, websocket: WebSocket) -> None:
        """Drop ``websocket`` from every game (on disconnect)."""
        for game_id in list(self._games):
            self.unsubscribe(game_id, websocket)

    def remove_game(self, game_id: str) -> None:
        self._games.pop(game_id, None)

    def remove_principal(self, game_id: str, principal_id: str) -> None:
        """Drop every socket of one principal from a game."""
        principals = self._games.get(game_id)
        if not principals:
            return
        principals.pop(principal_id, None)
        if not principals:
            del self._games[game_id]

    def is_subscribed(self, game_id: str, websocket: WebSocket) -> bool:
        return any(websocket in sockets for sockets in self._games.get(game_id, {}).values())

    def principals(self, game_id: str) -> list[str]:
        """Principals with at least one socket on ``game_id``."""
        return list(self._games.get(game_id, {}))

    def socket_count(self, game_id: Optional[str] = None) -> int:
        if game_id is not None:
            return sum(len(s) for s in self._games.get(game_id, {}).values())
        return sum(len(s) for principals in self._games.values() for s in principals.values())

    def game_count(self) -> int:
        return len(self._games)

    def all_sockets(self) -> set[WebSocket]:
        """Every subscribed socket across all games."""
        return {
            ws
            for principals in self._games.values()
            for sockets in principals.values()
            for ws in sockets
        }

    async def broadcast(self, game_id: str, message: dict, exclude: Optional[str] = None) -> int:
        """
        Send a message to every socket on a game.

        Args:
            game_id: Target game.
            message: JSON-serializable message dict.
            exclude: Optional principal id to skip.

        Returns:
            Number of sockets the message was delivered to.
        """
        delivered = 0
        for principal_id in self.principals(game_id):
            if principal_id != exclude:
                delivered += await self.send_to(game_id, principal_id, message)
        return delivered

    async def send_to(self, game_id: str, principal_id: str, message: dict) -> int:
        """
        Send a message to one principal's sockets on a game.

        Sockets that fail are dropped from the registry.

        Returns:
            Number of sockets the message was delivered to.
        """
        sockets = self._games.get(game_id, {}).get(principal_id)
        if not sockets:
            return 0

        delivered = 0
        for websocket in list(sockets):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.info(f"Dropping dead socket of {principal_id} on game {game_id}: {e}")
                self.unsubscribe(game_id, websocket)
        return delivered
