"""
Change fan-out dispatcher.

Consumes ``ChangeNotification``s from the change feed, classifies the changed
fields into facets, re-reads the document once and pushes one typed event
per facet to the sockets in the session registry.

Facets and their events (sent in this order):
    GAME    -> gameUpdate    roster, spectators, phase, round, roles, busfahrer
    PLAYERS -> playersUpdate exen / had_turn / pending drinks / cards left
    DRINKS  -> drinkUpdate   pot and drink statistics
    CARDS   -> cardsUpdate   board (masked) to everyone, hands to their owner
    CHAT    -> gameChat      presence ping only

Notifications arriving while a flush for the same game is running coalesce
into the next flush (last value wins per facet). Flushes for one game never
overlap, so each socket sees events in commit order.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from game import Game
from logging_config import get_logger
from registry import SessionRegistry
from stores.game_store import GameStore
from stores.pubsub import ChangeNotification, Operation

logger = get_logger(__name__)


class Facet(str, Enum):
    GAME = "gameUpdate"
    PLAYERS = "playersUpdate"
    DRINKS = "drinkUpdate"
    CARDS = "cardsUpdate"
    CHAT = "gameChat"


FACET_ORDER = (Facet.GAME, Facet.PLAYERS, Facet.DRINKS, Facet.CARDS, Facet.CHAT)

# Top-level document fields
FIELD_FACETS: dict[str, tuple[Facet, ...]] = {
    "players": (Facet.GAME, Facet.PLAYERS),
    "phase": (Facet.GAME,),
    "round": (Facet.GAME,),
    "last_round": (Facet.GAME,),
    "active_player": (Facet.GAME, Facet.PLAYERS),
    "turn_order": (Facet.GAME,),
    "settings": (Facet.GAME,),
    "busfahrer": (Facet.GAME,),
    "try_owner": (Facet.GAME,),
    "last_try_owner": (Facet.GAME,),
    "end_game": (Facet.GAME,),
    "replaced_by": (Facet.GAME,),
    "spectators": (Facet.GAME,),
    "drink_count": (Facet.DRINKS,),
    "statistics": (Facet.DRINKS,),
    "cards": (Facet.CARDS,),
    "piles": (Facet.CARDS,),
    "last_card": (Facet.CARDS,),
    "chat_version": (Facet.CHAT,),
}

# Per-player fields (``players.<idx>.<key>``)
PLAYER_FIELD_FACETS: dict[str, tuple[Facet, ...]] = {
    "name": (Facet.GAME,),
    "gender": (Facet.GAME,),
    "role": (Facet.GAME,),
    "exen": (Facet.PLAYERS,),
    "had_turn": (Facet.PLAYERS,),
    "drinks": (Facet.PLAYERS,),
    "cards": (Facet.PLAYERS,),
}

IGNORED_FIELDS = {"id", "created_at"}


@dataclass
class PendingChange:
    """Facets waiting to be flushed for one game."""

    facets: set[Facet] = field(default_factory=set)
    hands: set[int] = field(default_factory=set)
    all_hands: bool = False
    deleted: bool = False
    replaced_by: Optional[str] = None

    def merge(self, other: "PendingChange") -> None:
        self.facets |= other.facets
        self.hands |= other.hands
        self.all_hands = self.all_hands or other.all_hands
        self.deleted = self.deleted or other.deleted
        self.replaced_by = other.replaced_by or self.replaced_by


def classify(notification: ChangeNotification) -> PendingChange:
    """Map a notification's changed fields onto facets and private hands."""
    change = PendingChange()
    if notification.operation == Operation.DELETE:
        change.deleted = True
        change.replaced_by = notification.replaced_by
        return change

    for path in notification.fields:
        parts = path.split(".")
        key = parts[0]
        if key in IGNORED_FIELDS:
            continue

        if key == "players" and len(parts) == 3:
            idx, p_key = parts[1], parts[2]
            change.facets.update(PLAYER_FIELD_FACETS.get(p_key, (Facet.PLAYERS,)))
            if p_key == "cards" and idx.isdigit():
                change.hands.add(int(idx))
            continue

        if key == "players":
            change.all_hands = True
        change.facets.update(FIELD_FACETS.get(key, (Facet.GAME,)))

    if notification.operation == Operation.INSERT:
        change.facets.update(FACET_ORDER)
        change.all_hands = True
    return change


def project(game: Game, facet: Facet) -> dict:
    """Public payload of one facet."""
    if facet == Facet.GAME:
        return {**game.info_dict(), "replaced_by": game.replaced_by}
    if facet == Facet.PLAYERS:
        return {
            "players": [p.to_client_dict() for p in game.players],
            "active_player": game.active_player,
        }
    if facet == Facet.DRINKS:
        return {
            "drink_count": game.drink_count,
            "top_drinker": game.statistics.top_drinker,
            "player_drinks": dict(game.statistics.player_drinks),
        }
    if facet == Facet.CARDS:
        return game.board_dict()
    return {"chat_version": game.chat_version}


def event(facet: Facet, game_id: str, data: dict) -> dict:
    return {"type": facet.value, "gameId": game_id, "data": data}


class ChangeDispatcher:
    """
    Turns change notifications into real-time events.

    Register ``handle`` on a change feed.
    """

    def __init__(self, store: GameStore, registry: SessionRegistry):
        self.store = store
        self.registry = registry
        self._pending: dict[str, PendingChange] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def handle(self, notification: ChangeNotification) -> None:
        game_id = notification.game_id
        change = classify(notification)
        if game_id in self._pending:
            self._pending[game_id].merge(change)
        else:
            self._pending[game_id] = change

        lock = self._locks.setdefault(game_id, asyncio.Lock())
        async with lock:
            pending = self._pending.pop(game_id, None)
            if pending is None:
                # Already delivered by a flush that ran while we waited
                return
            await self._flush(game_id, pending)

        idle = pending.deleted or self.registry.socket_count(game_id) == 0
        if idle and game_id not in self._pending and not lock.locked():
            if self._locks.get(game_id) is lock:
                del self._locks[game_id]

    async def _flush(self, game_id: str, pending: PendingChange) -> None:
        if self.registry.socket_count(game_id) == 0:
            return

        document = None if pending.deleted else await self.store.get_document(game_id)
        if document is None:
            await self._send_closed(game_id, pending.replaced_by)
            return

        game = Game.from_dict(document)
        if Facet.GAME in pending.facets:
            await self._drop_removed(game)
        logger.with_context(game_id=game_id).debug(
            f"Flushing {sorted(f.value for f in pending.facets)} to "
            f"{self.registry.socket_count(game_id)} sockets"
        )
        for facet in FACET_ORDER:
            if facet in pending.facets:
                await self.registry.broadcast(game_id, event(facet, game_id, project(game, facet)))

        hands = range(len(game.players)) if pending.all_hands else sorted(pending.hands)
        for idx in hands:
            if idx >= len(game.players):
                continue
            player = game.players[idx]
            await self.registry.send_to(
                game_id,
                player.id,
                event(Facet.CARDS, game_id, {"hand": [c.to_dict() for c in player.cards]}),
            )

    async def _drop_removed(self, game: Game) -> None:
        """Unsubscribe principals that left or were kicked."""
        members = {p.id for p in game.players} | {s.id for s in game.spectators}
        for principal_id in self.registry.principals(game.id):
            if principal_id in members:
                continue
            await self.registry.send_to(
                game.id, principal_id, event(Facet.GAME, game.id, {"removed": True})
            )
            self.registry.remove_principal(game.id, principal_id)

    async def _send_closed(self, game_id: str, replaced_by: Optional[str]) -> None:
        logger.with_context(game_id=game_id).info(f"Game closed, replaced by {replaced_by}")
        await self.registry.broadcast(
            game_id,
            event(Facet.GAME, game_id, {"closed": True, "replacedBy": replaced_by}),
        )
        self.registry.remove_game(game_id)
