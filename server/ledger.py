"""
Drink accounting.

The per-turn pot (``Game.drink_count``) and each player's pending ``drinks``
are transient. Settling a turn folds them into cumulative per-game statistics
and queues counter updates for the statistics sink.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from constants import DRINKS_GIVEN, DRINKS_SELF, MAX_DRINKS_GIVEN, MAX_DRINKS_SELF


class GiveMode(str, Enum):
    """
    Who is authoritative for the pot.

    DEFAULT: The actor hands out the pot as a whole.
    AVATAR: The actor splits the pot onto individual players.
    """

    DEFAULT = "Default"
    AVATAR = "Avatar"


class StatOp(str, Enum):
    INC = "inc"
    MAX = "max"
    MIN = "min"


@dataclass
class StatUpdate:
    op: StatOp
    value: int

    def merge(self, other: "StatUpdate") -> "StatUpdate":
        if self.op != other.op:
            raise ValueError(f"Cannot merge {self.op.value} with {other.op.value}")
        if self.op == StatOp.INC:
            return StatUpdate(self.op, self.value + other.value)
        if self.op == StatOp.MAX:
            return StatUpdate(self.op, max(self.value, other.value))
        return StatUpdate(self.op, min(self.value, other.value))

    def to_dict(self) -> dict:
        return {self.op.value: self.value}


class StatBatch:
    """Counter updates queued by game transitions, flushed after a commit."""

    def __init__(self):
        self._updates: dict[str, dict[str, StatUpdate]] = {}

    def add(self, principal: str, key: str, value: int, op: StatOp = StatOp.INC) -> None:
        bucket = self._updates.setdefault(principal, {})
        update = StatUpdate(op, value)
        bucket[key] = bucket[key].merge(update) if key in bucket else update

    def drain(self) -> dict[str, dict[str, StatUpdate]]:
        updates, self._updates = self._updates, {}
        return updates

    def get(self, principal: str, key: str) -> Optional[StatUpdate]:
        return self._updates.get(principal, {}).get(key)

    def __bool__(self) -> bool:
        return bool(self._updates)


@dataclass
class GameStatistics:
    """
    Cumulative per-game drink statistics.

    Attributes:
        top_drinker: ``{"id", "drinks"}`` of the player who drank the most.
        player_drinks: Player id -> drinks consumed this game.
        drinks_given: Player id -> drinks handed out this game.
        retries: Player id -> failed phase-3 runs.
    """

    top_drinker: Optional[dict] = None
    player_drinks: dict[str, int] = field(default_factory=dict)
    drinks_given: dict[str, int] = field(default_factory=dict)
    retries: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "top_drinker": dict(self.top_drinker) if self.top_drinker else None,
            "player_drinks": dict(self.player_drinks),
            "drinks_given": dict(self.drinks_given),
            "retries": dict(self.retries),
        }

    @classmethod
    def from_dict(cls, d: Optional[dict]) -> "GameStatistics":
        d = d or {}
        return cls(
            top_drinker=d.get("top_drinker"),
            player_drinks=dict(d.get("player_drinks", {})),
            drinks_given=dict(d.get("drinks_given", {})),
            retries=dict(d.get("retries", {})),
        )


class DrinkLedger:
    """Folds transient drink counts into statistics."""

    def __init__(self, statistics: GameStatistics, stats: StatBatch):
        self.statistics = statistics
        self.stats = stats

    def give(self, player_id: str, amount: int) -> None:
        """Credit ``amount`` handed-out drinks to ``player_id``."""
        if amount <= 0:
            return
        given = self.statistics.drinks_given
        given[player_id] = given.get(player_id, 0) + amount
        self.stats.add(player_id, DRINKS_GIVEN, amount)
        self.stats.add(player_id, MAX_DRINKS_GIVEN, amount, StatOp.MAX)

    def drink(self, player_id: str, amount: int) -> None:
        """Credit ``amount`` consumed drinks to ``player_id``."""
        if amount <= 0:
            return
        drinks = self.statistics.player_drinks
        drinks[player_id] = drinks.get(player_id, 0) + amount
        self.stats.add(player_id, DRINKS_SELF, amount)
        self.stats.add(player_id, MAX_DRINKS_SELF, amount, StatOp.MAX)
        self._update_top_drinker(player_id)

    def settle_turn(self, actor_id: str, pot: int, players: list, actor_drinks_pot: bool = False) -> None:
        """
        Fold the pot and every player's pending drinks, then zero them.

        Args:
            actor_id: Player whose turn is ending.
            pot: Value of the communal pot.
            players: Players with pending ``drinks``.
            actor_drinks_pot: Whether the actor drinks the pot instead of
                handing it out (phase 2, round 1).
        """
        if actor_drinks_pot:
            self.drink(actor_id, pot)
        else:
            self.give(actor_id, pot)

        for player in players:
            self.drink(player.id, player.drinks)
            player.drinks = 0

    def _update_top_drinker(self, player_id: str) -> None:
        total = self.statistics.player_drinks[player_id]
        top = self.statistics.top_drinker
        if top is None or total > top["drinks"] or top["id"] == player_id:
            self.statistics.top_drinker = {"id": player_id, "drinks": total}


def validate_give(players: list, target, inc: int, pot: int) -> Optional[str]:
    """
    Check an Avatar-mode drink hand-out.

    Returns:
        An error message, or None if the hand-out is allowed.
    """
    if target.drinks + inc < 0:
        return "Cannot take back more drinks than were given"
    total = sum(p.drinks for p in players) + inc
    if total > pot:
        return "No more drinks left in the pot"
    return None
