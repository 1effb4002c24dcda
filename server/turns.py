"""
Turn resolution and Busfahrer selection.

``next_player`` computes who acts next under a turn mode and marks the
current player as having acted. Advancing the round counter once everyone has
acted is the phase state machine's job, not the resolver's.
"""

import random
from enum import Enum
from typing import Optional, Protocol

from errors import InvariantViolation


class TurnMode(str, Enum):
    DEFAULT = "Default"
    REVERSE = "Reverse"
    RANDOM = "Random"


class BusfahrerMode(str, Enum):
    DEFAULT = "Default"   # most unplayed cards
    REVERSE = "Reverse"   # fewest unplayed cards
    RANDOM = "Random"     # single uniform pick


class TurnPlayer(Protocol):
    id: str
    had_turn: bool


def next_player(
    mode: TurnMode,
    turn_order: list[str],
    players: list[TurnPlayer],
    current: str,
    rng: Optional[random.Random] = None,
) -> str:
    """
    Compute the next active player and mark the current one as done.

    Args:
        mode: Turn policy.
        turn_order: Fixed permutation of player ids.
        players: Players carrying ``had_turn`` flags.
        current: Id of the player whose turn is ending.
        rng: Random source for RANDOM mode.

    Returns:
        Id of the next active player.

    Raises:
        InvariantViolation: If ``current`` is not in ``turn_order``.
    """
    if current not in turn_order:
        raise InvariantViolation(f"Active player {current} missing from turn order")

    idx = turn_order.index(current)
    n = len(turn_order)
    by_id = {p.id: p for p in players}
    if current in by_id:
        by_id[current].had_turn = True

    if mode == TurnMode.REVERSE:
        return turn_order[(idx - 1 + n) % n]

    if mode == TurnMode.RANDOM:
        rng = rng or random.Random()
        remaining = [
            pid for pid in turn_order
            if pid != current and pid in by_id and not by_id[pid].had_turn
        ]
        if not remaining:
            return turn_order[0]
        return rng.choice(remaining)

    return turn_order[(idx + 1) % n]


def all_had_turn(players: list[TurnPlayer]) -> bool:
    return all(p.had_turn for p in players)


def reset_turns(players: list[TurnPlayer], value: bool = False) -> None:
    for p in players:
        p.had_turn = value


def select_busfahrer(
    mode: BusfahrerMode,
    unplayed: dict[str, int],
    rng: Optional[random.Random] = None,
) -> list[str]:
    """
    Pick the Busfahrer(s) from per-player unplayed-card counts.

    Ties under DEFAULT (arg-max) and REVERSE (arg-min) select every tied
    player. RANDOM always yields exactly one id.

    Args:
        mode: Selection mode.
        unplayed: Player id -> count of unplayed hand cards, in roster order.
        rng: Random source for RANDOM mode.
    """
    if not unplayed:
        return []

    if mode == BusfahrerMode.RANDOM:
        rng = rng or random.Random()
        return [rng.choice(list(unplayed))]

    target = min(unplayed.values()) if mode == BusfahrerMode.REVERSE else max(unplayed.values())
    return [pid for pid, count in unplayed.items() if count == target]
