"""
Card validation rules for Busfahrer.

All rules are pure functions of (card, target, style): they never mutate
their arguments. The phase state machine applies the outcome.

Phase 1 row match (``MatchStyle``):
    Number-only: rank equality
    Type-only:   suit equality
    Exact:       rank and suit equality

Phase 3 relations (``Relation``), comparing a revealed card to a reference:
    equal:   same suit OR same rank
    unequal: different suit AND different rank
    same:    same rank
    lower:   lower rank
    higher:  higher rank

Phase 2 face-card rule:
    Jack  -> 1 drink for every male player
    Queen -> 1 drink for every female player
    King  -> 1 drink for everyone
    Players of any other gender drink 1 for every face card.
"""

from enum import Enum
from typing import Callable

from constants import ACE, JACK, KING, QUEEN
from deck import Card


class MatchStyle(str, Enum):
    """How a held card must match a revealed pyramid card."""

    NUMBER_ONLY = "Number-only"
    TYPE_ONLY = "Type-only"
    EXACT = "Exact"


class Relation(str, Enum):
    """Relational guesses available in phase 3."""

    EQUAL = "equal"
    UNEQUAL = "unequal"
    SAME = "same"
    LOWER = "lower"
    HIGHER = "higher"


# Relations allowed for the compound first-card part of the final guess
SUIT_RELATIONS = frozenset({Relation.EQUAL, Relation.UNEQUAL})
# Relations allowed for the previous-card part of the final guess
RANK_RELATIONS = frozenset({Relation.SAME, Relation.LOWER, Relation.HIGHER})


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


def card_matches(card: Card, target: Card, style: MatchStyle) -> bool:
    """Check whether a held card matches a revealed card under a match style."""
    if style == MatchStyle.EXACT:
        return card.number == target.number and card.type == target.type
    if style == MatchStyle.TYPE_ONLY:
        return card.type == target.type
    return card.number == target.number


def matches_any(card: Card, row: list[Card], style: MatchStyle) -> bool:
    return any(card_matches(card, target, style) for target in row)


RELATION_CHECKS: dict[Relation, Callable[[Card, Card], bool]] = {
    Relation.EQUAL: lambda card, ref: card.type == ref.type or card.number == ref.number,
    Relation.UNEQUAL: lambda card, ref: card.type != ref.type and card.number != ref.number,
    Relation.SAME: lambda card, ref: card.number == ref.number,
    Relation.LOWER: lambda card, ref: card.number < ref.number,
    Relation.HIGHER: lambda card, ref: card.number > ref.number,
}


def check_relation(card: Card, reference: Card, relation: Relation) -> bool:
    """Evaluate a phase-3 guess of ``card`` against ``reference``."""
    return RELATION_CHECKS[relation](card, reference)


def check_last_card(
    card: Card,
    first_card: Card,
    previous_card: Card,
    relation: Relation,
    last_relation: Relation,
) -> bool:
    """
    Compound check for the final diamond guess.

    ``relation`` (equal/unequal) is evaluated against the first diamond card
    and ``last_relation`` (same/lower/higher) against the previous card; both
    must hold.

    Raises:
        ValueError: If a relation is not allowed in its position.
    """
    if relation not in SUIT_RELATIONS:
        raise ValueError(f"{relation.value} cannot be used against the first card")
    if last_relation not in RANK_RELATIONS:
        raise ValueError(f"{last_relation.value} cannot be used against the previous card")
    return (
        check_relation(card, first_card, relation)
        and check_relation(card, previous_card, last_relation)
    )


# =============================================================================
# Phase 2 card classes
# =============================================================================

def is_numeric(card: Card) -> bool:
    return 2 <= card.number <= 10


def is_face(card: Card) -> bool:
    return JACK <= card.number <= KING


def is_ace(card: Card) -> bool:
    return card.number == ACE


def face_card_drinks(card: Card, gender: Gender) -> int:
    """Drinks a player of ``gender`` receives when someone else lays ``card``."""
    if not is_face(card):
        return 0
    if card.number == KING:
        return 1
    if gender == Gender.MALE:
        return 1 if card.number == JACK else 0
    if gender == Gender.FEMALE:
        return 1 if card.number == QUEEN else 0
    return 1
