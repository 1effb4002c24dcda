"""
Deck engine for Busfahrer.

Builds the 104-card table deck (two copies of every rank 2..14 in each of the
four suits) and shuffles it with one of the named strategies in
``ShuffleAlgorithm``. Every strategy returns a permutation of its input: no
card is ever dropped or duplicated.

Dealing helpers cut the shuffled deck into player hands, the phase-1 pyramid
and the phase-3 diamond.
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from constants import (
    DECK_COPIES,
    DIAMOND_FIRST,
    DIAMOND_LAST,
    DIAMOND_SIZE,
    HAND_SIZE,
    MAX_NUMBER,
    MIN_NUMBER,
    PYRAMID_SIZE,
)


class Suit(str, Enum):
    """Card suits. Serialized as the card's ``type``."""

    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class ShuffleAlgorithm(str, Enum):
    """
    Named shuffle strategies selectable per game.

    FISHER_YATES: Uniform in-place permutation.
    CHAOTIC: Biased walk that favours rank/suit streaks.
    RIFFLE: Seven imperfect riffle shuffles, like a human dealer.
    """

    FISHER_YATES = "Fisher-Yates"
    CHAOTIC = "Chaotic"
    RIFFLE = "Riffle"

    @classmethod
    def _missing_(cls, value):
        # Legacy settings spelling
        if value == "Caotic":
            return cls.CHAOTIC
        return None


@dataclass
class Card:
    """
    A playing card.

    Attributes:
        number: Rank 2..14 (11=J, 12=Q, 13=K, 14=A).
        type: Suit.
        flipped: Face up on the table (pyramid/diamond cards).
        played: Already laid from a player's hand.
    """

    number: int
    type: Suit
    flipped: bool = False
    played: bool = False

    def key(self) -> tuple[int, str]:
        """(rank, suit) identity, ignoring table state."""
        return (self.number, self.type.value)

    def to_dict(self) -> dict:
        """Full card data for persistence and for the card's owner."""
        return {
            "number": self.number,
            "type": self.type.value,
            "flipped": self.flipped,
            "played": self.played,
        }

    def to_client_dict(self) -> dict:
        """
        Board view of the card.

        Hides rank and suit while the card is face down so clients cannot
        peek at unrevealed rows.
        """
        if self.flipped:
            return {"number": self.number, "type": self.type.value, "flipped": True}
        return {"flipped": False}

    @classmethod
    def from_dict(cls, d: dict) -> "Card":
        return cls(
            number=d["number"],
            type=Suit(d["type"]),
            flipped=d.get("flipped", False),
            played=d.get("played", False),
        )


def build_deck() -> list[Card]:
    """Build the unshuffled 104-card deck."""
    return [
        Card(number, suit)
        for _ in range(DECK_COPIES)
        for suit in Suit
        for number in range(MIN_NUMBER, MAX_NUMBER + 1)
    ]


# =============================================================================
# Shuffle strategies
# =============================================================================

def fisher_yates_shuffle(deck: list[Card], rng: random.Random, **kw) -> list[Card]:
    """Classic in-place uniform permutation."""
    for i in range(len(deck) - 1, 0, -1):
        j = rng.randint(0, i)
        deck[i], deck[j] = deck[j], deck[i]
    return deck


def chaotic_shuffle(
    deck: list[Card],
    rng: random.Random,
    streak_probability: float = 0.3,
    **kw,
) -> list[Card]:
    """
    Biased walk that produces visible streaks.

    With probability ``streak_probability`` the next card is drawn from the
    remaining cards sharing rank or suit with the last drawn card (when any
    exist); otherwise it is drawn uniformly.
    """
    source = list(deck)
    result: list[Card] = []

    while source:
        index = None
        if result and rng.random() < streak_probability:
            last = result[-1]
            similar = [
                idx for idx, card in enumerate(source)
                if card.number == last.number or card.type == last.type
            ]
            if similar:
                index = rng.choice(similar)
        if index is None:
            index = rng.randrange(len(source))
        result.append(source.pop(index))

    deck[:] = result
    return deck


def riffle_shuffle(deck: list[Card], rng: random.Random, passes: int = 7, **kw) -> list[Card]:
    """Repeated riffle: cut near the middle, interleave with 50/50 picks."""
    cards = list(deck)
    for _ in range(passes):
        cut = len(cards) // 2 + rng.randint(-5, 5)
        cut = max(0, min(len(cards), cut))
        left, right = cards[:cut], cards[cut:]
        merged: list[Card] = []
        li = ri = 0
        while li < len(left) or ri < len(right):
            if li < len(left) and (ri >= len(right) or rng.random() < 0.5):
                merged.append(left[li])
                li += 1
            else:
                merged.append(right[ri])
                ri += 1
        cards = merged
    deck[:] = cards
    return deck


SHUFFLERS: dict[ShuffleAlgorithm, Callable[..., list[Card]]] = {
    ShuffleAlgorithm.FISHER_YATES: fisher_yates_shuffle,
    ShuffleAlgorithm.CHAOTIC: chaotic_shuffle,
    ShuffleAlgorithm.RIFFLE: riffle_shuffle,
}


def shuffle_deck(
    deck: list[Card],
    algorithm: ShuffleAlgorithm,
    rng: Optional[random.Random] = None,
    streak_probability: float = 0.3,
) -> list[Card]:
    """
    Shuffle a deck in place with the named strategy.

    Args:
        deck: Cards to shuffle.
        algorithm: Strategy to use.
        rng: Random source (a fresh unseeded one if omitted).
        streak_probability: Streak bias for the chaotic strategy.

    Returns:
        The same list, permuted.

    Raises:
        ValueError: If the deck is empty.
    """
    if not deck:
        raise ValueError("Cannot shuffle an empty deck")
    rng = rng or random.Random()
    return SHUFFLERS[algorithm](deck, rng, streak_probability=streak_probability)


def create_deck(
    algorithm: ShuffleAlgorithm,
    rng: Optional[random.Random] = None,
    streak_probability: float = 0.3,
) -> list[Card]:
    """Build and shuffle a fresh 104-card deck."""
    return shuffle_deck(build_deck(), algorithm, rng, streak_probability)


# =============================================================================
# Dealing
# =============================================================================

def deal_hand(deck: list[Card], size: int = HAND_SIZE) -> list[Card]:
    """Cut a face-up hand off the top of the deck."""
    if len(deck) < size:
        raise ValueError(f"Deck has {len(deck)} cards, cannot deal a hand of {size}")
    hand, deck[:] = deck[:size], deck[size:]
    for card in hand:
        card.flipped = True
        card.played = False
    return hand


def deal_pyramid(deck: list[Card]) -> list[Card]:
    """Cut the 15 face-down pyramid cards off the deck."""
    if len(deck) < PYRAMID_SIZE:
        raise ValueError("Not enough cards left for the pyramid")
    pyramid, deck[:] = deck[:PYRAMID_SIZE], deck[PYRAMID_SIZE:]
    for card in pyramid:
        card.flipped = False
        card.played = False
    return pyramid


def deal_diamond(deck: list[Card]) -> list[Card]:
    """Cut the 27 diamond cards off the deck with both sentinels face up."""
    if len(deck) < DIAMOND_SIZE:
        raise ValueError("Not enough cards left for the diamond")
    diamond, deck[:] = deck[:DIAMOND_SIZE], deck[DIAMOND_SIZE:]
    for idx, card in enumerate(diamond):
        card.flipped = idx in (DIAMOND_FIRST, DIAMOND_LAST)
        card.played = False
    return diamond


def row_bounds(rows: tuple[int, ...], row: int) -> tuple[int, int]:
    """
    Flat [start, end) indices of a row in a layout.

    Args:
        rows: Row sizes of the layout (PYRAMID_ROWS or DIAMOND_ROWS).
        row: Zero-based row number.
    """
    if not 0 <= row < len(rows):
        raise ValueError(f"Row {row} outside layout")
    start = sum(rows[:row])
    return start, start + rows[row]


def row_of(rows: tuple[int, ...], index: int) -> int:
    """Zero-based row containing a flat card index."""
    start = 0
    for row, size in enumerate(rows):
        if start <= index < start + size:
            return row
        start += size
    raise ValueError(f"Index {index} outside layout")
