"""
Test suite for Busfahrer card validation rules.

Run with: pytest test_rules.py -v
"""

import pytest

from deck import Card, Suit
from rules import (
    Gender,
    MatchStyle,
    Relation,
    card_matches,
    check_last_card,
    check_relation,
    face_card_drinks,
    is_ace,
    is_face,
    is_numeric,
    matches_any,
)


def c(number: int, suit: Suit = Suit.HEARTS) -> Card:
    return Card(number, suit, flipped=True)


# =============================================================================
# Phase 1 matching
# =============================================================================

class TestMatchStyles:

    def test_number_only(self):
        assert card_matches(c(7, Suit.CLUBS), c(7, Suit.HEARTS), MatchStyle.NUMBER_ONLY)
        assert not card_matches(c(8, Suit.HEARTS), c(7, Suit.HEARTS), MatchStyle.NUMBER_ONLY)

    def test_type_only(self):
        assert card_matches(c(2, Suit.SPADES), c(13, Suit.SPADES), MatchStyle.TYPE_ONLY)
        assert not card_matches(c(13, Suit.CLUBS), c(13, Suit.SPADES), MatchStyle.TYPE_ONLY)

    def test_exact(self):
        assert card_matches(c(5, Suit.DIAMONDS), c(5, Suit.DIAMONDS), MatchStyle.EXACT)
        assert not card_matches(c(5, Suit.HEARTS), c(5, Suit.DIAMONDS), MatchStyle.EXACT)

    def test_matches_any_row_card(self):
        row = [c(3), c(9, Suit.CLUBS), c(11)]
        assert matches_any(c(9, Suit.SPADES), row, MatchStyle.NUMBER_ONLY)
        assert not matches_any(c(4), row, MatchStyle.NUMBER_ONLY)


# =============================================================================
# Phase 3 relations
# =============================================================================

class TestRelations:

    def test_equal_suit_or_rank(self):
        ref = c(6, Suit.CLUBS)
        assert check_relation(c(10, Suit.CLUBS), ref, Relation.EQUAL)
        assert check_relation(c(6, Suit.HEARTS), ref, Relation.EQUAL)
        assert not check_relation(c(7, Suit.HEARTS), ref, Relation.EQUAL)

    def test_unequal_is_complement_of_equal(self):
        ref = c(6, Suit.CLUBS)
        for card in (c(10, Suit.CLUBS), c(6, Suit.HEARTS), c(7, Suit.HEARTS)):
            assert check_relation(card, ref, Relation.UNEQUAL) != check_relation(card, ref, Relation.EQUAL)

    def test_rank_relations(self):
        ref = c(8)
        assert check_relation(c(8, Suit.SPADES), ref, Relation.SAME)
        assert check_relation(c(3), ref, Relation.LOWER)
        assert check_relation(c(14), ref, Relation.HIGHER)
        assert not check_relation(c(8), ref, Relation.HIGHER)
        assert not check_relation(c(8), ref, Relation.LOWER)

    def test_last_card_needs_both_parts(self):
        first, previous = c(2, Suit.HEARTS), c(7, Suit.CLUBS)
        assert check_last_card(c(9, Suit.HEARTS), first, previous, Relation.EQUAL, Relation.HIGHER)
        assert not check_last_card(c(5, Suit.HEARTS), first, previous, Relation.EQUAL, Relation.HIGHER)
        assert not check_last_card(c(9, Suit.SPADES), first, previous, Relation.EQUAL, Relation.HIGHER)

    def test_last_card_rejects_misplaced_relations(self):
        first, previous = c(2), c(7)
        with pytest.raises(ValueError):
            check_last_card(c(9), first, previous, Relation.HIGHER, Relation.HIGHER)
        with pytest.raises(ValueError):
            check_last_card(c(9), first, previous, Relation.EQUAL, Relation.UNEQUAL)

    def test_unknown_relation_name(self):
        with pytest.raises(ValueError):
            Relation("sideways")


# =============================================================================
# Phase 2 card classes and face-card rule
# =============================================================================

class TestCardClasses:

    @pytest.mark.parametrize("number", range(2, 11))
    def test_numeric(self, number):
        assert is_numeric(c(number))
        assert not is_face(c(number))
        assert not is_ace(c(number))

    @pytest.mark.parametrize("number", [11, 12, 13])
    def test_faces(self, number):
        assert is_face(c(number))
        assert not is_numeric(c(number))

    def test_ace(self):
        assert is_ace(c(14))
        assert not is_face(c(14))


class TestFaceCardRule:

    def test_jack_hits_male_only(self):
        assert face_card_drinks(c(11), Gender.MALE) == 1
        assert face_card_drinks(c(11), Gender.FEMALE) == 0

    def test_queen_hits_female_only(self):
        assert face_card_drinks(c(12), Gender.FEMALE) == 1
        assert face_card_drinks(c(12), Gender.MALE) == 0

    def test_king_hits_everyone(self):
        for gender in Gender:
            assert face_card_drinks(c(13), gender) == 1

    def test_other_gender_drinks_every_face(self):
        for number in (11, 12, 13):
            assert face_card_drinks(c(number), Gender.OTHER) == 1

    def test_non_face_gives_nothing(self):
        assert face_card_drinks(c(9), Gender.MALE) == 0
        assert face_card_drinks(c(14), Gender.OTHER) == 0
