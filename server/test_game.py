"""
Test suite for the Busfahrer phase state machine.

Verifies the game flow end to end:
- Lobby: joining, player limit, starting
- Phase 1: row flipping, matching, drink pot, round advance
- Phase 2: numeric / face / Ace rounds and the face-card rule
- Phase 3: diamond run authorization, guesses, failure and retry
- Game replacement and document diffs

Run with: pytest test_game.py -v
"""

import random

import pytest

from constants import DIAMOND_ROWS, MAX_SPECTATORS, PYRAMID_SIZE
from deck import Card, Suit, row_bounds
from errors import (
    ALREADY_JOINED,
    CARD_MISMATCH,
    CARD_PLAYED,
    CARDS_REMAINING,
    DRINK_LIMIT,
    GAME_FULL,
    INVALID_RELATION,
    INVALID_TARGET,
    NOT_BUSFAHRER,
    NOT_OWNER,
    NOT_TRY_OWNER,
    NOT_YOUR_TURN,
    ROW_FLIPPED,
    ROW_NOT_FLIPPED,
    SPECTATOR_LIMIT,
    WRONG_PHASE,
    WRONG_ROUND,
    AuthorizationError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from game import Game, GamePhase, GameSettings, PlayerRole, diff_fields
from ledger import GiveMode
from rules import Gender, Relation


# =============================================================================
# Helpers
# =============================================================================

def make_game(num_players: int = 2, seed: int = 1, **settings) -> Game:
    """Waiting game owned by p0 (male); other players are female."""
    game = Game.create(
        "p0", "Player 0", Gender.MALE, GameSettings(**settings), rng=random.Random(seed)
    )
    for i in range(1, num_players):
        game.add_player(f"p{i}", f"Player {i}", Gender.FEMALE)
    return game


def held(number: int, suit: Suit = Suit.SPADES) -> Card:
    return Card(number, suit, flipped=True)


def started_game(num_players: int = 2, **settings) -> Game:
    """Phase-1 game whose first pyramid row is a 5 of hearts and p0 holds a 5 of spades."""
    game = make_game(num_players, **settings)
    game.start("p0")
    game.cards[0] = Card(5, Suit.HEARTS)
    game.players[0].cards[0] = held(5)
    return game


def finish_phase1(game: Game) -> None:
    """Flip every row and pass every turn until the terminal round."""
    while game.round < 6:
        game.flip_row("p0", game.round)
        for player_id in list(game.turn_order):
            game.next_player(player_id)


def phase2_game() -> Game:
    """Phase-2 game with fixed hands: p0 (male) 3, K, A; p1 (female) Q, 5."""
    game = make_game(2)
    game.start("p0")
    finish_phase1(game)
    game.start_phase2("p0")
    game.players[0].cards = [held(3), held(13), held(14)]
    game.players[1].cards = [held(12, Suit.DIAMONDS), held(5)]
    return game


def make_diamond() -> list[Card]:
    """First card 2 of hearts, last card Ace of spades, sevens of clubs between."""
    cards = [Card(7, Suit.CLUBS) for _ in range(27)]
    cards[0] = Card(2, Suit.HEARTS, flipped=True)
    cards[26] = Card(14, Suit.SPADES, flipped=True)
    cards[1] = Card(10, Suit.SPADES)
    return cards


def phase3_game(busfahrer=("p1",), **settings) -> Game:
    """Three-player game placed at the start of a diamond run."""
    game = make_game(3, **settings)
    game.start("p0")
    game.phase = GamePhase.PHASE3
    game.busfahrer = list(busfahrer)
    game.piles = []
    game.cards = make_diamond()
    game.round = 9
    game.last_card = 0
    game.active_player = busfahrer[0] if busfahrer else "p0"
    return game


def hidden_in_row(game: Game, row: int) -> int:
    start, end = row_bounds(DIAMOND_ROWS, row)
    return next(i for i in range(start, end) if not game.cards[i].flipped)


# =============================================================================
# Lobby
# =============================================================================

class TestLobby:

    def test_creator_is_owner(self):
        game = make_game(1)
        assert game.phase == GamePhase.WAITING
        assert game.players[0].role == PlayerRole.OWNER
        assert game.owner.id == "p0"
        assert game.pending_stats.get("p0", "gamesHosted").value == 1

    def test_join(self):
        game = make_game(2)
        assert [p.id for p in game.players] == ["p0", "p1"]
        assert game.players[1].role == PlayerRole.PLAYER
        assert game.pending_stats.get("p1", "gamesJoined").value == 1

    def test_join_twice_rejected(self):
        game = make_game(2)
        with pytest.raises(ValidationError) as exc:
            game.add_player("p1", "Again")
        assert exc.value.code == ALREADY_JOINED

    def test_player_limit(self):
        game = make_game(2, player_limit=2)
        with pytest.raises(ValidationError) as exc:
            game.add_player("p2", "Late")
        assert exc.value.code == GAME_FULL

    def test_join_after_start_rejected(self):
        game = make_game(2)
        game.start("p0")
        with pytest.raises(ValidationError) as exc:
            game.add_player("p2", "Late")
        assert exc.value.code == WRONG_PHASE

    def test_start_needs_two_players(self):
        game = make_game(1)
        with pytest.raises(ValidationError):
            game.start("p0")

    def test_only_owner_starts(self):
        game = make_game(2)
        with pytest.raises(AuthorizationError) as exc:
            game.start("p1")
        assert exc.value.code == NOT_OWNER

    def test_start_deals_hands_and_pyramid(self):
        game = make_game(2)
        game.start("p0")
        assert game.phase == GamePhase.PHASE1
        assert all(len(p.cards) == 10 for p in game.players)
        assert len(game.cards) == PYRAMID_SIZE
        assert game.round == 1
        assert game.last_round == 0
        assert game.turn_order == ["p0", "p1"]
        assert game.active_player == "p0"
        assert not any(c.flipped for c in game.cards)

    def test_unknown_player(self):
        game = make_game(2)
        with pytest.raises(NotFoundError):
            game.require_player("nobody")


class TestLeave:

    def test_owner_leaving_destroys_game(self):
        game = make_game(2)
        assert game.remove_player("p0") is True

    def test_active_player_leaving_passes_turn(self):
        game = make_game(3)
        game.start("p0")
        game.active_player = "p1"
        assert game.remove_player("p1") is False
        assert game.active_player == "p2"
        assert game.turn_order == ["p0", "p2"]
        assert game.get_player("p1") is None
        assert game.pending_stats.get("p1", "gamesLeft").value == 1

    def test_last_player_of_round_leaving_opens_next_round(self):
        game = make_game(3)
        game.start("p0")
        game.flip_row("p0", 1)
        game.next_player("p0")
        game.next_player("p1")
        assert game.active_player == "p2"

        game.remove_player("p2")

        assert game.round == 2
        assert game.active_player == "p0"
        assert not any(p.had_turn for p in game.players)
        game.flip_row("p0", 2)
        game.next_player("p0")
        assert game.active_player == "p1"

    def test_leaving_mid_round_keeps_round(self):
        game = make_game(3)
        game.start("p0")
        game.flip_row("p0", 1)
        game.next_player("p0")
        game.remove_player("p1")
        assert game.round == 1
        assert game.active_player == "p2"

    def test_leaving_clears_busfahrer_and_try_owner(self):
        game = phase3_game(busfahrer=("p1", "p2"))
        game.try_owner = "p2"
        game.remove_player("p2")
        assert game.busfahrer == ["p1"]
        assert game.try_owner is None


class TestSpectators:

    def test_spectate_any_phase(self):
        game = make_game(2)
        game.start("p0")
        spectator = game.add_spectator("s1", "Watcher")
        assert spectator.name == "Watcher"
        assert [s.id for s in game.spectators] == ["s1"]
        assert game.get_player("s1") is None

    def test_player_cannot_spectate(self):
        game = make_game(2)
        with pytest.raises(ValidationError) as exc:
            game.add_spectator("p1")
        assert exc.value.code == ALREADY_JOINED

    def test_spectator_limit(self):
        game = make_game(2)
        for i in range(MAX_SPECTATORS):
            game.add_spectator(f"s{i}")
        with pytest.raises(ValidationError) as exc:
            game.add_spectator("late")
        assert exc.value.code == SPECTATOR_LIMIT

    def test_spectator_taking_a_seat(self):
        game = make_game(2)
        game.add_spectator("s1")
        game.add_player("s1", "Now playing")
        assert game.spectators == []
        assert game.players[-1].id == "s1"

    def test_spectator_view_has_no_hand(self):
        game = started_game(2)
        game.add_spectator("s1")
        state = game.get_state("s1")
        assert state["hand"] == []
        assert state["spectators"] == [game.spectators[0].to_dict()]
        assert all("cards" not in p for p in state["players"])

    def test_spectator_cannot_act(self):
        game = started_game(2)
        game.add_spectator("s1")
        with pytest.raises(NotFoundError):
            game.next_player("s1")
        with pytest.raises(NotFoundError):
            game.lay_card("s1", 0)

    def test_spectator_may_ping_chat(self):
        game = make_game(2)
        game.add_spectator("s1")
        game.ping_chat("s1")
        assert game.chat_version == 1

    def test_remove_spectator(self):
        game = make_game(2)
        game.add_spectator("s1")
        game.remove_spectator("s1")
        assert game.spectators == []
        with pytest.raises(NotFoundError):
            game.remove_spectator("s1")

    def test_spectators_survive_roundtrip_and_replacement(self):
        game = phase3_game()
        game.add_spectator("s1", "Watcher")
        restored = Game.from_dict(game.to_dict())
        assert restored.spectators == game.spectators

        game.end_game = True
        new_game = game.open_new_game("p0")
        assert [s.id for s in new_game.spectators] == ["s1"]


class TestKick:

    def test_owner_kicks_player(self):
        game = make_game(3)
        game.kick_player("p0", "p2")
        assert [p.id for p in game.players] == ["p0", "p1"]
        assert game.pending_stats.get("p0", "playersKicked").value == 1
        assert game.pending_stats.get("p2", "gotKicked").value == 1

    def test_owner_kicks_spectator(self):
        game = make_game(2)
        game.add_spectator("s1")
        game.kick_player("p0", "s1")
        assert game.spectators == []
        assert len(game.players) == 2

    def test_only_owner_kicks(self):
        game = make_game(3)
        with pytest.raises(AuthorizationError) as exc:
            game.kick_player("p1", "p2")
        assert exc.value.code == NOT_OWNER

    def test_owner_cannot_kick_self(self):
        game = make_game(2)
        with pytest.raises(ValidationError) as exc:
            game.kick_player("p0", "p0")
        assert exc.value.code == INVALID_TARGET

    def test_unknown_target(self):
        game = make_game(2)
        with pytest.raises(NotFoundError):
            game.kick_player("p0", "nobody")

    def test_kicking_last_player_of_round_opens_next_round(self):
        game = make_game(3)
        game.start("p0")
        game.flip_row("p0", 1)
        game.next_player("p0")
        game.next_player("p1")

        game.kick_player("p0", "p2")

        assert game.round == 2
        assert game.active_player == "p0"


# =============================================================================
# Phase 1
# =============================================================================

class TestPhase1Scenario:

    def test_two_player_round(self):
        """Flip, match, pass twice: round 2 with fresh turn flags."""
        game = started_game(2)

        game.flip_row("p0", 1)
        assert game.last_round == 1
        assert game.cards[0].flipped

        game.lay_card("p0", 0)
        assert game.drink_count == 1
        assert game.players[0].cards[0].played

        game.next_player("p0")
        assert game.active_player == "p1"
        assert game.drink_count == 0
        assert game.statistics.drinks_given == {"p0": 1}

        game.next_player("p1")
        assert game.round == 2
        assert all(not p.had_turn for p in game.players)
        assert game.active_player == "p0"

    def test_pot_uses_round_index(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        game.next_player("p0")
        game.next_player("p1")
        game.flip_row("p0", 2)
        game.cards[1] = Card(9, Suit.CLUBS, flipped=True)
        game.players[0].cards[1] = held(9)
        game.lay_card("p0", 1)
        assert game.drink_count == 2

    def test_chaos_mode_adds_card_number(self):
        game = started_game(2, is_chaos=True)
        game.chaos_probability = 0.0
        game.flip_row("p0", 1)
        game.lay_card("p0", 0)
        assert game.drink_count == 5


class TestPhase1Rules:

    def test_lay_before_flip(self):
        game = started_game(2)
        with pytest.raises(ValidationError) as exc:
            game.lay_card("p0", 0)
        assert exc.value.code == ROW_NOT_FLIPPED

    def test_lay_out_of_turn(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        with pytest.raises(AuthorizationError) as exc:
            game.lay_card("p1", 0)
        assert exc.value.code == NOT_YOUR_TURN

    def test_lay_mismatch(self):
        game = started_game(2)
        game.players[0].cards[1] = held(6)
        game.flip_row("p0", 1)
        with pytest.raises(ValidationError) as exc:
            game.lay_card("p0", 1)
        assert exc.value.code == CARD_MISMATCH

    def test_lay_same_card_twice(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        game.lay_card("p0", 0)
        with pytest.raises(ValidationError) as exc:
            game.lay_card("p0", 0)
        assert exc.value.code == CARD_PLAYED

    def test_invalid_card_index(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        with pytest.raises(ValidationError):
            game.lay_card("p0", 10)

    def test_flip_wrong_row(self):
        game = started_game(2)
        with pytest.raises(ValidationError) as exc:
            game.flip_row("p0", 2)
        assert exc.value.code == WRONG_ROUND

    def test_flip_twice(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        with pytest.raises(ValidationError) as exc:
            game.flip_row("p0", 1)
        assert exc.value.code == ROW_FLIPPED

    def test_only_owner_flips(self):
        game = started_game(2)
        with pytest.raises(AuthorizationError):
            game.flip_row("p1", 1)

    def test_pass_before_flip(self):
        game = started_game(2)
        with pytest.raises(ValidationError) as exc:
            game.next_player("p0")
        assert exc.value.code == ROW_NOT_FLIPPED

    def test_rejection_leaves_state_untouched(self):
        game = started_game(2)
        before = game.to_dict()
        with pytest.raises(ValidationError):
            game.lay_card("p0", 0)
        with pytest.raises(AuthorizationError):
            game.next_player("p1")
        assert game.to_dict() == before

    def test_missing_active_player_is_invariant_violation(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        game.turn_order.remove("p0")
        with pytest.raises(InvariantViolation):
            game.next_player("p0")

    def test_phase2_needs_terminal_round(self):
        game = started_game(2)
        with pytest.raises(ValidationError) as exc:
            game.start_phase2("p0")
        assert exc.value.code == WRONG_ROUND


class TestGiveDrink:

    def test_avatar_mode_hands_out_pot(self):
        game = started_game(2, giving=GiveMode.AVATAR)
        game.flip_row("p0", 1)
        game.lay_card("p0", 0)
        game.give_drink("p0", "p1", 1)
        assert game.players[1].drinks == 1

        with pytest.raises(ValidationError) as exc:
            game.give_drink("p0", "p1", 1)
        assert exc.value.code == DRINK_LIMIT

        game.next_player("p0")
        assert game.statistics.player_drinks == {"p1": 1}
        assert game.players[1].drinks == 0

    def test_default_mode_rejects(self):
        game = started_game(2)
        with pytest.raises(ValidationError):
            game.give_drink("p0", "p1", 1)


# =============================================================================
# Phase 2
# =============================================================================

class TestPhase2:

    def test_start_elects_busfahrer(self):
        game = make_game(2)
        game.start("p0")
        finish_phase1(game)
        assert game.round == 6
        game.players[0].cards[0].played = True
        game.start_phase2("p0")

        assert game.phase == GamePhase.PHASE2
        assert game.busfahrer == ["p1"]
        assert game.round == 1
        assert game.piles == [[], [], []]
        assert game.active_player == "p0"
        assert game.pending_stats.get("p1", "gamesBusfahrer").value == 1
        assert game.pending_stats.get("p0", "cardsPlayedPhase1").value == 1

    def test_terminal_pass_starts_phase2(self):
        game = make_game(2)
        game.start("p0")
        finish_phase1(game)
        game.next_player("p0")
        assert game.phase == GamePhase.PHASE2

    def test_full_hand_clearing(self):
        game = phase2_game()

        # Round 1: numeric cards, actor drinks the pot
        with pytest.raises(ValidationError) as exc:
            game.lay_card("p0", 1)
        assert exc.value.code == CARD_MISMATCH
        game.lay_card("p0", 0)
        assert game.drink_count == 3
        assert game.piles[0][0].number == 3
        game.next_player("p0")
        assert game.statistics.player_drinks["p0"] == 3
        assert game.active_player == "p1"

        with pytest.raises(ValidationError) as exc:
            game.next_player("p1")
        assert exc.value.code == CARDS_REMAINING
        game.lay_card("p1", 1)
        assert game.drink_count == 5
        game.next_player("p1")
        assert game.statistics.player_drinks["p1"] == 5
        assert game.round == 2

        # Round 2: any player lays faces
        game.lay_card("p1", 0)
        assert game.players[0].drinks == 0
        assert game.players[1].had_turn
        with pytest.raises(ValidationError) as exc:
            game.next_player("p0")
        assert exc.value.code == CARDS_REMAINING
        game.lay_card("p0", 1)
        assert game.players[1].drinks == 1
        game.next_player("p0")
        assert game.round == 3
        assert game.active_player == "p0"
        assert game.statistics.player_drinks["p1"] == 6

        # Round 3: Aces
        with pytest.raises(ValidationError) as exc:
            game.next_player("p0")
        assert exc.value.code == CARDS_REMAINING
        game.lay_card("p0", 2)
        assert game.players[0].exen
        assert game.pending_stats.get("p0", "numberEx").value == 1
        game.next_player("p0")
        game.next_player("p1")
        assert game.round == 4

        # Round 4: terminal, passing opens the diamond
        game.next_player(game.active_player)
        assert game.phase == GamePhase.PHASE3
        assert game.round == 9
        assert len(game.cards) == 27
        assert game.active_player == game.busfahrer[0]

    def test_round2_face_from_non_active_player(self):
        game = phase2_game()
        game.round = 2
        game.active_player = "p0"
        game.lay_card("p1", 0)
        assert game.players[1].cards[0].played

    def test_phase3_needs_terminal_round(self):
        game = phase2_game()
        with pytest.raises(ValidationError) as exc:
            game.start_phase3("p0")
        assert exc.value.code == WRONG_ROUND


# =============================================================================
# Phase 3
# =============================================================================

class TestPhase3Authorization:

    def test_non_busfahrer_rejected_busfahrer_accepted(self):
        game = phase3_game(busfahrer=("p1",), is_everyone=False)
        with pytest.raises(AuthorizationError) as exc:
            game.check_card("p2", 1, Relation.HIGHER)
        assert exc.value.code == NOT_BUSFAHRER

        assert game.check_card("p1", 1, Relation.HIGHER) is True
        assert game.try_owner == "p1"

    def test_run_belongs_to_try_owner(self):
        game = phase3_game(busfahrer=("p1", "p2"))
        game.check_card("p1", 1, Relation.HIGHER)
        with pytest.raises(AuthorizationError) as exc:
            game.check_card("p2", hidden_in_row(game, 1), Relation.SAME)
        assert exc.value.code == NOT_TRY_OWNER

    def test_everyone_may_run(self):
        game = phase3_game(busfahrer=("p1",), is_everyone=True)
        assert game.check_card("p2", 1, Relation.HIGHER) is True
        assert game.try_owner == "p2"

    def test_anyone_may_run_without_busfahrer(self):
        game = phase3_game(busfahrer=())
        assert game.check_card("p2", 1, Relation.HIGHER) is True


class TestDiamondRun:

    def test_correct_guess_advances(self):
        game = phase3_game()
        game.check_card("p1", 1, Relation.HIGHER)
        assert game.round == 8
        assert game.last_card == 1
        assert game.cards[1].flipped

    def test_wrong_guess_fails_run(self):
        game = phase3_game()
        assert game.check_card("p1", 1, Relation.LOWER) is False
        assert game.round == -1
        assert game.try_owner is None
        assert game.last_try_owner == "p1"
        assert game.drink_count == 1
        assert game.statistics.player_drinks["p1"] == 1
        assert game.pending_stats.get("p1", "phase3Failed").value == 1

    def test_failure_drinks_rows_reached(self):
        game = phase3_game()
        game.check_card("p1", 1, Relation.HIGHER)
        game.check_card("p1", hidden_in_row(game, 1), Relation.LOWER)
        game.check_card("p1", hidden_in_row(game, 2), Relation.HIGHER)
        assert game.drink_count == 3

    def test_card_outside_current_row(self):
        game = phase3_game()
        with pytest.raises(ValidationError) as exc:
            game.check_card("p1", 5, Relation.HIGHER)
        assert exc.value.code == WRONG_ROUND

    def test_revealed_card_rejected(self):
        game = phase3_game()
        with pytest.raises(ValidationError) as exc:
            game.check_card("p1", 0, Relation.HIGHER)
        assert exc.value.code == CARD_PLAYED

    def test_guessing_after_failure_rejected(self):
        game = phase3_game()
        game.check_card("p1", 1, Relation.LOWER)
        with pytest.raises(ValidationError) as exc:
            game.check_card("p1", 1, Relation.HIGHER)
        assert exc.value.code == WRONG_ROUND

    def test_full_run_wins(self):
        game = phase3_game()
        for r in range(9, 1, -1):
            if r == 9:
                relation = Relation.HIGHER
            elif r == 8:
                relation = Relation.LOWER
            else:
                relation = Relation.SAME
            assert game.check_card("p1", hidden_in_row(game, 9 - r), relation)
        assert game.round == 1

        with pytest.raises(ValidationError) as exc:
            game.check_card("p1", 25, Relation.SAME)
        assert exc.value.code == WRONG_ROUND

        assert game.check_last_card("p1", 25, Relation.UNEQUAL, Relation.SAME) is True
        assert game.end_game
        assert game.round == 0
        assert game.pending_stats.get("p1", "gamesWon").value == 1
        for pid in ("p0", "p1", "p2"):
            assert game.pending_stats.get(pid, "gamesPlayed").value == 1

    def test_last_card_compound_check(self):
        game = phase3_game()
        game.round = 1
        game.last_card = 23
        game.cards[23] = Card(7, Suit.CLUBS, flipped=True)
        game.cards[25] = Card(9, Suit.HEARTS)
        assert game.check_last_card("p1", 25, Relation.EQUAL, Relation.HIGHER) is True

    def test_last_card_wrong_guess(self):
        game = phase3_game()
        game.round = 1
        game.last_card = 23
        game.cards[25] = Card(9, Suit.HEARTS)
        assert game.check_last_card("p1", 25, Relation.UNEQUAL, Relation.HIGHER) is False
        assert game.round == -1
        assert game.drink_count == 9

    def test_last_card_invalid_relation(self):
        game = phase3_game()
        game.round = 1
        with pytest.raises(ValidationError) as exc:
            game.check_last_card("p1", 25, Relation.HIGHER, Relation.HIGHER)
        assert exc.value.code == INVALID_RELATION

    def test_last_card_before_final_row(self):
        game = phase3_game()
        with pytest.raises(ValidationError) as exc:
            game.check_last_card("p1", 1, Relation.EQUAL, Relation.HIGHER)
        assert exc.value.code == WRONG_ROUND


class TestRetry:

    def test_retry_deals_fresh_diamond(self):
        game = phase3_game()
        game.check_card("p1", 1, Relation.LOWER)
        game.retry("p0")
        assert game.round == 9
        assert game.last_card == 0
        assert game.try_owner is None
        assert game.statistics.retries == {"p1": 1}
        assert len(game.cards) == 27
        assert [i for i, c in enumerate(game.cards) if c.flipped] == [0, 26]

    def test_only_owner_retries(self):
        game = phase3_game()
        game.check_card("p1", 1, Relation.LOWER)
        with pytest.raises(AuthorizationError):
            game.retry("p1")

    def test_retry_needs_failed_run(self):
        game = phase3_game()
        with pytest.raises(ValidationError) as exc:
            game.retry("p0")
        assert exc.value.code == WRONG_ROUND


# =============================================================================
# Lifecycle and projections
# =============================================================================

class TestNewGame:

    def test_requires_end_game(self):
        game = phase3_game()
        with pytest.raises(ValidationError) as exc:
            game.open_new_game("p0")
        assert exc.value.code == WRONG_PHASE

    def test_clones_roster_into_phase1(self):
        game = phase3_game()
        game.end_game = True
        new_game = game.open_new_game("p0")

        assert game.replaced_by == new_game.id
        assert new_game.id != game.id
        assert new_game.phase == GamePhase.PHASE1
        assert [p.id for p in new_game.players] == ["p0", "p1", "p2"]
        assert [p.role for p in new_game.players] == [p.role for p in game.players]
        assert new_game.settings == game.settings
        assert all(len(p.cards) == 10 for p in new_game.players)

    def test_only_owner(self):
        game = phase3_game()
        game.end_game = True
        with pytest.raises(AuthorizationError):
            game.open_new_game("p1")


class TestProjections:

    def test_document_roundtrip(self):
        game = phase2_game()
        restored = Game.from_dict(game.to_dict())
        assert restored.to_dict() == game.to_dict()

    def test_state_contains_only_own_hand(self):
        game = started_game(2)
        state = game.get_state("p1")
        assert state["hand"] == [c.to_dict() for c in game.players[1].cards]
        assert all("cards" not in p for p in state["players"])
        assert all(p["cards_left"] == 10 for p in state["players"])

    def test_board_masks_hidden_cards(self):
        game = started_game(2)
        game.flip_row("p0", 1)
        board = game.board_dict()
        assert board["cards"][0] == {"number": 5, "type": "hearts", "flipped": True}
        assert board["cards"][1] == {"flipped": False}

    def test_chat_ping(self):
        game = make_game(2)
        game.ping_chat("p1")
        assert game.chat_version == 1
        with pytest.raises(NotFoundError):
            game.ping_chat("stranger")


class TestDiffFields:

    def test_top_level_and_player_paths(self):
        game = started_game(2)
        before = game.to_dict()
        game.flip_row("p0", 1)
        game.lay_card("p0", 0)
        fields = diff_fields(before, game.to_dict())
        assert "cards" in fields
        assert "last_round" in fields
        assert "drink_count" in fields
        assert "players.0.cards" in fields
        assert "players.1.cards" not in fields

    def test_roster_change_reports_players(self):
        game = make_game(2)
        before = game.to_dict()
        game.add_player("p2", "Third")
        assert diff_fields(before, game.to_dict()) == ["players"]

    def test_insert_reports_every_key(self):
        doc = make_game(1).to_dict()
        assert diff_fields(None, doc) == sorted(doc)

    def test_no_change(self):
        doc = make_game(1).to_dict()
        assert diff_fields(doc, dict(doc)) == []
