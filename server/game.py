"""
Game logic for Busfahrer.

This module implements the phase state machine of the Busfahrer drinking
game: roster management, the three sub-games, and the transitions between
them. Every transition validates its preconditions first and raises a
``GameError`` subclass before touching any state, so a rejected action never
leaves a partial mutation behind.

Busfahrer Rules Summary:
    - Phase 1 (pyramid): every player holds 10 cards. The owner reveals the
      pyramid row by row; players lay held cards that match the revealed row
      and hand out drinks.
    - Phase 2 (hand clearing): the players with the most unplayed cards become
      Busfahrer. Remaining cards are laid in three rounds: 2-10, faces, Aces.
    - Phase 3 (diamond): a Busfahrer runs the 27-card diamond by guessing how
      each revealed card relates to the previous one. A wrong guess costs a
      drink per row reached and forces a retry with a fresh diamond.

Pyramid Layout (phase 1, row r is revealed in round r):
            [0]
          [1] [2]
        [3] [4] [5]
      [6] [7] [8] [9]
    [10][11][12][13][14]

Diamond Layout (phase 3, ``round`` r targets row 9 - r):
    row 0: [0]* [1]
    row 1: [2] [3]
    ...
    row 8: [25] [26]*       (* dealt face up)
"""

import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from constants import (
    CARDS_LEFT,
    CARDS_PLAYED_PHASE1,
    DIAMOND_FIRST,
    DIAMOND_ROWS,
    DIAMOND_SIZE,
    DRINKS_PHASE3,
    GAMES_BUSFAHRER,
    GAMES_HOSTED,
    GAMES_JOINED,
    GAMES_LEFT,
    GAMES_PLAYED,
    GAMES_WON,
    GOT_KICKED,
    LAYED_CARDS,
    MAX_CARDS_SELF,
    MAX_ROUNDS,
    MAX_SPECTATORS,
    NUMBER_EX,
    PHASE1_ROUNDS,
    PHASE2_ROUNDS,
    PHASE3_FAILED,
    PHASE3_FAILED_KEY,
    PHASE3_ROUNDS,
    PLAYERS_KICKED,
    PYRAMID_ROWS,
    ROWS_FLIPPED,
)
from deck import (
    Card,
    ShuffleAlgorithm,
    create_deck,
    deal_diamond,
    deal_hand,
    deal_pyramid,
    row_bounds,
    row_of,
)
from errors import (
    ALREADY_JOINED,
    CARD_MISMATCH,
    CARD_PLAYED,
    CARDS_REMAINING,
    DRINK_LIMIT,
    GAME_FULL,
    INVALID_CARD,
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
    NotFoundError,
    ValidationError,
)
from ledger import DrinkLedger, GameStatistics, GiveMode, StatBatch, StatOp, validate_give
from rules import (
    RANK_RELATIONS,
    SUIT_RELATIONS,
    Gender,
    MatchStyle,
    Relation,
    check_last_card,
    check_relation,
    face_card_drinks,
    is_ace,
    is_face,
    is_numeric,
    matches_any,
)
from turns import (
    BusfahrerMode,
    TurnMode,
    all_had_turn,
    next_player,
    reset_turns,
    select_busfahrer,
)


class GamePhase(str, Enum):
    """
    Phases of a Busfahrer game.

    Flow: WAITING -> PHASE1 -> PHASE2 -> PHASE3
    Transitions are one-directional and triggered by the owner.
    """

    WAITING = "waiting"  # Lobby, waiting for players to join
    PHASE1 = "phase1"    # Pyramid build-up
    PHASE2 = "phase2"    # Hand clearing, Busfahrer elected
    PHASE3 = "phase3"    # Diamond run


class PlayerRole(str, Enum):
    OWNER = "owner"
    PLAYER = "player"


@dataclass
class Player:
    """
    A player in a Busfahrer game.

    Attributes:
        id: Principal id of the player.
        name: Display name.
        gender: Drives the phase-2 face-card rule.
        role: The first player is the session owner.
        cards: The player's 10-card hand.
        drinks: Pending drinks, folded into statistics on turn advance.
        exen: Must down the current drink (an Ace was laid).
        had_turn: Has acted in the current round.
    """

    id: str
    name: str
    gender: Gender = Gender.OTHER
    role: PlayerRole = PlayerRole.PLAYER
    cards: list[Card] = field(default_factory=list)
    drinks: int = 0
    exen: bool = False
    had_turn: bool = False

    @property
    def is_owner(self) -> bool:
        return self.role == PlayerRole.OWNER

    def unplayed(self) -> list[Card]:
        return [c for c in self.cards if not c.played]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "gender": self.gender.value,
            "role": self.role.value,
            "cards": [c.to_dict() for c in self.cards],
            "drinks": self.drinks,
            "exen": self.exen,
            "had_turn": self.had_turn,
        }

    def to_client_dict(self) -> dict:
        """Public roster entry. Hands stay private."""
        return {
            "id": self.id,
            "name": self.name,
            "gender": self.gender.value,
            "role": self.role.value,
            "cards_left": len(self.unplayed()),
            "drinks": self.drinks,
            "exen": self.exen,
            "had_turn": self.had_turn,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Player":
        return cls(
            id=d["id"],
            name=d["name"],
            gender=Gender(d.get("gender", Gender.OTHER.value)),
            role=PlayerRole(d.get("role", PlayerRole.PLAYER.value)),
            cards=[Card.from_dict(c) for c in d.get("cards", [])],
            drinks=d.get("drinks", 0),
            exen=d.get("exen", False),
            had_turn=d.get("had_turn", False),
        )


@dataclass
class Spectator:
    """Someone following the game without a hand or a turn."""

    id: str
    name: str = "Spectator"
    joined_at: str = field(default_factory=lambda: _now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "joined_at": self.joined_at}

    @classmethod
    def from_dict(cls, d: dict) -> "Spectator":
        return cls(
            id=d["id"],
            name=d.get("name") or "Spectator",
            joined_at=d.get("joined_at") or _now(),
        )


@dataclass
class GameSettings:
    """
    Per-game settings bag. Every pluggable behavior is a closed enum.
    """

    shuffling: ShuffleAlgorithm = ShuffleAlgorithm.FISHER_YATES
    matching: MatchStyle = MatchStyle.NUMBER_ONLY
    turning: TurnMode = TurnMode.DEFAULT
    bus_mode: BusfahrerMode = BusfahrerMode.DEFAULT
    giving: GiveMode = GiveMode.DEFAULT
    is_chaos: bool = False
    player_limit: int = 8
    is_everyone: bool = False

    def to_dict(self) -> dict:
        return {
            "shuffling": self.shuffling.value,
            "matching": self.matching.value,
            "turning": self.turning.value,
            "bus_mode": self.bus_mode.value,
            "giving": self.giving.value,
            "is_chaos": self.is_chaos,
            "player_limit": self.player_limit,
            "is_everyone": self.is_everyone,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "GameSettings":
        """
        Build settings from stored or client data.

        Raises:
            ValueError: If a strategy name is unknown.
        """
        defaults = cls()
        return cls(
            shuffling=ShuffleAlgorithm(d.get("shuffling", defaults.shuffling.value)),
            matching=MatchStyle(d.get("matching", defaults.matching.value)),
            turning=TurnMode(d.get("turning", defaults.turning.value)),
            bus_mode=BusfahrerMode(d.get("bus_mode", defaults.bus_mode.value)),
            giving=GiveMode(d.get("giving", defaults.giving.value)),
            is_chaos=bool(d.get("is_chaos", defaults.is_chaos)),
            player_limit=int(d.get("player_limit", defaults.player_limit)),
            is_everyone=bool(d.get("is_everyone", defaults.is_everyone)),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Game:
    """
    Main game state and phase state machine for Busfahrer.

    Attributes:
        id: Game identifier.
        players: Roster in join order; the first player is the owner.
        cards: Pyramid (15) in phase 1, diamond (27) in phase 3.
        piles: Phase-2 discard piles for rounds 1..3.
        phase: Current phase.
        round: Phase-relative round counter.
        last_round: Last pyramid row revealed.
        active_player: Id of the player who may act.
        turn_order: Permutation of player ids fixed at phase-1 start.
        drink_count: Pot accumulated this turn or run.
        settings: Strategy selection for this game.
        busfahrer: Players elected for phase 3.
        try_owner: Player currently running the diamond.
        last_try_owner: Player whose run failed last.
        last_card: Diamond index of the last correctly guessed card.
        end_game: Diamond cleared.
        spectators: Principals following the game read-only.
        replaced_by: Id of the game that replaced this one.
        chat_version: Bumped on every chat ping.
        statistics: Cumulative drink and retry statistics.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    players: list[Player] = field(default_factory=list)
    cards: list[Card] = field(default_factory=list)
    piles: list[list[Card]] = field(default_factory=list)
    phase: GamePhase = GamePhase.WAITING
    round: int = 0
    last_round: int = 0
    active_player: Optional[str] = None
    turn_order: list[str] = field(default_factory=list)
    drink_count: int = 0
    settings: GameSettings = field(default_factory=GameSettings)
    busfahrer: list[str] = field(default_factory=list)
    try_owner: Optional[str] = None
    last_try_owner: Optional[str] = None
    last_card: int = DIAMOND_FIRST
    end_game: bool = False
    spectators: list[Spectator] = field(default_factory=list)
    replaced_by: Optional[str] = None
    chat_version: int = 0
    statistics: GameStatistics = field(default_factory=GameStatistics)
    created_at: str = field(default_factory=_now)

    # Runtime collaborators, never persisted
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)
    chaos_probability: float = field(default=0.5, repr=False, compare=False)
    streak_probability: float = field(default=0.3, repr=False, compare=False)
    pending_stats: StatBatch = field(default_factory=StatBatch, repr=False, compare=False)

    @classmethod
    def create(
        cls,
        owner_id: str,
        name: str,
        gender: Gender = Gender.OTHER,
        settings: Optional[GameSettings] = None,
        game_id: Optional[str] = None,
        **runtime: Any,
    ) -> "Game":
        """
        Create a waiting game with the owner as its only player.

        Args:
            owner_id: Principal creating the game.
            name: Owner's display name.
            gender: Owner's gender.
            settings: Settings bag (defaults if omitted).
            game_id: Explicit id (generated if omitted).
            **runtime: rng / chaos_probability / streak_probability.
        """
        game = cls(settings=settings or GameSettings(), **runtime)
        if game_id:
            game.id = game_id
        game.players.append(Player(owner_id, name, gender, PlayerRole.OWNER))
        game.pending_stats.add(owner_id, GAMES_HOSTED, 1)
        return game

    @property
    def ledger(self) -> DrinkLedger:
        return DrinkLedger(self.statistics, self.pending_stats)

    @property
    def owner(self) -> Optional[Player]:
        for player in self.players:
            if player.is_owner:
                return player
        return None

    # -------------------------------------------------------------------------
    # Lookup and guards
    # -------------------------------------------------------------------------

    def get_player(self, player_id: str) -> Optional[Player]:
        """
        Find a player by their ID.

        Returns:
            The Player if found, None otherwise.
        """
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def require_player(self, player_id: str) -> Player:
        player = self.get_player(player_id)
        if player is None:
            raise NotFoundError("Player not found")
        return player

    def get_spectator(self, spectator_id: str) -> Optional[Spectator]:
        for spectator in self.spectators:
            if spectator.id == spectator_id:
                return spectator
        return None

    def require_member(self, principal_id: str) -> None:
        """Players and spectators may read the game."""
        if self.get_player(principal_id) is None and self.get_spectator(principal_id) is None:
            raise NotFoundError("Player not found")

    def _require_phase(self, *phases: GamePhase) -> None:
        if self.phase not in phases:
            raise ValidationError(
                f"Not allowed in {self.phase.value}", WRONG_PHASE
            )

    def _require_owner(self, actor: str) -> Player:
        player = self.require_player(actor)
        if not player.is_owner:
            raise AuthorizationError("Only the owner can do that", NOT_OWNER)
        return player

    def _require_active(self, actor: str) -> Player:
        player = self.require_player(actor)
        if self.active_player != actor:
            raise AuthorizationError("Not your turn", NOT_YOUR_TURN)
        return player

    def _hand_card(self, player: Player, card_idx: int) -> Card:
        if not 0 <= card_idx < len(player.cards):
            raise ValidationError("Invalid card index", INVALID_CARD)
        card = player.cards[card_idx]
        if card.played:
            raise ValidationError("Card already played", CARD_PLAYED)
        return card

    # -------------------------------------------------------------------------
    # Roster
    # -------------------------------------------------------------------------

    def add_player(self, player_id: str, name: str, gender: Gender = Gender.OTHER) -> Player:
        """
        Add a player to a waiting game.

        A spectator who joins takes a seat and stops spectating.

        Raises:
            ValidationError: Game started, already joined, or full.
        """
        self._require_phase(GamePhase.WAITING)
        if self.get_player(player_id):
            raise ValidationError("Already in this game", ALREADY_JOINED)
        if len(self.players) >= self.settings.player_limit:
            raise ValidationError("Game is full", GAME_FULL)

        spectator = self.get_spectator(player_id)
        if spectator is not None:
            self.spectators.remove(spectator)
        player = Player(player_id, name, gender)
        self.players.append(player)
        self.pending_stats.add(player_id, GAMES_JOINED, 1)
        return player

    def add_spectator(self, spectator_id: str, name: Optional[str] = None) -> Spectator:
        """
        Let someone follow the game without playing. Allowed in every phase.

        Raises:
            ValidationError: Already a player or spectator, or the game is at
                its spectator limit.
        """
        if self.get_player(spectator_id) or self.get_spectator(spectator_id):
            raise ValidationError("Already in this game", ALREADY_JOINED)
        if len(self.spectators) >= MAX_SPECTATORS:
            raise ValidationError("Too many spectators", SPECTATOR_LIMIT)

        spectator = Spectator(spectator_id, name or "Spectator")
        self.spectators.append(spectator)
        return spectator

    def remove_spectator(self, spectator_id: str) -> None:
        spectator = self.get_spectator(spectator_id)
        if spectator is None:
            raise NotFoundError("Spectator not found")
        self.spectators.remove(spectator)

    def remove_player(self, player_id: str) -> bool:
        """
        Remove a player from the game.

        The active player's turn passes to the next player in turn order.

        Returns:
            True if the owner left and the game must be destroyed.
        """
        player = self.require_player(player_id)
        self.pending_stats.add(player_id, GAMES_LEFT, 1)
        if player.is_owner:
            return True
        self._drop_player(player)
        return False

    def kick_player(self, actor: str, target_id: str) -> None:
        """
        Owner removes a player or spectator from the game.

        Raises:
            AuthorizationError: Actor is not the owner.
            ValidationError: The owner tried to kick themselves.
            NotFoundError: Target is neither player nor spectator.
        """
        self._require_owner(actor)
        if target_id == actor:
            raise ValidationError("The owner cannot kick themselves", INVALID_TARGET)

        spectator = self.get_spectator(target_id)
        if spectator is not None:
            self.spectators.remove(spectator)
        else:
            self._drop_player(self.require_player(target_id))
        self.pending_stats.add(actor, PLAYERS_KICKED, 1)
        self.pending_stats.add(target_id, GOT_KICKED, 1)

    def _drop_player(self, player: Player) -> None:
        player_id = player.id
        successor = None
        if self.active_player == player_id and player_id in self.turn_order:
            pos = self.turn_order.index(player_id)
            candidate = self.turn_order[(pos + 1) % len(self.turn_order)]
            successor = candidate if candidate != player_id else None

        self.players.remove(player)
        if player_id in self.turn_order:
            self.turn_order.remove(player_id)
        if player_id in self.busfahrer:
            self.busfahrer.remove(player_id)
        if self.try_owner == player_id:
            self.try_owner = None
        if self.active_player == player_id:
            self.active_player = successor
            self._close_round_after_leave()

    def _close_round_after_leave(self) -> None:
        # The leaver was the last one to act this round: open the next round
        # on the owner, who flips the next row in phase 1.
        if self.phase == GamePhase.PHASE1:
            max_round = PHASE1_ROUNDS
        elif self.phase == GamePhase.PHASE2 and self.round != 2:
            max_round = PHASE2_ROUNDS
        else:
            return
        if not self.players or not all_had_turn(self.players):
            return
        self.drink_count = 0
        if self.round < max_round:
            self.round += 1
            reset_turns(self.players)
        self.active_player = self.turn_order[0]

    # -------------------------------------------------------------------------
    # Phase 1: pyramid
    # -------------------------------------------------------------------------

    def start(self, actor: str, min_players: int = 2) -> None:
        """Start a waiting game: deal hands and the pyramid."""
        self._require_phase(GamePhase.WAITING)
        self._require_owner(actor)
        if len(self.players) < min_players:
            raise ValidationError(f"Need at least {min_players} players")
        self._deal_phase1()

    def _deal_phase1(self) -> None:
        deck = create_deck(self.settings.shuffling, self.rng, self.streak_probability)
        for player in self.players:
            player.cards = deal_hand(deck)
            player.drinks = 0
            player.exen = False
            player.had_turn = False

        self.cards = deal_pyramid(deck)
        self.piles = []
        self.phase = GamePhase.PHASE1
        self.round = 1
        self.last_round = 0
        self.turn_order = [p.id for p in self.players]
        self.active_player = self.turn_order[0]
        self.drink_count = 0
        self.busfahrer = []
        self.try_owner = None
        self.last_try_owner = None
        self.last_card = DIAMOND_FIRST
        self.end_game = False

    def flip_row(self, actor: str, row: int) -> None:
        """
        Reveal pyramid row ``row`` (1-based).

        Only the owner may flip, only on their own turn, only the row of the
        current round, and only once.
        """
        self._require_phase(GamePhase.PHASE1)
        self._require_owner(actor)
        self._require_active(actor)
        if not 1 <= row <= len(PYRAMID_ROWS):
            raise ValidationError("Row does not exist", WRONG_ROUND)
        if row != self.round:
            raise ValidationError("Can only flip the current round row", WRONG_ROUND)
        if self.last_round == self.round:
            raise ValidationError("Row already flipped", ROW_FLIPPED)

        start, end = row_bounds(PYRAMID_ROWS, row - 1)
        for card in self.cards[start:end]:
            card.flipped = True
        self.last_round = self.round
        self.pending_stats.add(actor, ROWS_FLIPPED, 1)

    def _lay_phase1(self, player: Player, card: Card) -> None:
        if self.round > len(PYRAMID_ROWS):
            raise ValidationError("No cards available to lay in this round", WRONG_ROUND)
        if self.last_round != self.round:
            raise ValidationError("The current row is not revealed yet", ROW_NOT_FLIPPED)

        start, end = row_bounds(PYRAMID_ROWS, self.round - 1)
        if not matches_any(card, self.cards[start:end], self.settings.matching):
            raise ValidationError("Card does not match any in the current row", CARD_MISMATCH)

        if self.settings.is_chaos:
            multiplier = self.round if self.rng.random() < self.chaos_probability else 1
            self.drink_count += card.number * multiplier
        else:
            self.drink_count += self.round

        card.played = True
        self.pending_stats.add(player.id, LAYED_CARDS, 1)

    # -------------------------------------------------------------------------
    # Phase 2: hand clearing
    # -------------------------------------------------------------------------

    def start_phase2(self, actor: str) -> None:
        """Elect the Busfahrer and move to hand clearing."""
        self._require_phase(GamePhase.PHASE1)
        self._require_owner(actor)
        if self.round < PHASE1_ROUNDS:
            raise ValidationError("Phase 1 is not finished yet", WRONG_ROUND)

        if self.active_player:
            self.ledger.settle_turn(self.active_player, self.drink_count, self.players)

        unplayed = {p.id: len(p.unplayed()) for p in self.players}
        self.busfahrer = select_busfahrer(self.settings.bus_mode, unplayed, self.rng)

        for player in self.players:
            left = unplayed[player.id]
            self.pending_stats.add(player.id, CARDS_LEFT, left)
            self.pending_stats.add(player.id, MAX_CARDS_SELF, left, StatOp.MAX)
            self.pending_stats.add(player.id, CARDS_PLAYED_PHASE1, len(player.cards) - left)
        for player_id in self.busfahrer:
            self.pending_stats.add(player_id, GAMES_BUSFAHRER, 1)

        reset_turns(self.players)
        for player in self.players:
            player.drinks = 0
            player.exen = False

        self.phase = GamePhase.PHASE2
        self.cards = []
        self.piles = [[], [], []]
        self.round = 1
        self.last_round = 0
        self.drink_count = 0
        self.active_player = self.turn_order[0]

    def _lay_phase2(self, player: Player, card: Card) -> None:
        r = self.round
        if r == 1:
            if not is_numeric(card):
                raise ValidationError("In round 1, only cards 2-10 can be played", CARD_MISMATCH)
        elif r == 2:
            if not is_face(card):
                raise ValidationError("In round 2, only J, Q, K can be played", CARD_MISMATCH)
        elif r == 3:
            if not is_ace(card):
                raise ValidationError("In round 3, only Aces can be played", CARD_MISMATCH)
        else:
            raise ValidationError("No cards can be laid in this round", WRONG_ROUND)

        if r == 1:
            self.drink_count += card.number
        elif r == 2:
            for other in self.players:
                if other.id != player.id:
                    other.drinks += face_card_drinks(card, other.gender)
        else:
            player.exen = True
            self.pending_stats.add(player.id, NUMBER_EX, 1)

        card.played = True
        self.piles[r - 1].insert(0, Card(card.number, card.type, flipped=True, played=True))
        self.pending_stats.add(player.id, LAYED_CARDS, 1)

        if r == 2 and not any(is_face(c) for c in player.unplayed()):
            player.had_turn = True

    def _phase2_blockers(self, player: Player) -> bool:
        """Whether the current round still has cards that must be laid first."""
        if self.round == 1:
            return any(is_numeric(c) for c in player.unplayed())
        if self.round == 2:
            return any(is_face(c) for p in self.players for c in p.unplayed())
        if self.round == 3:
            return any(is_ace(c) for c in player.unplayed())
        return False

    # -------------------------------------------------------------------------
    # Turn actions (phases 1 and 2)
    # -------------------------------------------------------------------------

    def lay_card(self, actor: str, card_idx: int) -> None:
        """
        Lay a card from the actor's hand.

        Phase 1 requires a match against the revealed row. Phase 2 accepts
        the card class of the current round. In phase 2 round 2 any player
        may lay; otherwise only the active player.
        """
        self._require_phase(GamePhase.PHASE1, GamePhase.PHASE2)
        player = self.require_player(actor)
        anyone = self.phase == GamePhase.PHASE2 and self.round == 2
        if not anyone:
            self._require_active(actor)
        card = self._hand_card(player, card_idx)

        if self.phase == GamePhase.PHASE1:
            self._lay_phase1(player, card)
        else:
            self._lay_phase2(player, card)

    def next_player(self, actor: str) -> None:
        """
        End the actor's turn.

        Settles drinks, passes the turn and advances the round once every
        player has acted. In the terminal round of a phase this starts the
        next phase (owner only).
        """
        self._require_phase(GamePhase.PHASE1, GamePhase.PHASE2)
        player = self._require_active(actor)

        if self.phase == GamePhase.PHASE1:
            if self.round >= PHASE1_ROUNDS:
                self.start_phase2(actor)
                return
            if self.last_round != self.round:
                raise ValidationError("The current row is not revealed yet", ROW_NOT_FLIPPED)
            self.ledger.settle_turn(actor, self.drink_count, self.players)
            self.drink_count = 0
            self._advance_turn(actor, PHASE1_ROUNDS)
            return

        if self.round >= PHASE2_ROUNDS:
            self.start_phase3(actor)
            return
        if self._phase2_blockers(player):
            raise ValidationError("Cards left to lay this round", CARDS_REMAINING)

        self.ledger.settle_turn(
            actor, self.drink_count, self.players, actor_drinks_pot=self.round == 1
        )
        self.drink_count = 0
        if self.round == 2:
            self.round = 3
            reset_turns(self.players)
        else:
            self._advance_turn(actor, PHASE2_ROUNDS)

    def _advance_turn(self, actor: str, max_round: int) -> None:
        nxt = next_player(
            self.settings.turning, self.turn_order, self.players, actor, self.rng
        )
        if all_had_turn(self.players) and self.round < max_round:
            self.round += 1
            reset_turns(self.players)
        self.active_player = nxt

    def give_drink(self, actor: str, target_id: str, inc: int) -> None:
        """Hand ``inc`` drinks of the pot to a player (Avatar mode only)."""
        self._require_phase(GamePhase.PHASE1, GamePhase.PHASE2)
        if self.settings.giving != GiveMode.AVATAR:
            raise ValidationError("Drinks are only handed out in Avatar mode")
        self._require_active(actor)
        target = self.require_player(target_id)
        if inc == 0:
            raise ValidationError("Nothing to give", DRINK_LIMIT)

        error = validate_give(self.players, target, inc, self.drink_count)
        if error:
            raise ValidationError(error, DRINK_LIMIT)
        target.drinks += inc

    # -------------------------------------------------------------------------
    # Phase 3: diamond run
    # -------------------------------------------------------------------------

    def start_phase3(self, actor: str) -> None:
        """Deal the diamond and open the run to the Busfahrer."""
        self._require_phase(GamePhase.PHASE2)
        self._require_owner(actor)
        if self.round < PHASE2_ROUNDS:
            raise ValidationError("Phase 2 is not finished yet", WRONG_ROUND)

        if self.active_player:
            self.ledger.settle_turn(self.active_player, self.drink_count, self.players)
        reset_turns(self.players)
        for player in self.players:
            player.drinks = 0
            player.exen = False

        self.phase = GamePhase.PHASE3
        self.piles = []
        self.last_try_owner = None
        self.active_player = self.busfahrer[0] if self.busfahrer else self.turn_order[0]
        self._deal_diamond()

    def _deal_diamond(self) -> None:
        deck = create_deck(self.settings.shuffling, self.rng, self.streak_probability)
        self.cards = deal_diamond(deck)
        self.round = PHASE3_ROUNDS
        self.last_card = DIAMOND_FIRST
        self.try_owner = None
        self.drink_count = 0

    def _check_try_owner(self, actor: str) -> None:
        self.require_player(actor)
        if self.try_owner:
            if self.try_owner != actor:
                raise AuthorizationError("Another player is running the diamond", NOT_TRY_OWNER)
            return
        may_claim = (
            self.settings.is_everyone
            or actor in self.busfahrer
            or not self.busfahrer
        )
        if not may_claim:
            raise AuthorizationError("Only the Busfahrer can run the diamond", NOT_BUSFAHRER)

    def _check_run_open(self) -> None:
        if self.end_game:
            raise ValidationError("The game is over", WRONG_PHASE)
        if self.round == PHASE3_FAILED:
            raise ValidationError("The run failed, waiting for a retry", WRONG_ROUND)

    def _diamond_target(self, card_idx: int) -> Card:
        if not 0 <= card_idx < DIAMOND_SIZE:
            raise ValidationError("Invalid card index", INVALID_CARD)
        if row_of(DIAMOND_ROWS, card_idx) != PHASE3_ROUNDS - self.round:
            raise ValidationError("Card is not in the current row", WRONG_ROUND)
        card = self.cards[card_idx]
        if card.flipped:
            raise ValidationError("Card already revealed", CARD_PLAYED)
        return card

    def check_card(self, actor: str, card_idx: int, relation: Relation) -> bool:
        """
        Guess how the card at ``card_idx`` relates to the last revealed card.

        The first valid guess claims the run for the actor.

        Returns:
            True if the guess was correct.
        """
        self._require_phase(GamePhase.PHASE3)
        self._check_run_open()
        self._check_try_owner(actor)
        if self.round == 1:
            raise ValidationError("The last card needs a compound guess", WRONG_ROUND)
        card = self._diamond_target(card_idx)

        correct = check_relation(card, self.cards[self.last_card], relation)
        self._reveal(actor, card)
        if correct:
            self.round -= 1
            self.last_card = card_idx
        else:
            self._fail_run(actor)
        return correct

    def check_last_card(
        self,
        actor: str,
        card_idx: int,
        relation: Relation,
        last_relation: Relation,
    ) -> bool:
        """
        Guess the final diamond card.

        ``relation`` (equal/unequal) is checked against the first card and
        ``last_relation`` (same/lower/higher) against the previous card.

        Returns:
            True if both hold and the game is won.
        """
        self._require_phase(GamePhase.PHASE3)
        self._check_run_open()
        self._check_try_owner(actor)
        if self.round != 1:
            raise ValidationError("Not at the last card yet", WRONG_ROUND)
        if relation not in SUIT_RELATIONS or last_relation not in RANK_RELATIONS:
            raise ValidationError("Invalid relation for the last card", INVALID_RELATION)
        card = self._diamond_target(card_idx)

        correct = check_last_card(
            card,
            self.cards[DIAMOND_FIRST],
            self.cards[self.last_card],
            relation,
            last_relation,
        )
        self._reveal(actor, card)
        if not correct:
            self._fail_run(actor)
            return False

        self.round = 0
        self.last_card = card_idx
        self.end_game = True
        winners = self.busfahrer or [actor]
        for player_id in winners:
            self.pending_stats.add(player_id, GAMES_WON, 1)
        for player in self.players:
            self.pending_stats.add(player.id, GAMES_PLAYED, 1)
        attempts = self.statistics.retries.get(actor, 0) + 1
        self.pending_stats.add(actor, MAX_ROUNDS, attempts, StatOp.MAX)
        return True

    def _reveal(self, actor: str, card: Card) -> None:
        card.flipped = True
        self.try_owner = actor
        self.active_player = actor

    def _fail_run(self, actor: str) -> None:
        rows_reached = PHASE3_ROUNDS - self.round + 1
        self.drink_count = rows_reached
        self.ledger.drink(actor, rows_reached)
        self.pending_stats.add(actor, PHASE3_FAILED_KEY, 1)
        self.pending_stats.add(actor, DRINKS_PHASE3, rows_reached)
        self.round = PHASE3_FAILED
        self.last_try_owner = actor
        self.try_owner = None

    def retry(self, actor: str) -> None:
        """Deal a fresh diamond after a failed run (owner only)."""
        self._require_phase(GamePhase.PHASE3)
        self._require_owner(actor)
        if self.end_game:
            raise ValidationError("The game is over", WRONG_PHASE)
        if self.round != PHASE3_FAILED:
            raise ValidationError("The current run has not failed", WRONG_ROUND)

        failed = self.last_try_owner
        if failed:
            retries = self.statistics.retries
            retries[failed] = retries.get(failed, 0) + 1
        self._deal_diamond()

    # -------------------------------------------------------------------------
    # Game lifecycle
    # -------------------------------------------------------------------------

    def open_new_game(self, actor: str, game_id: Optional[str] = None) -> "Game":
        """
        Clone roster, spectators and settings into a fresh game dealt into
        phase 1.

        Marks this game as replaced; the caller discards it.
        """
        self._require_owner(actor)
        if not self.end_game:
            raise ValidationError("The game is not over yet", WRONG_PHASE)

        new_game = Game(
            settings=GameSettings.from_dict(self.settings.to_dict()),
            players=[
                Player(p.id, p.name, p.gender, p.role) for p in self.players
            ],
            spectators=[Spectator(s.id, s.name) for s in self.spectators],
            rng=self.rng,
            chaos_probability=self.chaos_probability,
            streak_probability=self.streak_probability,
        )
        if game_id:
            new_game.id = game_id
        new_game._deal_phase1()
        self.replaced_by = new_game.id
        return new_game

    def ping_chat(self, actor: str) -> None:
        """Signal that a new chat message is available."""
        self.require_member(actor)
        self.chat_version += 1

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Full document for persistence."""
        return {
            "id": self.id,
            "players": [p.to_dict() for p in self.players],
            "cards": [c.to_dict() for c in self.cards],
            "piles": [[c.to_dict() for c in pile] for pile in self.piles],
            "phase": self.phase.value,
            "round": self.round,
            "last_round": self.last_round,
            "active_player": self.active_player,
            "turn_order": list(self.turn_order),
            "drink_count": self.drink_count,
            "settings": self.settings.to_dict(),
            "busfahrer": list(self.busfahrer),
            "try_owner": self.try_owner,
            "last_try_owner": self.last_try_owner,
            "last_card": self.last_card,
            "end_game": self.end_game,
            "spectators": [s.to_dict() for s in self.spectators],
            "replaced_by": self.replaced_by,
            "chat_version": self.chat_version,
            "statistics": self.statistics.to_dict(),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, d: dict, **runtime: Any) -> "Game":
        return cls(
            id=d["id"],
            players=[Player.from_dict(p) for p in d.get("players", [])],
            cards=[Card.from_dict(c) for c in d.get("cards", [])],
            piles=[[Card.from_dict(c) for c in pile] for pile in d.get("piles", [])],
            phase=GamePhase(d.get("phase", GamePhase.WAITING.value)),
            round=d.get("round", 0),
            last_round=d.get("last_round", 0),
            active_player=d.get("active_player"),
            turn_order=list(d.get("turn_order", [])),
            drink_count=d.get("drink_count", 0),
            settings=GameSettings.from_dict(d.get("settings", {})),
            busfahrer=list(d.get("busfahrer", [])),
            try_owner=d.get("try_owner"),
            last_try_owner=d.get("last_try_owner"),
            last_card=d.get("last_card", DIAMOND_FIRST),
            end_game=d.get("end_game", False),
            spectators=[Spectator.from_dict(s) for s in d.get("spectators", [])],
            replaced_by=d.get("replaced_by"),
            chat_version=d.get("chat_version", 0),
            statistics=GameStatistics.from_dict(d.get("statistics")),
            created_at=d.get("created_at") or _now(),
            **runtime,
        )

    def info_dict(self) -> dict:
        """Roster, phase, round and role projection shared by all players."""
        return {
            "id": self.id,
            "phase": self.phase.value,
            "round": self.round,
            "last_round": self.last_round,
            "active_player": self.active_player,
            "turn_order": list(self.turn_order),
            "busfahrer": list(self.busfahrer),
            "try_owner": self.try_owner,
            "end_game": self.end_game,
            "settings": self.settings.to_dict(),
            "players": [p.to_client_dict() for p in self.players],
            "spectators": [s.to_dict() for s in self.spectators],
            "top_drinker": self.statistics.top_drinker,
        }

    def board_dict(self) -> dict:
        """Table cards with face-down cards masked."""
        return {
            "cards": [c.to_client_dict() for c in self.cards],
            "piles": [[c.to_client_dict() for c in pile] for pile in self.piles],
            "last_card": self.last_card if self.phase == GamePhase.PHASE3 else None,
        }

    def get_state(self, for_player_id: str) -> dict:
        """
        Full client view for one player: only their own hand is included.
        Spectators get the same view with an empty hand.
        """
        player = self.get_player(for_player_id)
        return {
            **self.info_dict(),
            **self.board_dict(),
            "drink_count": self.drink_count,
            "hand": [c.to_dict() for c in player.cards] if player else [],
            "statistics": self.statistics.to_dict(),
        }


def diff_fields(before: Optional[dict], after: Optional[dict]) -> list[str]:
    """
    Dotted paths of the document fields that changed between two snapshots.

    Per-player keys are reported as ``players.<index>.<key>``. A roster size
    change reports ``players`` as a whole.
    """
    if before is None and after is None:
        return []
    if before is None or after is None:
        return sorted((after or before).keys())

    changed: list[str] = []
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old == new:
            continue
        if key == "players" and isinstance(old, list) and isinstance(new, list) and len(old) == len(new):
            for idx, (p_old, p_new) in enumerate(zip(old, new)):
                for p_key in sorted(set(p_old) | set(p_new)):
                    if p_old.get(p_key) != p_new.get(p_key):
                        changed.append(f"players.{idx}.{p_key}")
            continue
        changed.append(key)
    return changed
