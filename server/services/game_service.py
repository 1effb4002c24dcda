"""
Game service: runs session actions against stored game documents.

Every action is one read-modify-write cycle:

    1. Read the document and its version.
    2. Apply the transition on the in-memory Game (pure, raises on rejection).
    3. Write back conditionally on the version read in step 1.
    4. Hand queued statistics to the sink.

A lost race surfaces as ``ConflictError``; nothing is retried server-side.
"""

import logging
import random
from dataclasses import asdict
from typing import Any, Callable, Optional

from config import ServerConfig
from errors import (
    ConflictError,
    GameError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from game import Game, GameSettings, diff_fields
from logging_config import game_context
from rules import Gender, Relation
from services.stats_sink import StatisticsSink
from stores.game_store import ConcurrencyError, GameNotFound, GameStore

logger = logging.getLogger(__name__)


class GameService:
    """
    Orchestrates session actions.

    Collaborators are injected so tests can run against in-memory stores and
    a seeded random source.
    """

    def __init__(
        self,
        store: GameStore,
        sink: Optional[StatisticsSink] = None,
        server_config: Optional[ServerConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            store: Game document store.
            sink: Statistics sink (counters are dropped if omitted).
            server_config: Settings defaults and limits.
            rng: Shared random source (a fresh one per game if omitted).
        """
        self.store = store
        self.sink = sink
        self.config = server_config or ServerConfig()
        self.rng = rng

    def _runtime(self) -> dict:
        runtime: dict[str, Any] = {
            "chaos_probability": self.config.CHAOS_MODE,
            "streak_probability": self.config.CHAOTIC_STREAK_PROBABILITY,
        }
        if self.rng is not None:
            runtime["rng"] = self.rng
        return runtime

    def _settings(self, overrides: Optional[dict]) -> GameSettings:
        data = asdict(self.config.game_defaults)
        data.update({k: v for k, v in (overrides or {}).items() if v is not None})
        try:
            settings = GameSettings.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid settings: {e}")
        if not self.config.MIN_PLAYERS <= settings.player_limit <= self.config.MAX_PLAYER_LIMIT:
            raise ValidationError(
                f"Player limit must be between {self.config.MIN_PLAYERS} "
                f"and {self.config.MAX_PLAYER_LIMIT}"
            )
        return settings

    # -------------------------------------------------------------------------
    # Read / write cycle
    # -------------------------------------------------------------------------

    async def _load(self, game_id: str) -> tuple[Game, int]:
        row = await self.store.get(game_id, **self._runtime())
        if row is None:
            raise NotFoundError("Game not found")
        return row

    async def _commit(self, game: Game, version: int, before: dict) -> int:
        fields = diff_fields(before, game.to_dict())
        try:
            new_version = await self.store.update(game, version, fields)
        except ConcurrencyError as e:
            logger.info(f"Conflicting write on game {game.id}: {e}")
            raise ConflictError("The game changed meanwhile, try again")
        except GameNotFound:
            raise NotFoundError("Game not found")
        await self._flush_stats(game)
        return new_version

    async def _flush_stats(self, game: Game) -> None:
        batch = game.pending_stats.drain()
        if not batch or self.sink is None:
            return
        try:
            await self.sink.record_batch(batch)
        except Exception as e:
            logger.error(f"Failed to record statistics for game {game.id}: {e}", exc_info=True)

    async def _act(self, game_id: str, actor: str, action: Callable[[Game], Any]) -> Any:
        """Run ``action`` on the stored game and commit the result."""
        with game_context(game_id, actor):
            game, version = await self._load(game_id)
            before = game.to_dict()
            try:
                result = action(game)
            except InvariantViolation as e:
                logger.critical(f"Invariant violated in game {game_id}: {e.message}")
                raise
            except GameError as e:
                logger.debug(f"Rejected action by {actor}: {e}")
                raise
            await self._commit(game, version, before)
            return result

    # -------------------------------------------------------------------------
    # Lobby
    # -------------------------------------------------------------------------

    async def create_game(
        self,
        actor: str,
        name: str,
        gender: Gender = Gender.OTHER,
        settings: Optional[dict] = None,
    ) -> Game:
        game = Game.create(actor, name, gender, self._settings(settings), **self._runtime())
        with game_context(game.id, actor):
            await self.store.insert(game)
            logger.info(f"Game created by {actor}")
        await self._flush_stats(game)
        return game

    async def join(self, game_id: str, actor: str, name: str, gender: Gender = Gender.OTHER) -> None:
        await self._act(game_id, actor, lambda g: g.add_player(actor, name, gender))

    async def spectate(self, game_id: str, actor: str, name: Optional[str] = None) -> None:
        await self._act(game_id, actor, lambda g: g.add_spectator(actor, name))

    async def kick(self, game_id: str, actor: str, target_id: str) -> None:
        await self._act(game_id, actor, lambda g: g.kick_player(actor, target_id))
        logger.info(f"{target_id} kicked from game {game_id} by {actor}")

    async def leave(self, game_id: str, actor: str) -> bool:
        """
        Remove the actor from the game, as a player or as a spectator.

        Returns:
            True if the owner left and the game was destroyed.
        """
        with game_context(game_id, actor):
            game, version = await self._load(game_id)
            before = game.to_dict()
            if game.get_spectator(actor) is not None:
                game.remove_spectator(actor)
                await self._commit(game, version, before)
                return False
            destroyed = game.remove_player(actor)
            if destroyed:
                await self.store.delete(game_id, ["closed"])
                logger.info("Owner left, game destroyed")
                await self._flush_stats(game)
                return True
            await self._commit(game, version, before)
            return False

    async def start(self, game_id: str, actor: str) -> None:
        await self._act(
            game_id, actor, lambda g: g.start(actor, self.config.MIN_PLAYERS)
        )

    # -------------------------------------------------------------------------
    # Phase transitions
    # -------------------------------------------------------------------------

    async def start_phase2(self, game_id: str, actor: str) -> None:
        await self._act(game_id, actor, lambda g: g.start_phase2(actor))

    async def start_phase3(self, game_id: str, actor: str) -> None:
        await self._act(game_id, actor, lambda g: g.start_phase3(actor))

    async def retry(self, game_id: str, actor: str) -> None:
        await self._act(game_id, actor, lambda g: g.retry(actor))

    async def open_new_game(self, game_id: str, actor: str) -> Game:
        """
        Replace a finished game with a fresh one.

        The old game is marked first, so a lost race leaves nothing behind.
        The new game is inserted before the old one is deleted and
        subscribers always have a game to move to.
        """
        with game_context(game_id, actor):
            game, version = await self._load(game_id)
            before = game.to_dict()
            new_game = game.open_new_game(actor)
            await self._commit(game, version, before)
            await self.store.insert(new_game)
            await self.store.delete(game_id, ["replaced_by"], replaced_by=new_game.id)
            logger.info(f"Game replaced by {new_game.id}")
            return new_game

    # -------------------------------------------------------------------------
    # Turn actions
    # -------------------------------------------------------------------------

    async def flip_row(self, game_id: str, actor: str, row: int) -> None:
        await self._act(game_id, actor, lambda g: g.flip_row(actor, row))

    async def lay_card(self, game_id: str, actor: str, card_idx: int) -> None:
        await self._act(game_id, actor, lambda g: g.lay_card(actor, card_idx))

    async def next_player(self, game_id: str, actor: str) -> None:
        await self._act(game_id, actor, lambda g: g.next_player(actor))

    async def give_drink(self, game_id: str, actor: str, player_id: str, inc: int) -> None:
        await self._act(game_id, actor, lambda g: g.give_drink(actor, player_id, inc))

    async def check_card(self, game_id: str, actor: str, card_idx: int, relation: Relation) -> bool:
        return await self._act(
            game_id, actor, lambda g: g.check_card(actor, card_idx, relation)
        )

    async def check_last_card(
        self,
        game_id: str,
        actor: str,
        card_idx: int,
        relation: Relation,
        last_relation: Relation,
    ) -> bool:
        return await self._act(
            game_id,
            actor,
            lambda g: g.check_last_card(actor, card_idx, relation, last_relation),
        )

    async def ping_chat(self, game_id: str, actor: str) -> None:
        await self._act(game_id, actor, lambda g: g.ping_chat(actor))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    async def get_state(self, game_id: str, actor: str) -> dict:
        """State projection for a player or spectator of the game."""
        game, _ = await self._load(game_id)
        game.require_member(actor)
        return game.get_state(actor)
