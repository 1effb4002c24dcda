"""
Session actions API router for Busfahrer.

Every endpoint acts on behalf of the principal named by the bearer token.
Rejected actions surface as HTTP errors carrying ``{"code", "message"}``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel, Field

from errors import GameError
from rules import Gender, Relation
from services.game_service import GameService
from services.identity import IdentityVerifier, bearer_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/games", tags=["games"])


# =============================================================================
# Request Models
# =============================================================================


class SettingsRequest(BaseModel):
    """Settings bag; omitted values fall back to the server defaults."""
    shuffling: Optional[str] = None
    matching: Optional[str] = None
    turning: Optional[str] = None
    bus_mode: Optional[str] = None
    giving: Optional[str] = None
    is_chaos: Optional[bool] = None
    player_limit: Optional[int] = None
    is_everyone: Optional[bool] = None


class CreateGameRequest(BaseModel):
    """Create game request."""
    name: str = Field(min_length=1, max_length=32)
    gender: Gender = Gender.OTHER
    settings: Optional[SettingsRequest] = None


class JoinRequest(BaseModel):
    """Join game request."""
    name: str = Field(min_length=1, max_length=32)
    gender: Gender = Gender.OTHER


class SpectateRequest(BaseModel):
    """Follow a game without playing."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=32)


class KickRequest(BaseModel):
    player: str


class FlipRowRequest(BaseModel):
    row: int


class LayCardRequest(BaseModel):
    card: int


class GiveDrinkRequest(BaseModel):
    player: str
    inc: int = 1


class CheckCardRequest(BaseModel):
    card: int
    relation: Relation


class CheckLastCardRequest(BaseModel):
    card: int
    relation: Relation
    last_relation: Relation


# =============================================================================
# Dependencies
# =============================================================================

# These will be set by main.py during startup
_game_service: Optional[GameService] = None
_identity: Optional[IdentityVerifier] = None


def set_game_service(service: GameService) -> None:
    """Set the game service instance (called from main.py)."""
    global _game_service
    _game_service = service


def set_identity_verifier(verifier: IdentityVerifier) -> None:
    """Set the identity verifier instance (called from main.py)."""
    global _identity
    _identity = verifier


def get_game_service_dep() -> GameService:
    """Dependency to get the game service."""
    if _game_service is None:
        raise HTTPException(status_code=503, detail="Game service not initialized")
    return _game_service


async def require_principal(authorization: Optional[str] = Header(None)) -> str:
    """Require a verified principal from the Authorization header."""
    if _identity is None:
        raise HTTPException(status_code=503, detail="Identity verifier not initialized")
    principal = _identity.verify(bearer_token(authorization))
    if not principal:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def _raise_http(e: GameError) -> None:
    raise HTTPException(status_code=e.status, detail=e.to_dict())


# =============================================================================
# Lobby Endpoints
# =============================================================================


@router.post("")
async def create_game(
    request_body: CreateGameRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Create a game owned by the caller."""
    settings = request_body.settings.model_dump(exclude_none=True) if request_body.settings else None
    try:
        game = await service.create_game(principal, request_body.name, request_body.gender, settings)
    except GameError as e:
        _raise_http(e)
    return {"success": True, "game_id": game.id}


@router.post("/{game_id}/join")
async def join_game(
    game_id: str,
    request_body: JoinRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Join a waiting game."""
    try:
        await service.join(game_id, principal, request_body.name, request_body.gender)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/spectate")
async def spectate_game(
    game_id: str,
    request_body: SpectateRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Follow a game in any phase. Spectators see everything but their own hand."""
    try:
        await service.spectate(game_id, principal, request_body.name)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/leave")
async def leave_game(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Leave a game. The game is destroyed when its owner leaves."""
    try:
        destroyed = await service.leave(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True, "destroyed": destroyed}


@router.post("/{game_id}/kick")
async def kick_player(
    game_id: str,
    request_body: KickRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Owner removes a player or spectator."""
    try:
        await service.kick(game_id, principal, request_body.player)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/start")
async def start_game(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.start(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


# =============================================================================
# Phase Endpoints
# =============================================================================


@router.post("/{game_id}/phase2")
async def start_phase2(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.start_phase2(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/phase3")
async def start_phase3(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.start_phase3(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/retry")
async def retry_phase(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Deal a fresh diamond after a failed run."""
    try:
        await service.retry(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/new-game")
async def open_new_game(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Replace a finished game with a new one for the same roster."""
    try:
        new_game = await service.open_new_game(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True, "new_game_id": new_game.id}


# =============================================================================
# Turn Endpoints
# =============================================================================


@router.post("/{game_id}/flip-row")
async def flip_row(
    game_id: str,
    request_body: FlipRowRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.flip_row(game_id, principal, request_body.row)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/lay-card")
async def lay_card(
    game_id: str,
    request_body: LayCardRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.lay_card(game_id, principal, request_body.card)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/next-player")
async def next_player(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    try:
        await service.next_player(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/give-drink")
async def give_drink(
    game_id: str,
    request_body: GiveDrinkRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Hand part of the pot to another player (Avatar giving mode)."""
    try:
        await service.give_drink(game_id, principal, request_body.player, request_body.inc)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


@router.post("/{game_id}/check-card")
async def check_card(
    game_id: str,
    request_body: CheckCardRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Guess the next diamond card."""
    try:
        correct = await service.check_card(
            game_id, principal, request_body.card, request_body.relation
        )
    except GameError as e:
        _raise_http(e)
    return {"success": True, "correct": correct}


@router.post("/{game_id}/check-last-card")
async def check_last_card(
    game_id: str,
    request_body: CheckLastCardRequest,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Guess the final diamond card."""
    try:
        correct = await service.check_last_card(
            game_id,
            principal,
            request_body.card,
            request_body.relation,
            request_body.last_relation,
        )
    except GameError as e:
        _raise_http(e)
    return {"success": True, "correct": correct}


@router.post("/{game_id}/chat")
async def ping_chat(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """Tell subscribers a new chat message is available."""
    try:
        await service.ping_chat(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True}


# =============================================================================
# Query Endpoints
# =============================================================================


@router.get("/{game_id}")
async def get_game(
    game_id: str,
    principal: str = Depends(require_principal),
    service: GameService = Depends(get_game_service_dep),
):
    """State projection for the caller (own hand only)."""
    try:
        state = await service.get_state(game_id, principal)
    except GameError as e:
        _raise_http(e)
    return {"success": True, "game": state}
