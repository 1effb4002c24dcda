"""
Error taxonomy for game session actions.

Every rejected action raises a GameError subclass before anything is written,
so a rejection never leaves a partial mutation behind. Routers map the
subclasses onto HTTP status codes via ``status``.
"""

from typing import Optional


class GameError(Exception):
    """Base exception for game-related errors."""

    status = 400
    default_code = "GAME_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message
        super().__init__(f"[{self.code}] {message}")

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class AuthorizationError(GameError):
    """Wrong actor: not the active player, not the owner, not the try owner."""

    status = 403
    default_code = "NOT_AUTHORIZED"


class ValidationError(GameError):
    """Illegal card index, card already played, rule mismatch, wrong phase/round."""

    status = 400
    default_code = "INVALID_ACTION"


class NotFoundError(GameError):
    """Game or player missing."""

    status = 404
    default_code = "NOT_FOUND"


class ConflictError(GameError):
    """A conditional write lost a race. The caller may retry the action."""

    status = 409
    default_code = "CONFLICT"


class InvariantViolation(GameError):
    """Internal state broke an invariant. Not recoverable by the caller."""

    status = 500
    default_code = "INTERNAL_ERROR"


# Specific error codes
NOT_YOUR_TURN = "NOT_YOUR_TURN"
NOT_OWNER = "NOT_OWNER"
NOT_TRY_OWNER = "NOT_TRY_OWNER"
NOT_BUSFAHRER = "NOT_BUSFAHRER"
WRONG_PHASE = "WRONG_PHASE"
WRONG_ROUND = "WRONG_ROUND"
INVALID_CARD = "INVALID_CARD"
CARD_PLAYED = "CARD_PLAYED"
CARD_MISMATCH = "CARD_MISMATCH"
ROW_FLIPPED = "ROW_FLIPPED"
ROW_NOT_FLIPPED = "ROW_NOT_FLIPPED"
CARDS_REMAINING = "CARDS_REMAINING"
GAME_FULL = "GAME_FULL"
ALREADY_JOINED = "ALREADY_JOINED"
INVALID_RELATION = "INVALID_RELATION"
DRINK_LIMIT = "DRINK_LIMIT"
SPECTATOR_LIMIT = "SPECTATOR_LIMIT"
INVALID_TARGET = "INVALID_TARGET"
