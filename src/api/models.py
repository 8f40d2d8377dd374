"""Requests and Response models"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, field_validator, model_validator

from src.core.exceptions import InvalidRequestError
from src.core.shared_types import (
    Color,
    ControllerState,
    GameMode,
    OutcomeKind,
    PieceType,
    TurnOwner,
)

PlayerName = str


# --- REQUEST MODELS ---
class StartMatchRequest(BaseModel):
    player_name: str
    mode: GameMode
    opponent_name: Optional[str] = None
    color: Color = Color.WHITE

    @field_validator("player_name", "opponent_name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            raise InvalidRequestError("Participant names cannot be empty.")
        return value

    @model_validator(mode="after")
    def validate_opponent(self) -> "StartMatchRequest":
        if self.mode == GameMode.PLAYER_VS_PLAYER and self.opponent_name is None:
            raise InvalidRequestError("A player vs player match needs an opponent name.")
        if self.opponent_name is not None and self.opponent_name == self.player_name:
            raise InvalidRequestError("You cannot play against yourself.")
        return self


class MoveRequest(BaseModel):
    from_square: str
    to_square: str
    promote_to: Optional[PieceType] = None

    @field_validator(*["from_square", "to_square"])
    @classmethod
    def validate_square(cls, value: str) -> str:
        def _is_algebraic_notation(value: str) -> bool:
            if len(value) != 2:
                return False

            file_character = value[0]
            rank_character = value[1]
            return file_character in "abcdefgh" and rank_character in "12345678"

        value = value.strip().lower()
        if not _is_algebraic_notation(value):
            raise InvalidRequestError(
                f"Cannot interpret {value!r} as a valid square name."
            )
        return value

    @field_validator("promote_to")
    @classmethod
    def validate_promotion(cls, value: Optional[PieceType]) -> Optional[PieceType]:
        if value in (PieceType.PAWN, PieceType.KING):
            raise InvalidRequestError(f"Cannot promote to a {value}.")
        return value


# --- RESPONSE MODELS ---
class ParticipantResponse(BaseModel):
    name: PlayerName
    balance: int


class OpenSessionResponse(BaseModel):
    session_id: UUID
    white: PlayerName
    black: PlayerName
    moves_played: int
    created_at: Optional[datetime] = None


class MatchStateResponse(BaseModel):
    state: ControllerState
    mode: GameMode
    local_name: PlayerName
    local_color: Color
    players: dict[Color, PlayerName]
    fen: str
    moves: list[str]
    turn: Color
    turn_owner: TurnOwner
    in_check: bool
    outcome: OutcomeKind
    winner: Optional[PlayerName] = None
    message: Optional[str] = None
    captured: dict[Color, list[PieceType]]
    draw_offered_by: Optional[Color] = None
    engine_unresponsive: bool = False
    diverged: bool = False
    stale_snapshots: int = 0
    sync_pending: bool = False
