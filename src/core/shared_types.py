"""
Type definitions used across layers
"""

from enum import StrEnum


class Color(StrEnum):
    WHITE = "white"
    BLACK = "black"

    @property
    def opponent(self) -> "Color":
        return Color.BLACK if self is Color.WHITE else Color.WHITE


class PieceType(StrEnum):
    PAWN = "pawn"
    KNIGHT = "knight"
    BISHOP = "bishop"
    ROOK = "rook"
    QUEEN = "queen"
    KING = "king"


class GameMode(StrEnum):
    PLAYER_VS_PLAYER = "pvp"
    PLAYER_VS_ENGINE = "ai"


class ControllerState(StrEnum):
    LOBBY = "lobby"
    ACTIVE = "active"
    TERMINATED = "terminated"


class TurnOwner(StrEnum):
    """Sub-state of an active match."""

    LOCAL = "local turn"
    REMOTE_OR_ENGINE = "remote or engine turn"


class OutcomeKind(StrEnum):
    ONGOING = "ongoing"
    CHECKMATE = "checkmate"
    DRAW = "draw"
    RESIGNATION = "resignation"
    AGREED_DRAW = "agreed draw"
