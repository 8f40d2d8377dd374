"""
Boundary layer data model(s).

These objects are used to communicate with the Services.
Both the persistence layer (lower) and the controller / API layer (higher) send and receive these,
which decouples the SQL tables and the pydantic response models from the information needed to cross boundaries.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Self
from uuid import UUID

from src.core.match_status import MatchStatus
from src.core.shared_types import Color, OutcomeKind

# Type aliases to make the models easier to read
PlayerName = str
Notation = str


@dataclass
class LedgerEntryModel:
    """One participant and their coin balance."""

    name: PlayerName
    balance: int


@dataclass
class SessionModel:
    """Transport-safe representation of one shared match between two named participants."""

    id: UUID
    white: PlayerName
    black: PlayerName
    current_fen: Notation
    moves_san: list[str]
    status: MatchStatus
    settled: bool = False
    created_at: Optional[datetime] = None

    def color_of(self, player: PlayerName) -> Optional[Color]:
        if player == self.white:
            return Color.WHITE
        if player == self.black:
            return Color.BLACK
        return None

    def player_of(self, color: Color) -> PlayerName:
        return self.white if color == Color.WHITE else self.black


@dataclass(frozen=True)
class MatchOutcome:
    """
    Derived value, never persisted on its own.

    The Position Model only knows colors, so it fills `winner_color`.
    The controller resolves the name of the winner with `named`.
    """

    kind: OutcomeKind
    winner_color: Optional[Color] = None
    winner: Optional[PlayerName] = None
    reason: str = ""

    @classmethod
    def ongoing(cls) -> Self:
        return cls(OutcomeKind.ONGOING)

    @property
    def is_over(self) -> bool:
        return self.kind != OutcomeKind.ONGOING

    @property
    def is_draw(self) -> bool:
        return self.kind in (OutcomeKind.DRAW, OutcomeKind.AGREED_DRAW)

    @property
    def loser_color(self) -> Optional[Color]:
        return self.winner_color.opponent if self.winner_color else None

    def named(self, players: dict[Color, PlayerName]) -> Self:
        if self.winner_color is None:
            return self
        return replace(self, winner=players.get(self.winner_color))


@dataclass
class SettlementRecord:
    """Balance deltas applied for one settled match (engine identity excluded)."""

    outcome: MatchOutcome
    deltas: dict[PlayerName, int] = field(default_factory=dict)
