"""
The Position Model: single authoritative holder of the board position and its ply-by-ply move log.
----

Legality and end-of-game detection are delegated to python-chess (the rules oracle).
This class only keeps the two representations of the game consistent:

* the FEN string (board placement, side to move, castling rights, en passant target, half-move clock, move number)
* the list of moves in Standard Algebraic Notation (SAN), one entry per ply

Replaying the move list from the starting position always reproduces the FEN.
"""

from dataclasses import dataclass
from typing import Optional, Self

import chess

from src.core.exceptions import IllegalMoveError, InvalidSnapshotError
from src.core.models import MatchOutcome
from src.core.shared_types import Color, OutcomeKind, PieceType

STARTING_FEN = chess.STARTING_FEN

PIECE_TYPES: dict[chess.PieceType, PieceType] = {
    chess.PAWN: PieceType.PAWN,
    chess.KNIGHT: PieceType.KNIGHT,
    chess.BISHOP: PieceType.BISHOP,
    chess.ROOK: PieceType.ROOK,
    chess.QUEEN: PieceType.QUEEN,
    chess.KING: PieceType.KING,
}

# Promotion hints can be given as a full name ("queen") or as a letter ("q")
PROMOTION_HINTS: dict[str, chess.PieceType] = {
    **{piece.value: piece_type for piece_type, piece in PIECE_TYPES.items()},
    **{chess.piece_symbol(piece_type): piece_type for piece_type in PIECE_TYPES},
}


def to_color(color: chess.Color) -> Color:
    return Color.WHITE if color == chess.WHITE else Color.BLACK


def parse_square(square: str) -> chess.Square:
    """Square from algebraic notation ("e4")."""
    try:
        return chess.parse_square(square.strip().lower())
    except ValueError as exc:
        raise IllegalMoveError(f"Not a square on the board: {square!r}") from exc


@dataclass(frozen=True)
class AppliedMove:
    """What happened on the board after a successful move."""

    uci: str
    san: str
    color: Color
    captured: Optional[PieceType]
    is_check: bool
    is_checkmate: bool
    is_stalemate: bool


class PositionModel:
    """Wraps a python-chess Board. Mutated only by applying one legal move at a time (or replaced wholesale)."""

    def __init__(self, board: Optional[chess.Board] = None) -> None:
        self._board = board if board is not None else chess.Board()
        self._moves_san: list[str] = []
        if board is not None:
            self._moves_san = self._replay_san(board)

    @classmethod
    def from_moves(cls, moves_san: list[str]) -> Self:
        """Rebuild a position by replaying SAN moves from the starting position."""
        return cls(cls._replay(moves_san))

    # --- QUERIES ---
    def snapshot(self) -> str:
        return self._board.fen()

    @property
    def move_list(self) -> list[str]:
        return list(self._moves_san)

    @property
    def ply_count(self) -> int:
        return len(self._moves_san)

    @property
    def turn(self) -> Color:
        return to_color(self._board.turn)

    def in_check(self) -> bool:
        return self._board.is_check()

    def piece_color_at(self, square: str) -> Optional[Color]:
        piece = self._board.piece_at(parse_square(square))
        return to_color(piece.color) if piece else None

    def legal_moves(self, square: Optional[str] = None) -> list[str]:
        """Legal moves in UCI notation, optionally only the ones starting on `square` (for move hints)."""
        from_square = parse_square(square) if square is not None else None
        return sorted(
            move.uci()
            for move in self._board.legal_moves
            if from_square is None or move.from_square == from_square
        )

    def captured_pieces(self) -> dict[Color, list[PieceType]]:
        """Pieces each side has taken so far, in the order they were captured."""
        captured: dict[Color, list[PieceType]] = {Color.WHITE: [], Color.BLACK: []}
        replay = chess.Board()
        for move in self._board.move_stack:
            taken = self._captured_piece(replay, move)
            if taken is not None:
                captured[to_color(replay.turn)].append(taken)
            replay.push(move)
        return captured

    def outcome(self) -> MatchOutcome:
        """Pure function of the current position."""
        board = self._board
        if board.is_checkmate():
            # the side to move got mated
            return MatchOutcome(
                OutcomeKind.CHECKMATE, winner_color=to_color(not board.turn)
            )
        if board.is_stalemate():
            return MatchOutcome(OutcomeKind.DRAW, reason="stalemate")
        if board.is_insufficient_material():
            return MatchOutcome(OutcomeKind.DRAW, reason="insufficient material")
        if board.halfmove_clock >= 100:
            return MatchOutcome(OutcomeKind.DRAW, reason="fifty-move rule")
        if board.is_repetition(3):
            return MatchOutcome(OutcomeKind.DRAW, reason="threefold repetition")
        return MatchOutcome.ongoing()

    # --- MUTATIONS ---
    def apply_move(
        self, from_square: str, to_square: str, promotion: Optional[str] = None
    ) -> AppliedMove:
        """
        Attempt a move given as two squares.
        ----

        A pawn reaching the last rank without a promotion hint becomes a queen.
        Raises IllegalMoveError when the oracle rejects the move (wrong side to move, blocked path, king left in check, ...).
        """
        source = parse_square(from_square)
        target = parse_square(to_square)
        move = chess.Move(source, target, promotion=self._promotion(source, target, promotion))
        return self._push(move)

    def apply_uci(self, token: str) -> AppliedMove:
        """Attempt a move given as `<from><to>[promotion]`, the format the engine replies with."""
        try:
            move = chess.Move.from_uci(token.strip().lower())
        except ValueError as exc:
            raise IllegalMoveError(f"Cannot interpret move: {token!r}") from exc
        return self._push(move)

    def load_from(self, notation: str, move_list: list[str]) -> None:
        """
        Replace the local position wholesale.
        ----

        The move list is replayed from the starting position and has to reproduce `notation`.
        If it does not, nothing changes and InvalidSnapshotError is raised.
        """
        board = self._replay(move_list)
        if board.fen() != notation:
            raise InvalidSnapshotError(
                f"Move list {move_list} leads to {board.fen()!r}, not to {notation!r}"
            )
        self._board = board
        self._moves_san = list(move_list)

    def undo(self, plies: int = 1) -> list[str]:
        """Take back the last `plies` moves. Returns the SAN of the moves taken back (most recent first)."""
        if plies > len(self._moves_san):
            raise IllegalMoveError(
                f"Cannot take back {plies} moves, only {len(self._moves_san)} were played."
            )
        undone = []
        for _ in range(plies):
            self._board.pop()
            undone.append(self._moves_san.pop())
        return undone

    # -- PRIVATE HELPERS ---
    def _push(self, move: chess.Move) -> AppliedMove:
        board = self._board
        if move not in board.legal_moves:
            raise IllegalMoveError(f"Move not allowed: {move.uci()}")

        color = to_color(board.turn)
        captured = self._captured_piece(board, move)
        san = board.san(move)
        board.push(move)
        self._moves_san.append(san)
        return AppliedMove(
            uci=move.uci(),
            san=san,
            color=color,
            captured=captured,
            is_check=board.is_check(),
            is_checkmate=board.is_checkmate(),
            is_stalemate=board.is_stalemate(),
        )

    def _promotion(
        self, source: chess.Square, target: chess.Square, hint: Optional[str]
    ) -> Optional[chess.PieceType]:
        if hint is not None:
            piece_type = PROMOTION_HINTS.get(hint.strip().lower())
            if piece_type is None or piece_type in (chess.PAWN, chess.KING):
                raise IllegalMoveError(f"Cannot promote to {hint!r}")
            return piece_type

        piece = self._board.piece_at(source)
        last_rank = 7 if self._board.turn == chess.WHITE else 0
        if (
            piece is not None
            and piece.piece_type == chess.PAWN
            and chess.square_rank(target) == last_rank
        ):
            return chess.QUEEN
        return None

    @staticmethod
    def _captured_piece(board: chess.Board, move: chess.Move) -> Optional[PieceType]:
        if board.is_en_passant(move):
            return PieceType.PAWN
        if not board.is_capture(move):
            return None
        piece = board.piece_at(move.to_square)
        return PIECE_TYPES[piece.piece_type] if piece else None

    @staticmethod
    def _replay(moves_san: list[str]) -> chess.Board:
        board = chess.Board()
        for ply, san in enumerate(moves_san, start=1):
            try:
                board.push_san(san)
            except ValueError as exc:
                raise InvalidSnapshotError(
                    f"Move {ply} ({san!r}) cannot be replayed from the starting position."
                ) from exc
        return board

    @staticmethod
    def _replay_san(board: chess.Board) -> list[str]:
        """SAN of the moves already on a board's move stack."""
        replay = board.root()
        moves = []
        for move in board.move_stack:
            moves.append(replay.san(move))
            replay.push(move)
        return moves
