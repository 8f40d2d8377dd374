"""
Match Controller: the turn / authorization state machine.
----

Single point where local intent, remote updates (Session Record change feed) and engine moves are unified.

    LOBBY --start_match--> ACTIVE (local turn / remote or engine turn) --outcome--> TERMINATED --leave_match--> LOBBY

Everything runs on one asyncio event loop. Change feed callbacks never run a handler directly,
they schedule it as a task, so a handler always runs to its next `await` before another one starts.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional
from uuid import UUID

from src.api.models import (
    MatchStateResponse,
    MoveRequest,
    OpenSessionResponse,
    ParticipantResponse,
    StartMatchRequest,
)
from src.board.position import AppliedMove, PositionModel
from src.core.config import ENGINE_NAME
from src.core.exceptions import (
    DuplicateSettlementError,
    GameError,
    GameStateError,
    IllegalMoveError,
    InvalidRequestError,
    InvalidSnapshotError,
    StoreUnavailableError,
    UnauthorizedMoveError,
)
from src.core.match_status import (
    DrawOffered,
    Drawn,
    InProgress,
    MatchStatus,
    Resigned,
    is_final,
    status_to_json,
)
from src.core.models import MatchOutcome, PlayerName, SessionModel, SettlementRecord
from src.core.shared_types import (
    Color,
    ControllerState,
    GameMode,
    OutcomeKind,
    TurnOwner,
)
from src.db.change_feed import Subscription
from src.engine.uci_client import DecisionOracleClient, extract_token
from src.services.ledger_service import LedgerClient
from src.services.session_service import SessionRecordClient

logger = logging.getLogger(__name__)

OracleFactory = Callable[[], DecisionOracleClient]


def _write_key(fen: str, moves: list[str], status: MatchStatus) -> tuple:
    return fen, tuple(moves), tuple(sorted(status_to_json(status).items()))


@dataclass
class MatchSession:
    """Everything the controller knows about the match in progress. Created by start_match, dropped by leave_match."""

    local_name: PlayerName
    mode: GameMode
    local_color: Color
    players: dict[Color, PlayerName]
    position: PositionModel
    session_id: Optional[UUID] = None
    state: ControllerState = ControllerState.ACTIVE
    status: MatchStatus = field(default_factory=lambda: InProgress(turn=Color.WHITE))
    signal_outcome: Optional[MatchOutcome] = None
    outcome: MatchOutcome = field(default_factory=MatchOutcome.ongoing)
    settled: bool = False
    settlement: Optional[SettlementRecord] = None
    stale_snapshots: int = 0
    diverged: bool = False
    sync_pending: bool = False
    subscription: Optional[Subscription] = field(default=None, repr=False)
    # writes of this client that the change feed has not echoed back yet
    own_writes: list[tuple] = field(default_factory=list, repr=False)

    @property
    def opponent_color(self) -> Color:
        return self.local_color.opponent

    @property
    def opponent_name(self) -> PlayerName:
        return self.players[self.opponent_color]

    @property
    def is_engine_match(self) -> bool:
        return self.mode == GameMode.PLAYER_VS_ENGINE

    @property
    def turn_owner(self) -> TurnOwner:
        if self.position.turn == self.local_color:
            return TurnOwner.LOCAL
        return TurnOwner.REMOTE_OR_ENGINE


class MatchController:
    """Owns the Position Model of the current match and orchestrates the Ledger, Session and Oracle clients."""

    def __init__(
        self,
        ledger: LedgerClient,
        sessions: SessionRecordClient,
        oracle_factory: Optional[OracleFactory] = None,
        engine_name: str = ENGINE_NAME,
    ) -> None:
        self.ledger = ledger
        self.sessions = sessions
        self.oracle_factory = oracle_factory
        self.engine_name = engine_name
        self.oracle: Optional[DecisionOracleClient] = None
        self.session: Optional[MatchSession] = None
        self._tasks: set[asyncio.Task] = set()

    # --- STATE EXPOSED TO THE UI ---
    @property
    def state(self) -> ControllerState:
        return self.session.state if self.session else ControllerState.LOBBY

    @property
    def snapshot(self) -> str:
        return self._require_session().position.snapshot()

    @property
    def turn_color(self) -> Color:
        return self._require_session().position.turn

    @property
    def outcome(self) -> MatchOutcome:
        return self._require_session().outcome

    @property
    def engine_unresponsive(self) -> bool:
        return self.oracle is not None and self.oracle.unresponsive

    @property
    def outcome_message(self) -> Optional[str]:
        session = self._require_session()
        outcome = session.outcome
        loser = session.players[outcome.loser_color] if outcome.loser_color else None
        if outcome.kind == OutcomeKind.CHECKMATE:
            return f"Checkmate! {outcome.winner} wins."
        if outcome.kind == OutcomeKind.RESIGNATION:
            return f"{loser} resigned. {outcome.winner} wins."
        if outcome.kind == OutcomeKind.AGREED_DRAW:
            return "Draw agreed."
        if outcome.kind == OutcomeKind.DRAW:
            return f"Draw by {outcome.reason}."
        return None

    def legal_moves(self, square: Optional[str] = None) -> list[str]:
        return self._require_session().position.legal_moves(square)

    def view(self) -> MatchStateResponse:
        """Everything a board renderer needs."""
        session = self._require_session()
        status = session.status
        return MatchStateResponse(
            state=session.state,
            mode=session.mode,
            local_name=session.local_name,
            local_color=session.local_color,
            players=dict(session.players),
            fen=session.position.snapshot(),
            moves=session.position.move_list,
            turn=session.position.turn,
            turn_owner=session.turn_owner,
            in_check=session.position.in_check(),
            outcome=session.outcome.kind,
            winner=session.outcome.winner,
            message=self.outcome_message,
            captured=session.position.captured_pieces(),
            draw_offered_by=status.by if isinstance(status, DrawOffered) else None,
            engine_unresponsive=self.engine_unresponsive,
            diverged=session.diverged,
            stale_snapshots=session.stale_snapshots,
            sync_pending=session.sync_pending,
        )

    async def list_participants(self) -> list[ParticipantResponse]:
        entries = await self.ledger.list_participants()
        return [ParticipantResponse(name=entry.name, balance=entry.balance) for entry in entries]

    async def list_open_sessions(self) -> list[OpenSessionResponse]:
        records = await self.sessions.list_open()
        return [
            OpenSessionResponse(
                session_id=record.id,
                white=record.white,
                black=record.black,
                moves_played=len(record.moves_san),
                created_at=record.created_at,
            )
            for record in records
        ]

    # --- LIFECYCLE ---
    async def start(self, request: StartMatchRequest) -> MatchStateResponse:
        """Entry point for the UI, validated by the request model."""
        await self.start_match(
            request.player_name, request.mode, request.opponent_name, request.color
        )
        return self.view()

    async def start_match(
        self,
        local_name: PlayerName,
        mode: GameMode,
        opponent: Optional[PlayerName] = None,
        local_color: Color = Color.WHITE,
    ) -> MatchSession:
        """
        Leave the lobby.
        ----

        1. Make sure the local participant has a ledger entry (created with the starting balance on first appearance).
        2. Player vs player: find the Session Record of the pair, or create it (local participant as white by default),
           and follow its change feed.
        3. Player vs engine: open the engine channel. If the engine plays white it moves first.
        """
        if self.session is not None:
            raise GameStateError(
                f"Already in a match ({self.session.state}). Leave it before starting another one."
            )
        entry = await self.ledger.resolve_participant(local_name)
        local_name = entry.name

        if mode == GameMode.PLAYER_VS_PLAYER:
            session = await self._start_player_match(local_name, opponent, local_color)
        else:
            session = await self._start_engine_match(local_name, local_color)

        logger.info(
            "%r started a %s match as %s against %r",
            local_name,
            mode,
            session.local_color,
            session.opponent_name,
        )
        return session

    async def leave_match(self, delete_record: bool = False) -> None:
        """Back to the lobby. Pending requests are abandoned, the Session Record stays unless asked otherwise."""
        session = self.session
        if session is None:
            return
        if session.subscription is not None:
            session.subscription.unsubscribe()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if self.oracle is not None:
            await self.oracle.close()
            self.oracle = None
        if delete_record and session.session_id is not None:
            await self.sessions.delete(session.session_id)
        self.session = None
        logger.info("%r left the match", session.local_name)

    async def drain(self) -> None:
        """Wait until every scheduled handler and engine search has run to completion."""
        while self._tasks or (self.oracle is not None and self.oracle.pending):
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            if self.oracle is not None:
                await self.oracle.wait_idle()

    # --- MOVES ---
    async def submit_move(self, request: MoveRequest) -> bool:
        return await self.attempt_local_move(
            request.from_square, request.to_square, request.promote_to
        )

    async def attempt_local_move(
        self, from_square: str, to_square: str, promotion: Optional[str] = None
    ) -> bool:
        """
        Local participant drags a piece.
        ----

        Returns False (and nothing changes) for a piece of the wrong color, a move out of turn or an illegal move.
        Otherwise: apply, publish to the Session Record, check for the end of the match, and wake up the engine if it is its turn.
        """
        session = self._require_session()
        try:
            self._authorize(session, from_square)
            applied = session.position.apply_move(from_square, to_square, promotion)
        except (UnauthorizedMoveError, IllegalMoveError) as exc:
            logger.info("Rejected %s-%s by %r: %s", from_square, to_square, session.local_name, exc)
            return False

        await self._after_move(session, applied)
        return True

    async def receive_remote_snapshot(self, notation: str, move_list: list[str]) -> bool:
        """
        Absorb the position the opponent wrote to the Session Record.
        ----

        * identical to the local position: no-op (this is how our own writes come back)
        * match already over: ignored, the outcome is fixed
        * move list is a strict prefix of ours: stale, delivered out of order, ignored and counted
        * move list does not extend ours: last writer wins, adopted and flagged as diverged
        Returns True when the local position was replaced.
        """
        session = self._require_session()
        position = session.position
        if notation == position.snapshot():
            return False
        if session.state != ControllerState.ACTIVE:
            logger.warning(
                "Match is over (%s), ignoring remote snapshot with %d plies",
                session.outcome.kind,
                len(move_list),
            )
            return False
        if self._is_stale(session, move_list):
            return False

        local_moves = position.move_list
        extends_local = move_list[: len(local_moves)] == local_moves
        try:
            position.load_from(notation, move_list)
        except InvalidSnapshotError as exc:
            session.diverged = True
            logger.warning("Cannot absorb remote snapshot: %s", exc)
            return False

        if not extends_local:
            session.diverged = True
            logger.warning(
                "Remote history diverged from ours after %d plies, adopted the remote one",
                len(local_moves),
            )
        await self.evaluate_outcome()
        return True

    async def receive_engine_move(self, token: str) -> bool:
        """Apply the engine's move. Trusted, so no authorization check, but it has to be the engine's turn."""
        session = self._require_session()
        if not session.is_engine_match or session.state != ControllerState.ACTIVE:
            logger.info("Ignoring engine move %r, no engine match in progress", token)
            return False
        if session.turn_owner == TurnOwner.LOCAL:
            logger.info("Ignoring engine move %r, it is not the engine's turn", token)
            return False

        move_token = extract_token(token)
        if move_token is None:
            return False
        try:
            applied = session.position.apply_uci(move_token)
        except IllegalMoveError as exc:
            logger.warning("Engine suggested an illegal move: %s", exc)
            return False

        await self._after_move(session, applied)
        return True

    async def take_back(self) -> bool:
        """Engine matches only: undo the engine's reply together with the local move before it."""
        session = self._require_active()
        if not session.is_engine_match:
            raise GameStateError("Moves can only be taken back against the engine.")
        if session.turn_owner != TurnOwner.LOCAL or session.position.ply_count < 2:
            return False
        undone = session.position.undo(2)
        logger.info("%r took back %s", session.local_name, list(reversed(undone)))
        return True

    # --- OUTCOME ---
    async def evaluate_outcome(self) -> MatchOutcome:
        """
        Settle the ledger the first time the match is found to be over.

        Explicit signals (resignation, agreed draw) take precedence over what the board says.
        The settled flag is raised before the first `await`, so a second call arriving meanwhile is a no-op.
        """
        session = self._require_session()
        if session.settled:
            return session.outcome

        outcome = session.signal_outcome or session.position.outcome()
        outcome = outcome.named(session.players)
        session.outcome = outcome
        if not outcome.is_over:
            return outcome

        session.settled = True
        session.state = ControllerState.TERMINATED
        logger.info("Match over: %s", self.outcome_message)
        await self._settle(session, outcome)
        return outcome

    async def resign(self, side: Optional[Color] = None) -> MatchOutcome:
        session = self._require_active()
        side = side or session.local_color
        if not session.is_engine_match and side != session.local_color:
            raise UnauthorizedMoveError(f"{session.local_name} cannot resign for {side}.")
        if session.players[side] == self.engine_name:
            raise UnauthorizedMoveError("The engine does not resign.")

        reason = f"{session.players[side]} resigned"
        session.signal_outcome = MatchOutcome(
            OutcomeKind.RESIGNATION, winner_color=side.opponent, reason=reason
        )
        session.status = Resigned(by=side, reason=reason)
        if session.session_id is not None:
            await self._publish(session)
        return await self.evaluate_outcome()

    async def offer_draw(self, side: Optional[Color] = None) -> bool:
        """True when the offer is on the table. The engine never accepts one."""
        session = self._require_active()
        side = side or session.local_color
        if session.is_engine_match:
            logger.info("The engine declines the draw offer of %r", session.local_name)
            return False
        if side != session.local_color:
            raise UnauthorizedMoveError(f"{session.local_name} cannot offer a draw for {side}.")

        status = session.status
        if isinstance(status, DrawOffered):
            if status.by == side:
                return True
            # both sides want a draw
            await self.accept_draw()
            return True

        session.status = DrawOffered(by=side)
        await self._publish(session)
        logger.info("%r offers a draw", session.local_name)
        return True

    async def accept_draw(self) -> MatchOutcome:
        session = self._require_active()
        if not self._opponent_offered_draw(session):
            raise GameStateError("There is no draw offer from the opponent to accept.")
        session.signal_outcome = MatchOutcome(OutcomeKind.AGREED_DRAW, reason="agreement")
        session.status = Drawn(reason="agreement")
        await self._publish(session)
        return await self.evaluate_outcome()

    async def decline_draw(self) -> None:
        session = self._require_active()
        if not self._opponent_offered_draw(session):
            raise GameStateError("There is no draw offer from the opponent to decline.")
        session.status = InProgress(turn=session.position.turn)
        await self._publish(session)
        logger.info("%r declines the draw offer", session.local_name)

    async def retry_sync(self) -> bool:
        """Publish the local state again after a StoreUnavailableError, then re-check the outcome."""
        session = self._require_session()
        if not session.sync_pending:
            return False
        await self._publish(session)
        await self.evaluate_outcome()
        return True

    # -- PRIVATE HELPERS ---
    def _require_session(self) -> MatchSession:
        if self.session is None:
            raise GameStateError("No match in progress. Start one from the lobby.")
        return self.session

    def _require_active(self) -> MatchSession:
        session = self._require_session()
        if session.state != ControllerState.ACTIVE:
            raise GameStateError(f"Match is not active. state: {session.state}")
        return session

    def _authorize(self, session: MatchSession, from_square: str) -> None:
        if session.state != ControllerState.ACTIVE:
            raise UnauthorizedMoveError(f"Match is over: {session.outcome.kind}")
        piece_color = session.position.piece_color_at(from_square)
        if piece_color != session.local_color:
            raise UnauthorizedMoveError(
                f"{session.local_name} plays {session.local_color}, the piece on {from_square} is not theirs."
            )
        if session.turn_owner != TurnOwner.LOCAL:
            raise UnauthorizedMoveError(
                f"It is not your turn. Waiting for {session.opponent_name} to move."
            )

    @staticmethod
    def _is_stale(session: MatchSession, move_list: list[str]) -> bool:
        """Strict prefix of the local history: written before our latest known move, delivered late."""
        local_moves = session.position.move_list
        if len(move_list) >= len(local_moves) or local_moves[: len(move_list)] != move_list:
            return False
        session.stale_snapshots += 1
        logger.warning(
            "Ignoring stale snapshot with %d plies, local position has %d",
            len(move_list),
            len(local_moves),
        )
        return True

    @staticmethod
    def _opponent_offered_draw(session: MatchSession) -> bool:
        status = session.status
        return isinstance(status, DrawOffered) and status.by == session.opponent_color

    async def _after_move(self, session: MatchSession, applied: AppliedMove) -> None:
        logger.debug("%s played %s", applied.color, applied.san)
        if session.session_id is not None:
            session.status = InProgress(turn=session.position.turn)
            await self._publish(session)

        outcome = await self.evaluate_outcome()
        if (
            session.is_engine_match
            and not outcome.is_over
            and session.turn_owner == TurnOwner.REMOTE_OR_ENGINE
        ):
            self._request_engine_move(session)

    async def _publish(self, session: MatchSession) -> None:
        if session.session_id is None:
            return
        fen = session.position.snapshot()
        moves = session.position.move_list
        key = _write_key(fen, moves, session.status)
        session.own_writes.append(key)
        try:
            await self.sessions.publish(session.session_id, fen, moves, session.status)
        except StoreUnavailableError:
            session.own_writes.remove(key)
            session.sync_pending = True
            raise
        session.sync_pending = False

    async def _settle(self, session: MatchSession, outcome: MatchOutcome) -> None:
        claimed = False
        try:
            if session.session_id is not None:
                claimed = await self.sessions.claim_settlement(session.session_id)
                if not claimed:
                    raise DuplicateSettlementError(
                        f"Session {session.session_id} was settled by the other participant."
                    )
            session.settlement = await self.ledger.settle(
                outcome, session.players[Color.WHITE], session.players[Color.BLACK]
            )
        except DuplicateSettlementError as exc:
            logger.info("%s", exc)
        except StoreUnavailableError:
            if not claimed:
                # nothing was written, a later evaluate_outcome may try again
                session.settled = False
            raise

    # -- PLAYER VS PLAYER --
    async def _start_player_match(
        self, local_name: PlayerName, opponent: Optional[PlayerName], local_color: Color
    ) -> MatchSession:
        if not opponent:
            raise InvalidRequestError("A player vs player match needs an opponent.")
        opponent = (await self.ledger.resolve_participant(opponent)).name
        if opponent == local_name:
            raise InvalidRequestError(f"{local_name!r} cannot play against themselves.")

        record = await self.sessions.find_for_pair(local_name, opponent)
        if record is not None and (record.settled or is_final(record.status)):
            logger.info("Previous match of %r and %r is finished, starting over", local_name, opponent)
            await self.sessions.delete(record.id)
            record = None
        if record is None:
            white, black = (
                (local_name, opponent)
                if local_color == Color.WHITE
                else (opponent, local_name)
            )
            record = await self.sessions.create(white, black)

        position = PositionModel()
        position.load_from(record.current_fen, record.moves_san)
        session = MatchSession(
            local_name=local_name,
            mode=GameMode.PLAYER_VS_PLAYER,
            local_color=record.color_of(local_name) or local_color,
            players={color: record.player_of(color) for color in Color},
            position=position,
            session_id=record.id,
            status=record.status,
        )
        self.session = session
        session.subscription = self.sessions.subscribe(record.id, self._on_session_record)
        # a record left behind after checkmate but before settlement gets settled now
        await self.evaluate_outcome()
        return session

    def _on_session_record(self, record: SessionModel) -> None:
        """Change feed callback. Only schedules, the handler runs as its own task."""
        if self.session is None:
            return
        task = asyncio.get_running_loop().create_task(self._absorb_record(record))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _absorb_record(self, record: SessionModel) -> None:
        session = self.session
        if session is None or record.id != session.session_id:
            return
        key = _write_key(record.current_fen, record.moves_san, record.status)
        if key in session.own_writes:
            # our own write coming back, together with anything older we wrote
            del session.own_writes[: session.own_writes.index(key) + 1]
            return

        try:
            # a stale record carries a status that is stale too
            if self._is_stale(session, record.moves_san):
                return
            if session.state == ControllerState.ACTIVE and record.status != session.status:
                await self._absorb_status(session, record.status)
            if record.current_fen != session.position.snapshot():
                await self.receive_remote_snapshot(record.current_fen, record.moves_san)
        except GameError:
            logger.exception("Could not absorb update of session %s", record.id)

    async def _absorb_status(self, session: MatchSession, status: MatchStatus) -> None:
        session.status = status
        if isinstance(status, Resigned):
            session.signal_outcome = MatchOutcome(
                OutcomeKind.RESIGNATION, winner_color=status.by.opponent, reason=status.reason
            )
        elif isinstance(status, Drawn):
            session.signal_outcome = MatchOutcome(OutcomeKind.AGREED_DRAW, reason=status.reason)
        elif isinstance(status, DrawOffered) and status.by == session.opponent_color:
            logger.info("%r offers a draw", session.opponent_name)
            return
        else:
            return
        await self.evaluate_outcome()

    # -- PLAYER VS ENGINE --
    async def _start_engine_match(
        self, local_name: PlayerName, local_color: Color
    ) -> MatchSession:
        session = MatchSession(
            local_name=local_name,
            mode=GameMode.PLAYER_VS_ENGINE,
            local_color=local_color,
            players={local_color: local_name, local_color.opponent: self.engine_name},
            position=PositionModel(),
        )
        self.session = session
        if self.oracle_factory is not None:
            self.oracle = self.oracle_factory()
            await self.oracle.start()
        else:
            logger.warning("No engine configured, the automated opponent will not move.")
        if session.turn_owner == TurnOwner.REMOTE_OR_ENGINE:
            self._request_engine_move(session)
        return session

    def _request_engine_move(self, session: MatchSession) -> None:
        if self.oracle is None:
            return
        self.oracle.request_move(session.position.snapshot(), self._on_engine_result)

    async def _on_engine_result(self, notation: str, token: str) -> None:
        session = self.session
        if session is None or session.position.snapshot() != notation:
            logger.info("Discarding engine move %r for a position that is gone", token)
            return
        try:
            await self.receive_engine_move(token)
        except GameError:
            logger.exception("Could not apply engine move %r", token)
