"""
Session Record client: the shared row both participants of a match read from and write to.

Like the ledger client, the coroutines wrap synchronous SQLAlchemy calls and block the event loop while the store answers.
Change feed callbacks fire from inside `publish` / `set_status`, once the write is committed.
"""

import logging
from typing import Callable
from uuid import UUID, uuid4

from src.board.position import STARTING_FEN
from src.core.exceptions import InvalidRequestError, RepositoryError
from src.core.match_status import InProgress, MatchStatus, is_final, status_from_json
from src.core.models import Notation, PlayerName, SessionModel
from src.core.shared_types import Color
from src.db.change_feed import ChangeFeed, Operation, RowEvent, Subscription
from src.db.repository import SessionRepository
from src.db.schema import DBSession

logger = logging.getLogger(__name__)

SESSIONS_TABLE = DBSession.__tablename__

SessionCallback = Callable[[SessionModel], None]


class SessionRecordClient:
    """Reads, writes and watches Session Records. Writes are last-writer-wins."""

    def __init__(self, repository: SessionRepository, feed: ChangeFeed) -> None:
        self.repo = repository
        self.feed = feed

    async def get(self, session_id: UUID) -> SessionModel:
        session = self.repo.get_session(session_id)
        if session is None:
            raise RepositoryError(f"Session with {session_id=} not found.")
        return session

    async def find_for_pair(
        self, first: PlayerName, second: PlayerName
    ) -> SessionModel | None:
        return self.repo.find_by_pair(first, second)

    async def create(self, white: PlayerName, black: PlayerName) -> SessionModel:
        """New session at the starting position. If the pair already has one, that one is returned instead."""
        if white == black:
            raise InvalidRequestError(f"{white!r} cannot play against themselves.")
        new_session = SessionModel(
            id=uuid4(),
            white=white,
            black=black,
            current_fen=STARTING_FEN,
            moves_san=[],
            status=InProgress(turn=Color.WHITE),
        )
        stored = self.repo.create_session(new_session)
        if stored.id == new_session.id:
            logger.info("Created session %s: %r (white) vs %r (black)", stored.id, white, black)
        return stored

    async def publish(
        self,
        session_id: UUID,
        notation: Notation,
        moves_san: list[str],
        status: MatchStatus,
    ) -> SessionModel:
        """Overwrite the shared position. Whoever writes last wins."""
        current = await self.get(session_id)
        current.current_fen = notation
        current.moves_san = list(moves_san)
        current.status = status
        return self._update(current)

    async def set_status(self, session_id: UUID, status: MatchStatus) -> SessionModel:
        current = await self.get(session_id)
        current.status = status
        return self._update(current)

    async def claim_settlement(self, session_id: UUID) -> bool:
        """True for exactly one caller per session: the one allowed to settle the ledger."""
        claimed = self.repo.claim_settlement(session_id)
        if not claimed:
            logger.info("Session %s was already settled", session_id)
        return claimed

    async def delete(self, session_id: UUID) -> None:
        if self.repo.delete_session(session_id) is not None:
            logger.info("Deleted session %s", session_id)

    async def list_open(self) -> list[SessionModel]:
        """Sessions that can still be joined / resumed."""
        return [
            session
            for session in self.repo.list_sessions()
            if not session.settled and not is_final(session.status)
        ]

    def subscribe(self, session_id: UUID, callback: SessionCallback) -> Subscription:
        """Call `callback` with the new record whenever a write to this session is committed."""

        def on_row_event(row_event: RowEvent) -> None:
            if row_event.operation == Operation.DELETE:
                return
            callback(row_to_session(row_event.row))

        return self.feed.subscribe(
            SESSIONS_TABLE, on_row_event, predicate=lambda row: row.get("id") == session_id
        )

    def _update(self, session: SessionModel) -> SessionModel:
        stored = self.repo.update_session(session)
        if stored is None:
            raise RepositoryError(f"Session with id={session.id} no longer exists.")
        return stored


def row_to_session(row: dict) -> SessionModel:
    """Session model from a change feed row."""
    return SessionModel(
        id=row["id"],
        white=row["white"],
        black=row["black"],
        current_fen=row["current_fen"],
        moves_san=list(row.get("moves_san") or []),
        status=status_from_json(row["status"]),
        settled=bool(row.get("settled", False)),
        created_at=row.get("created_at"),
    )
