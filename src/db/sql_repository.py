"""Implementation of the Ledger and Session repositories using SQLAlchemy"""

import logging
from contextlib import contextmanager
from typing import Iterator
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.core.exceptions import StoreUnavailableError
from src.core.match_status import status_from_json, status_to_json
from src.core.models import LedgerEntryModel, SessionModel
from src.db.schema import DBLedgerEntry, DBSession, pair_key

logger = logging.getLogger(__name__)


@contextmanager
def store_errors(db: Session, action: str) -> Iterator[None]:
    """Roll back and surface any database failure as StoreUnavailableError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Store failure while trying to %s", action)
        db.rollback()
        raise StoreUnavailableError(f"Could not {action}: {exc}") from exc


class SQLLedgerRepository:
    """Participant balances stored in the `ledger` table."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get_entry(self, name: str) -> LedgerEntryModel | None:
        with store_errors(self.db, f"read ledger entry {name!r}"):
            entry_db = self._fetch_entry(name)
        return self._to_model(entry_db) if entry_db else None

    def create_entry(self, name: str, balance: int) -> LedgerEntryModel:
        entry_db = DBLedgerEntry(name=name, balance=balance)
        with store_errors(self.db, f"create ledger entry {name!r}"):
            try:
                self.db.add(entry_db)
                self.db.commit()
            except IntegrityError:
                # someone inserted the same name in between our read and our insert
                self.db.rollback()
                existing = self._fetch_entry(name)
                if existing is None:
                    raise
                logger.info("Ledger entry %r was created concurrently", name)
                return self._to_model(existing)
            self.db.refresh(entry_db)
        return self._to_model(entry_db)

    def apply_delta(self, name: str, delta: int) -> LedgerEntryModel | None:
        new_balance = DBLedgerEntry.balance + delta
        query = (
            update(DBLedgerEntry)
            .where(DBLedgerEntry.name == name)
            .values(balance=case((new_balance < 0, 0), else_=new_balance))
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.db, f"adjust balance of {name!r}"):
            result = self.db.execute(query)
            self.db.commit()
            if result.rowcount == 0:
                return None
            entry_db = self._fetch_entry(name)
        return self._to_model(entry_db) if entry_db else None

    def list_entries(self) -> list[LedgerEntryModel]:
        query = select(DBLedgerEntry).order_by(
            DBLedgerEntry.balance.desc(), DBLedgerEntry.name
        )
        with store_errors(self.db, "list ledger entries"):
            entries = self.db.scalars(
                query.execution_options(populate_existing=True)
            ).all()
        return [self._to_model(entry) for entry in entries]

    def _fetch_entry(self, name: str) -> DBLedgerEntry | None:
        query = select(DBLedgerEntry).where(DBLedgerEntry.name == name)
        return self.db.scalar(query.execution_options(populate_existing=True))

    def _to_model(self, entry_db: DBLedgerEntry) -> LedgerEntryModel:
        return LedgerEntryModel(name=entry_db.name, balance=entry_db.balance)


class SQLSessionRepository:
    """Shared match records stored in the `sessions` table."""

    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def get_session(self, session_id: UUID) -> SessionModel | None:
        with store_errors(self.db, f"read session {session_id}"):
            session_db = self._fetch_session(session_id)
        return to_session_model(session_db) if session_db else None

    def find_by_pair(self, first: str, second: str) -> SessionModel | None:
        with store_errors(self.db, f"look up session for {first!r} and {second!r}"):
            session_db = self._fetch_by_pair(first, second)
        return to_session_model(session_db) if session_db else None

    def create_session(self, session: SessionModel) -> SessionModel:
        """Check-then-insert, the unique pair key catches whoever loses the race."""
        existing = self.find_by_pair(session.white, session.black)
        if existing is not None:
            return existing

        session_db = DBSession(
            id=session.id,
            white=session.white,
            black=session.black,
            pair_key=pair_key(session.white, session.black),
            current_fen=session.current_fen,
            moves_san=list(session.moves_san),
            status=status_to_json(session.status),
            settled=session.settled,
        )
        with store_errors(self.db, f"create session {session.id}"):
            try:
                self.db.add(session_db)
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                winner = self._fetch_by_pair(session.white, session.black)
                if winner is None:
                    raise
                logger.info(
                    "Session for %r and %r was created concurrently",
                    session.white,
                    session.black,
                )
                return to_session_model(winner)
            self.db.refresh(session_db)
        return to_session_model(session_db)

    def update_session(self, session: SessionModel) -> SessionModel | None:
        with store_errors(self.db, f"update session {session.id}"):
            session_db = self._fetch_session(session.id)
            if not session_db:
                return None
            session_db.current_fen = session.current_fen
            session_db.moves_san = list(session.moves_san)
            session_db.status = status_to_json(session.status)
            self.db.commit()
            self.db.refresh(session_db)
        return to_session_model(session_db)

    def claim_settlement(self, session_id: UUID) -> bool:
        query = (
            update(DBSession)
            .where(DBSession.id == session_id, DBSession.settled.is_(False))
            .values(settled=True)
            .execution_options(synchronize_session=False)
        )
        with store_errors(self.db, f"claim settlement of session {session_id}"):
            result = self.db.execute(query)
            self.db.commit()
        return result.rowcount == 1

    def delete_session(self, session_id: UUID) -> SessionModel | None:
        with store_errors(self.db, f"delete session {session_id}"):
            session_db = self._fetch_session(session_id)
            if not session_db:
                return None
            session_model = to_session_model(session_db)
            self.db.delete(session_db)
            self.db.commit()
        return session_model

    def list_sessions(self) -> list[SessionModel]:
        query = select(DBSession).order_by(DBSession.created_at)
        with store_errors(self.db, "list sessions"):
            sessions = self.db.scalars(
                query.execution_options(populate_existing=True)
            ).all()
        return [to_session_model(session_db) for session_db in sessions]

    def _fetch_session(self, session_id: UUID) -> DBSession | None:
        query = select(DBSession).where(DBSession.id == session_id)
        return self.db.scalar(query.execution_options(populate_existing=True))

    def _fetch_by_pair(self, first: str, second: str) -> DBSession | None:
        query = select(DBSession).where(DBSession.pair_key == pair_key(first, second))
        return self.db.scalar(query.execution_options(populate_existing=True))


def to_session_model(session_db: DBSession) -> SessionModel:
    """Convert SQLAlchemy model to data transfer model."""
    return SessionModel(
        id=session_db.id,
        white=session_db.white,
        black=session_db.black,
        current_fen=session_db.current_fen,
        moves_san=list(session_db.moves_san),
        status=status_from_json(session_db.status),
        settled=session_db.settled,
        created_at=session_db.created_at,
    )
