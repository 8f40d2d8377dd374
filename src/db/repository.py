"""Protocol repositories (implemented with SQL Alchemy in sql_repository.py, with dictionaries in the tests)"""

from typing import Protocol
from uuid import UUID

from src.core.models import LedgerEntryModel, SessionModel


class LedgerRepository(Protocol):
    """Participant balances."""

    def get_entry(self, name: str) -> LedgerEntryModel | None:
        """Get participant by name, if record exists."""
        ...

    def create_entry(self, name: str, balance: int) -> LedgerEntryModel:
        """Insert a new participant. Returns the existing record if someone else inserted the same name first."""
        ...

    def apply_delta(self, name: str, delta: int) -> LedgerEntryModel | None:
        """Atomically set balance to max(0, balance + delta). None if the participant is unknown."""
        ...

    def list_entries(self) -> list[LedgerEntryModel]:
        """All participants, highest balance first."""
        ...


class SessionRepository(Protocol):
    """Shared match records."""

    def get_session(self, session_id: UUID) -> SessionModel | None:
        """Get session by ID, if record exists."""
        ...

    def find_by_pair(self, first: str, second: str) -> SessionModel | None:
        """The session between two participants, in either color assignment."""
        ...

    def create_session(self, session: SessionModel) -> SessionModel:
        """Store a new session. Returns the existing one if the pair already has a session."""
        ...

    def update_session(self, session: SessionModel) -> SessionModel | None:
        """Overwrite position, moves and status (last writer wins)."""
        ...

    def claim_settlement(self, session_id: UUID) -> bool:
        """Flip the settled marker. True only for the caller that flipped it."""
        ...

    def delete_session(self, session_id: UUID) -> SessionModel | None:
        """Remove a session's record."""
        ...

    def list_sessions(self) -> list[SessionModel]:
        """All sessions, oldest first."""
        ...
