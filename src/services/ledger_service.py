"""
Scoring Ledger client: coin balances per participant and outcome-driven settlement.

The methods are coroutines so the controller can await them, but the store calls underneath are
synchronous SQLAlchemy calls and block the event loop for their duration.
"""

import logging
from typing import Optional

from src.core.config import ENGINE_NAME, Settings
from src.core.exceptions import InvalidRequestError, RepositoryError
from src.core.models import LedgerEntryModel, MatchOutcome, PlayerName, SettlementRecord
from src.core.shared_types import Color, OutcomeKind
from src.db.repository import LedgerRepository

logger = logging.getLogger(__name__)


class LedgerClient:
    """Reads and writes participant balances. The engine identity is never touched."""

    def __init__(
        self,
        repository: LedgerRepository,
        settings: Optional[Settings] = None,
        engine_name: str = ENGINE_NAME,
    ) -> None:
        self.repo = repository
        self.settings = settings or Settings()
        self.engine_name = engine_name

    def is_exempt(self, name: PlayerName) -> bool:
        return name == self.engine_name

    async def resolve_participant(self, name: PlayerName) -> LedgerEntryModel:
        """Read the participant's entry, insert it with the starting balance on first appearance."""
        name = name.strip()
        if not name:
            raise InvalidRequestError("Participant name cannot be empty.")
        if self.is_exempt(name):
            raise InvalidRequestError(f"{name!r} is reserved for the automated opponent.")

        entry = self.repo.get_entry(name)
        if entry is None:
            entry = self.repo.create_entry(name, self.settings.starting_balance)
            logger.info("New participant %r starts with %d coins", name, entry.balance)
        return entry

    async def balance(self, name: PlayerName) -> int:
        entry = self.repo.get_entry(name)
        if entry is None:
            raise RepositoryError(f"Participant {name!r} not found.")
        return entry.balance

    async def list_participants(self) -> list[LedgerEntryModel]:
        return self.repo.list_entries()

    async def adjust(self, name: PlayerName, delta: int) -> Optional[int]:
        """
        Add `delta` to the balance, never going below zero.
        ----

        The store applies max(0, balance + delta) in a single statement, so concurrent adjustments do not lose updates.
        Returns the new balance, or None for the engine identity.
        """
        if self.is_exempt(name):
            return None
        entry = self.repo.apply_delta(name, delta)
        if entry is None:
            raise RepositoryError(f"Participant {name!r} not found.")
        logger.info("Balance of %r adjusted by %+d to %d", name, delta, entry.balance)
        return entry.balance

    async def settle(
        self, outcome: MatchOutcome, white: PlayerName, black: PlayerName
    ) -> SettlementRecord:
        """Apply the deltas for a finished match: win +3, loss -3, any kind of draw +1 each."""
        deltas = self.deltas_for(outcome, white, black)
        record = SettlementRecord(outcome=outcome)
        for name, delta in deltas.items():
            if self.is_exempt(name):
                continue
            await self.adjust(name, delta)
            record.deltas[name] = delta
        logger.info("Settled %s between %r and %r: %s", outcome.kind, white, black, record.deltas)
        return record

    def deltas_for(
        self, outcome: MatchOutcome, white: PlayerName, black: PlayerName
    ) -> dict[PlayerName, int]:
        players = {Color.WHITE: white, Color.BLACK: black}
        if outcome.is_draw:
            return {white: self.settings.draw_points, black: self.settings.draw_points}
        if outcome.kind in (OutcomeKind.CHECKMATE, OutcomeKind.RESIGNATION):
            if outcome.winner_color is None:
                raise InvalidRequestError(f"Outcome {outcome.kind} without a winner.")
            return {
                players[outcome.winner_color]: self.settings.win_points,
                players[outcome.winner_color.opponent]: self.settings.loss_points,
            }
        raise InvalidRequestError(f"Cannot settle an outcome that is {outcome.kind}.")
