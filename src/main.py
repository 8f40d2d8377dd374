"""Wiring: settings -> store -> clients -> controller."""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from src.core.config import ENGINE_NAME, Settings
from src.db.change_feed import ChangeFeed
from src.db.sql_repository import SQLLedgerRepository, SQLSessionRepository
from src.engine.uci_client import DecisionOracleClient, EngineChannel, UciEngineChannel
from src.services.ledger_service import LedgerClient
from src.services.match_controller import MatchController, OracleFactory
from src.services.session_service import SessionRecordClient

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    # SQL statements are echoed by the engine itself when sql_echo is on
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.sql_echo else logging.WARNING
    )


def oracle_factory(
    settings: Settings, channel_factory: Optional[Callable[[], EngineChannel]] = None
) -> OracleFactory:
    """A fresh engine channel for every match."""

    def build() -> DecisionOracleClient:
        channel = (
            channel_factory() if channel_factory else UciEngineChannel(settings.engine_path)
        )
        return DecisionOracleClient(
            channel,
            difficulty=settings.difficulty,
            timeout_sec=settings.engine_timeout_sec,
        )

    return build


def build_controller(
    settings: Settings,
    db: Session,
    feed: ChangeFeed,
    channel_factory: Optional[Callable[[], EngineChannel]] = None,
) -> MatchController:
    """One controller per client. Clients sharing a store must share the change feed too."""
    feed.watch(db)
    ledger = LedgerClient(SQLLedgerRepository(db), settings, engine_name=ENGINE_NAME)
    sessions = SessionRecordClient(SQLSessionRepository(db), feed)
    return MatchController(
        ledger,
        sessions,
        oracle_factory=oracle_factory(settings, channel_factory),
        engine_name=ENGINE_NAME,
    )
