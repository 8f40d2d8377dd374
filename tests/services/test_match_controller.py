"""Unit tests for src/services/match_controller.py"""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

from src.api.models import MoveRequest, StartMatchRequest
from src.board.position import STARTING_FEN, PositionModel
from src.core.config import ENGINE_NAME, Settings
from src.core.exceptions import (
    GameStateError,
    InvalidRequestError,
    StoreUnavailableError,
    UnauthorizedMoveError,
)
from src.core.match_status import DrawOffered, InProgress
from src.core.shared_types import Color, ControllerState, GameMode, OutcomeKind, TurnOwner
from src.db.change_feed import ChangeFeed
from src.main import build_controller
from src.services.ledger_service import LedgerClient
from src.services.match_controller import MatchController

SCHOLARS_MATE = [("e2", "e4"), ("f1", "c4"), ("d1", "h5"), ("h5", "f7")]
SCHOLARS_REPLIES = ["bestmove e7e5", "bestmove b8c6 ponder h5f7", "g8f6"]


# --- MOCK DEPENDENCIES ----
class FakeEngineChannel:
    """Engine that plays a fixed list of moves."""

    def __init__(
        self, replies: Optional[list[str]] = None, delay: float = 0.0, fail_open: bool = False
    ) -> None:
        self.replies = list(replies or [])
        self.delay = delay
        self.fail_open = fail_open

    async def open(self) -> None:
        if self.fail_open:
            raise FileNotFoundError("stockfish: not found")

    async def configure(self, options: dict[str, int | str]) -> None:
        pass

    async def best_move(self, notation: str, depth: int) -> Optional[str]:
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.replies.pop(0) if self.replies else "(none)"

    async def close(self) -> None:
        pass


def engine_controller(
    settings: Settings, db: Session, feed: ChangeFeed, channel: FakeEngineChannel
) -> MatchController:
    return build_controller(settings, db, feed, channel_factory=lambda: channel)


async def drain(*controllers: MatchController) -> None:
    """Let every client absorb every pending update (absorbing may trigger more updates)."""
    for _ in range(3):
        for controller in controllers:
            await controller.drain()


@pytest.fixture
def alice(settings: Settings, db_session_repo: Session, feed: ChangeFeed) -> MatchController:
    return build_controller(settings, db_session_repo, feed)


@pytest.fixture
def bob(settings: Settings, db_session_shared: Session, feed: ChangeFeed) -> MatchController:
    return build_controller(settings, db_session_shared, feed)


async def start_pair(
    white: MatchController, white_name: str, black: MatchController, black_name: str
) -> None:
    await white.start_match(white_name, GameMode.PLAYER_VS_PLAYER, black_name, Color.WHITE)
    await black.start_match(black_name, GameMode.PLAYER_VS_PLAYER, white_name, Color.BLACK)


# --- LOBBY ---
def test_controller_starts_in_lobby(alice: MatchController) -> None:
    assert alice.state == ControllerState.LOBBY
    with pytest.raises(GameStateError):
        alice.view()


def test_start_from_request(alice: MatchController) -> None:
    request = StartMatchRequest(
        player_name="alice", mode=GameMode.PLAYER_VS_PLAYER, opponent_name="bob"
    )
    view = asyncio.run(alice.start(request))

    assert view.state == ControllerState.ACTIVE
    assert view.players == {Color.WHITE: "alice", Color.BLACK: "bob"}
    assert view.fen == STARTING_FEN
    assert view.turn_owner == TurnOwner.LOCAL
    assert view.outcome == OutcomeKind.ONGOING
    assert view.message is None


def test_cannot_start_twice(alice: MatchController) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        with pytest.raises(GameStateError):
            await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "carol")

    asyncio.run(scenario())


def test_player_match_needs_a_distinct_opponent(alice: MatchController) -> None:
    with pytest.raises(InvalidRequestError):
        asyncio.run(alice.start_match("alice", GameMode.PLAYER_VS_PLAYER))
    with pytest.raises(InvalidRequestError):
        asyncio.run(alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "alice"))
    assert alice.state == ControllerState.LOBBY


def test_new_participants_are_listed(alice: MatchController) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        participants = await alice.list_participants()
        assert {(entry.name, entry.balance) for entry in participants} == {
            ("alice", 50),
            ("bob", 50),
        }
        open_sessions = await alice.list_open_sessions()
        assert [(entry.white, entry.black, entry.moves_played) for entry in open_sessions] == [
            ("alice", "bob", 0)
        ]

    asyncio.run(scenario())


# --- PLAYER VS ENGINE ---
def test_scholars_mate_against_engine(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    """Win against the engine: +3 for the participant, the engine identity never enters the ledger."""
    controller = engine_controller(
        settings, db_session_repo, feed, FakeEngineChannel(SCHOLARS_REPLIES)
    )

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        for from_square, to_square in SCHOLARS_MATE:
            assert await controller.attempt_local_move(from_square, to_square)
            await controller.drain()

        assert controller.state == ControllerState.TERMINATED
        assert controller.outcome.kind == OutcomeKind.CHECKMATE
        assert controller.outcome.winner == "alice"
        assert controller.outcome_message == "Checkmate! alice wins."
        assert controller.session.position.move_list == [
            "e4", "e5", "Bc4", "Nc6", "Qh5", "Nf6", "Qxf7#",
        ]
        assert await controller.ledger.balance("alice") == 53
        assert ENGINE_NAME not in [entry.name for entry in await controller.list_participants()]

        # no moves after the end of the match
        assert not await controller.attempt_local_move("e1", "f2")

    asyncio.run(scenario())


def test_engine_moves_first_when_playing_white(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(
        settings, db_session_repo, feed, FakeEngineChannel(["bestmove e2e4"])
    )

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE, local_color=Color.BLACK)
        await controller.drain()
        view = controller.view()
        assert view.players == {Color.WHITE: ENGINE_NAME, Color.BLACK: "alice"}
        assert view.moves == ["e4"]
        assert view.turn_owner == TurnOwner.LOCAL
        assert await controller.submit_move(MoveRequest(from_square="E7", to_square="e5"))

    asyncio.run(scenario())


def test_engine_move_only_on_engine_turn(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(settings, db_session_repo, feed, FakeEngineChannel())

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        assert not await controller.receive_engine_move("e7e5")
        assert await controller.attempt_local_move("e2", "e4")
        await controller.drain()
        assert not await controller.receive_engine_move("e7e4")
        assert not await controller.receive_engine_move("(none)")
        assert await controller.receive_engine_move("bestmove e7e5")

    asyncio.run(scenario())


def test_slow_engine_never_forfeits(
    db_session_repo: Session, feed: ChangeFeed
) -> None:
    settings = Settings(engine_timeout_sec=0.05)
    controller = engine_controller(
        settings, db_session_repo, feed, FakeEngineChannel(["e7e5"], delay=0.5)
    )

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        assert await controller.attempt_local_move("e2", "e4")
        await controller.drain()

        assert controller.engine_unresponsive
        assert controller.view().engine_unresponsive
        assert controller.state == ControllerState.ACTIVE
        assert controller.turn_color == Color.BLACK
        assert not await controller.attempt_local_move("d2", "d4")

    asyncio.run(scenario())


def test_missing_engine_binary(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(
        settings, db_session_repo, feed, FakeEngineChannel(fail_open=True)
    )

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        assert controller.engine_unresponsive
        assert await controller.attempt_local_move("e2", "e4")
        await controller.drain()
        assert controller.session.position.move_list == ["e4"]

    asyncio.run(scenario())


def test_take_back_against_engine(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(
        settings, db_session_repo, feed, FakeEngineChannel(["e7e5"])
    )

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        assert not await controller.take_back()
        await controller.attempt_local_move("e2", "e4")
        await controller.drain()

        assert await controller.take_back()
        assert controller.snapshot == STARTING_FEN
        assert controller.session.position.ply_count == 0

    asyncio.run(scenario())


def test_draw_offer_to_engine_is_declined(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(settings, db_session_repo, feed, FakeEngineChannel())

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        assert not await controller.offer_draw()
        assert controller.state == ControllerState.ACTIVE

    asyncio.run(scenario())


def test_resign_against_engine(
    settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    controller = engine_controller(settings, db_session_repo, feed, FakeEngineChannel())

    async def scenario() -> None:
        await controller.start_match("alice", GameMode.PLAYER_VS_ENGINE)
        with pytest.raises(UnauthorizedMoveError):
            await controller.resign(Color.BLACK)
        outcome = await controller.resign()

        assert outcome.kind == OutcomeKind.RESIGNATION
        assert outcome.winner == ENGINE_NAME
        assert await controller.ledger.balance("alice") == 47

    asyncio.run(scenario())


# --- PLAYER VS PLAYER ---
def test_turn_authorization(alice: MatchController, bob: MatchController) -> None:
    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")

        # bob: right color, wrong turn / alice: wrong color / empty square / illegal
        assert not await bob.attempt_local_move("e7", "e5")
        assert not await alice.attempt_local_move("e7", "e5")
        assert not await alice.attempt_local_move("e4", "e5")
        assert not await alice.attempt_local_move("e2", "e5")
        assert alice.snapshot == STARTING_FEN

        assert await alice.attempt_local_move("e2", "e4")
        assert not await alice.attempt_local_move("d2", "d4")
        await drain(alice, bob)

        assert bob.snapshot == alice.snapshot
        assert bob.view().turn_owner == TurnOwner.LOCAL
        assert await bob.attempt_local_move("e7", "e5")
        await drain(alice, bob)
        assert alice.session.position.move_list == ["e4", "e5"]

    asyncio.run(scenario())


def test_identical_snapshot_is_a_no_op(
    alice: MatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        evaluate = AsyncMock()
        monkeypatch.setattr(alice, "evaluate_outcome", evaluate)

        assert not await alice.receive_remote_snapshot(STARTING_FEN, [])
        evaluate.assert_not_awaited()

    asyncio.run(scenario())


def test_stale_snapshot_is_ignored(alice: MatchController) -> None:
    """An older snapshot delivered after a newer one does not rewind the board."""
    older = PositionModel.from_moves(["e4"])
    newer = PositionModel.from_moves(["e4", "e5"])

    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        assert await alice.attempt_local_move("e2", "e4")
        assert await alice.receive_remote_snapshot(newer.snapshot(), newer.move_list)
        assert not await alice.receive_remote_snapshot(older.snapshot(), older.move_list)

        assert alice.snapshot == newer.snapshot()
        assert alice.view().stale_snapshots == 1
        assert not alice.view().diverged

    asyncio.run(scenario())


def test_diverged_snapshot_is_adopted(alice: MatchController) -> None:
    remote = PositionModel.from_moves(["d4"])

    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        assert await alice.attempt_local_move("e2", "e4")
        assert await alice.receive_remote_snapshot(remote.snapshot(), remote.move_list)

        assert alice.snapshot == remote.snapshot()
        assert alice.view().diverged

    asyncio.run(scenario())


def test_inconsistent_snapshot_is_rejected(alice: MatchController) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        assert not await alice.receive_remote_snapshot(STARTING_FEN.replace(" w ", " b "), ["e4"])
        assert alice.snapshot == STARTING_FEN
        assert alice.view().diverged

    asyncio.run(scenario())


def test_checkmate_is_settled_once(
    alice: MatchController, bob: MatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Fool's mate: both clients see the checkmate, the ledger changes only once."""
    adjustments: list[tuple[str, int]] = []
    original_adjust = LedgerClient.adjust

    async def recording_adjust(self: LedgerClient, name: str, delta: int) -> Optional[int]:
        adjustments.append((name, delta))
        return await original_adjust(self, name, delta)

    monkeypatch.setattr(LedgerClient, "adjust", recording_adjust)

    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        for mover, from_square, to_square in [
            (alice, "f2", "f3"),
            (bob, "e7", "e5"),
            (alice, "g2", "g4"),
            (bob, "d8", "h4"),
        ]:
            assert await mover.attempt_local_move(from_square, to_square)
            await drain(alice, bob)

        for controller in (alice, bob):
            assert controller.state == ControllerState.TERMINATED
            assert controller.outcome.kind == OutcomeKind.CHECKMATE
            assert controller.outcome.winner == "bob"
        # evaluating again changes nothing
        await alice.evaluate_outcome()
        await bob.evaluate_outcome()
        assert alice.outcome_message == "Checkmate! bob wins."
        assert await alice.ledger.balance("alice") == 47
        assert await alice.ledger.balance("bob") == 53

    asyncio.run(scenario())
    assert sorted(adjustments) == [("alice", -3), ("bob", 3)]


def test_resignation(
    bob: MatchController, settings: Settings, db_session_repo: Session, feed: ChangeFeed
) -> None:
    carol = build_controller(settings, db_session_repo, feed)

    async def scenario() -> None:
        await start_pair(carol, "carol", bob, "bob")
        with pytest.raises(UnauthorizedMoveError):
            await bob.resign(Color.WHITE)
        await bob.resign()
        await drain(carol, bob)

        assert carol.state == ControllerState.TERMINATED
        assert carol.outcome.kind == OutcomeKind.RESIGNATION
        assert carol.outcome_message == "bob resigned. carol wins."
        assert await carol.ledger.balance("bob") == 47
        assert await carol.ledger.balance("carol") == 53
        with pytest.raises(GameStateError):
            await carol.resign()

    asyncio.run(scenario())


def test_agreed_draw(alice: MatchController, bob: MatchController) -> None:
    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        with pytest.raises(GameStateError):
            await bob.accept_draw()

        assert await alice.offer_draw()
        await drain(alice, bob)
        assert bob.view().draw_offered_by == Color.WHITE

        await bob.accept_draw()
        await drain(alice, bob)

        for controller in (alice, bob):
            assert controller.state == ControllerState.TERMINATED
            assert controller.outcome.kind == OutcomeKind.AGREED_DRAW
            assert controller.outcome_message == "Draw agreed."
        assert await alice.ledger.balance("alice") == 51
        assert await alice.ledger.balance("bob") == 51

    asyncio.run(scenario())


def test_declined_draw(alice: MatchController, bob: MatchController) -> None:
    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        await alice.offer_draw()
        await drain(alice, bob)

        await bob.decline_draw()
        await drain(alice, bob)

        assert alice.view().draw_offered_by is None
        assert alice.session.status == InProgress(turn=Color.WHITE)
        with pytest.raises(GameStateError):
            await alice.accept_draw()
        assert alice.state == ControllerState.ACTIVE
        assert await alice.attempt_local_move("e2", "e4")

    asyncio.run(scenario())


def test_finished_record_is_settled_on_resume(
    alice: MatchController, bob: MatchController
) -> None:
    """Checkmate was written but nobody settled it yet: whoever opens the match next does."""
    mated = PositionModel.from_moves(["f3", "e5", "g4", "Qh4#"])

    async def scenario() -> None:
        await alice.ledger.resolve_participant("alice")
        await alice.ledger.resolve_participant("bob")
        record = await alice.sessions.create("alice", "bob")
        await alice.sessions.publish(
            record.id, mated.snapshot(), mated.move_list, InProgress(turn=Color.WHITE)
        )

        await bob.start_match("bob", GameMode.PLAYER_VS_PLAYER, "alice")
        assert bob.state == ControllerState.TERMINATED
        assert bob.session.local_color == Color.BLACK
        assert await bob.ledger.balance("bob") == 53
        assert await bob.ledger.balance("alice") == 47

    asyncio.run(scenario())


def test_store_failure_and_retry(
    alice: MatchController, bob: MatchController, monkeypatch: pytest.MonkeyPatch
) -> None:
    """The local move stays on the board while the store is down and is published on retry."""
    original_publish = alice.sessions.publish
    failures = [StoreUnavailableError("store down")]

    async def flaky_publish(*args):
        if failures:
            raise failures.pop()
        return await original_publish(*args)

    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        monkeypatch.setattr(alice.sessions, "publish", flaky_publish)

        with pytest.raises(StoreUnavailableError):
            await alice.attempt_local_move("e2", "e4")
        await drain(alice, bob)
        assert alice.session.position.move_list == ["e4"]
        assert alice.view().sync_pending
        assert bob.snapshot == STARTING_FEN

        assert await alice.retry_sync()
        await drain(alice, bob)
        assert not alice.view().sync_pending
        assert bob.snapshot == alice.snapshot
        assert not await alice.retry_sync()

    asyncio.run(scenario())


def test_leave_match(alice: MatchController, feed: ChangeFeed) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        assert feed.subscriber_count == 1
        session_id = alice.session.session_id

        await alice.leave_match()
        assert alice.state == ControllerState.LOBBY
        assert feed.subscriber_count == 0
        assert (await alice.sessions.get(session_id)).id == session_id

        # back in, then leave for good
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        assert alice.session.session_id == session_id
        await alice.leave_match(delete_record=True)
        assert await alice.sessions.find_for_pair("alice", "bob") is None

    asyncio.run(scenario())


def test_take_back_only_against_engine(alice: MatchController) -> None:
    async def scenario() -> None:
        await alice.start_match("alice", GameMode.PLAYER_VS_PLAYER, "bob")
        with pytest.raises(GameStateError):
            await alice.take_back()

    asyncio.run(scenario())


def test_late_record_does_not_revive_a_draw_offer(
    alice: MatchController, bob: MatchController
) -> None:
    """bob's offer was written before his e5 but lands after it: alice keeps the newer status."""
    after_e4 = PositionModel.from_moves(["e4"])

    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        assert await alice.attempt_local_move("e2", "e4")
        await drain(alice, bob)
        assert await bob.attempt_local_move("e7", "e5")
        await drain(alice, bob)

        await bob.sessions.publish(
            bob.session.session_id,
            after_e4.snapshot(),
            after_e4.move_list,
            DrawOffered(by=Color.BLACK),
        )
        await drain(alice, bob)

        assert alice.session.position.move_list == ["e4", "e5"]
        assert alice.session.status == InProgress(turn=Color.WHITE)
        assert alice.view().draw_offered_by is None
        assert alice.view().stale_snapshots == 1
        with pytest.raises(GameStateError):
            await alice.accept_draw()

    asyncio.run(scenario())


def test_late_record_does_not_withdraw_a_draw_offer(
    alice: MatchController, bob: MatchController
) -> None:
    after_e4 = PositionModel.from_moves(["e4"])

    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        assert await alice.attempt_local_move("e2", "e4")
        await drain(alice, bob)
        assert await bob.attempt_local_move("e7", "e5")
        await drain(alice, bob)
        assert await bob.offer_draw()
        await drain(alice, bob)

        await bob.sessions.publish(
            bob.session.session_id,
            after_e4.snapshot(),
            after_e4.move_list,
            InProgress(turn=Color.BLACK),
        )
        await drain(alice, bob)

        assert alice.view().draw_offered_by == Color.BLACK
        await alice.accept_draw()
        assert alice.outcome.kind == OutcomeKind.AGREED_DRAW

    asyncio.run(scenario())


def test_position_is_frozen_after_resignation(
    alice: MatchController, bob: MatchController
) -> None:
    """bob's move was written before he saw alice resign: it never reaches alice's finished board."""
    after_e5 = PositionModel.from_moves(["e4", "e5"])

    async def scenario() -> None:
        await start_pair(alice, "alice", bob, "bob")
        assert await alice.attempt_local_move("e2", "e4")
        await drain(alice, bob)

        await alice.resign()
        await bob.sessions.publish(
            bob.session.session_id,
            after_e5.snapshot(),
            after_e5.move_list,
            InProgress(turn=Color.WHITE),
        )
        await drain(alice, bob)

        assert not await alice.receive_remote_snapshot(after_e5.snapshot(), after_e5.move_list)
        for controller in (alice, bob):
            assert controller.state == ControllerState.TERMINATED
            assert controller.outcome.kind == OutcomeKind.RESIGNATION
            assert controller.view().moves == ["e4"]
        assert await alice.ledger.balance("alice") == 47
        assert await alice.ledger.balance("bob") == 53

    asyncio.run(scenario())
