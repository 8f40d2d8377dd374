"""
Decision Oracle client: bridge to an external best-move search process speaking UCI.
----

The channel is long-lived (one per match) and opened with the UCI handshake:
    uci -> uciok, isready -> readyok
A search is requested with
    position fen <notation>
    go depth <n>
and answered later with
    bestmove <token> [ponder <token>]

python-chess takes care of the line protocol. This module adds what the match needs on top:
non-blocking requests with a callback, difficulty -> depth mapping, bounded waiting and token parsing.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

import chess
import chess.engine

from src.core.config import MAX_DIFFICULTY, MIN_DIFFICULTY
from src.core.exceptions import OracleUnresponsiveError

logger = logging.getLogger(__name__)

MAX_SEARCH_DEPTH = 12
NO_MOVE_TOKEN = "(none)"
SKILL_OPTION = "Skill Level"
MOVE_TOKEN = re.compile(r"[a-h][1-8][a-h][1-8][qrbn]?")

T = TypeVar("T")

# called with the notation the search was started from and the move token
MoveCallback = Callable[[str, str], Awaitable[None]]


def search_depth(difficulty: int) -> int:
    """Higher difficulty searches deeper, bounded by MAX_SEARCH_DEPTH."""
    level = max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))
    return min(MAX_SEARCH_DEPTH, 1 + level // 2)


def extract_token(reply: Optional[str]) -> Optional[str]:
    """
    Move token from an engine reply.

    Accepts a full `bestmove e7e5 ponder g1f3` line or just the token.
    Returns None for `(none)` (no legal move, the game is over) and for anything that is not a move.
    """
    if not reply:
        return None
    parts = reply.split()
    if parts[0] == "bestmove":
        parts = parts[1:]
    if not parts or parts[0] == NO_MOVE_TOKEN:
        return None
    token = parts[0].lower()
    if not MOVE_TOKEN.fullmatch(token):
        logger.warning("Engine replied with something that is not a move: %r", reply)
        return None
    return token


class EngineChannel(Protocol):
    """Connection to one engine process."""

    async def open(self) -> None:
        """Start the process and complete the handshake."""
        ...

    async def configure(self, options: dict[str, int | str]) -> None:
        ...

    async def best_move(self, notation: str, depth: int) -> Optional[str]:
        """Raw reply for the position: a move token or `(none)`."""
        ...

    async def close(self) -> None:
        ...


class UciEngineChannel:
    """EngineChannel for a UCI executable (Stockfish or similar)."""

    def __init__(self, engine_path: str) -> None:
        self.engine_path = engine_path
        self._protocol: Optional[chess.engine.UciProtocol] = None

    async def open(self) -> None:
        # popen_uci sends `uci` and waits for `uciok`
        _, self._protocol = await chess.engine.popen_uci(self.engine_path)
        # isready / readyok
        await self._protocol.ping()

    async def configure(self, options: dict[str, int | str]) -> None:
        protocol = self._require_protocol()
        supported = {
            name: value for name, value in options.items() if name in protocol.options
        }
        if supported:
            await protocol.configure(supported)

    async def best_move(self, notation: str, depth: int) -> Optional[str]:
        protocol = self._require_protocol()
        result = await protocol.play(
            chess.Board(notation), chess.engine.Limit(depth=depth)
        )
        return result.move.uci() if result.move else NO_MOVE_TOKEN

    async def close(self) -> None:
        if self._protocol is not None:
            await self._protocol.quit()
            self._protocol = None

    def _require_protocol(self) -> chess.engine.UciProtocol:
        if self._protocol is None:
            raise OracleUnresponsiveError("Engine channel is not open.")
        return self._protocol


class DecisionOracleClient:
    """Non-blocking best-move requests. Results arrive through a callback."""

    def __init__(
        self, channel: EngineChannel, difficulty: int = 10, timeout_sec: float = 30.0
    ) -> None:
        self.channel = channel
        self.difficulty = difficulty
        self.timeout_sec = timeout_sec
        self.available = False
        self.unresponsive = False
        self._tasks: set[asyncio.Task] = set()

    @property
    def depth(self) -> int:
        return search_depth(self.difficulty)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def start(self) -> bool:
        """Open the channel. On failure the automated opponent simply never moves."""
        try:
            await self._bounded(self.channel.open(), "open the engine channel")
            await self._bounded(
                self.channel.configure({SKILL_OPTION: self.difficulty}),
                "configure the engine",
            )
        except OracleUnresponsiveError as exc:
            logger.warning("Engine unavailable: %s", exc)
            self.available = False
            self.unresponsive = True
            return False
        self.available = True
        self.unresponsive = False
        logger.info("Engine ready (difficulty %d, depth %d)", self.difficulty, self.depth)
        return True

    async def set_difficulty(self, difficulty: int) -> None:
        self.difficulty = max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))
        if self.available:
            await self._bounded(
                self.channel.configure({SKILL_OPTION: self.difficulty}),
                "configure the engine",
            )

    def request_move(
        self, notation: str, on_move: MoveCallback
    ) -> Optional[asyncio.Task]:
        """Ask for the best move in `notation`. Does not wait for the answer."""
        if not self.available:
            logger.warning("No engine channel, the automated opponent will not move.")
            self.unresponsive = True
            return None
        task = asyncio.get_running_loop().create_task(self._search(notation, on_move))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for all outstanding searches (and their callbacks) to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        if not self.available:
            return
        self.available = False
        try:
            await self._bounded(self.channel.close(), "close the engine channel")
        except OracleUnresponsiveError as exc:
            logger.warning("Engine did not shut down cleanly: %s", exc)

    # -- PRIVATE HELPERS ---
    async def _search(self, notation: str, on_move: MoveCallback) -> None:
        try:
            reply = await self._bounded(
                self.channel.best_move(notation, self.depth), "get a move from the engine"
            )
        except OracleUnresponsiveError as exc:
            logger.warning("%s", exc)
            self.unresponsive = True
            return

        self.unresponsive = False
        token = extract_token(reply)
        if token is None:
            logger.info("Engine has no move for %r", notation)
            return
        await on_move(notation, token)

    async def _bounded(self, call: Awaitable[T], action: str) -> T:
        """Wait at most `timeout_sec`. Every kind of engine failure becomes OracleUnresponsiveError."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout_sec)
        except TimeoutError as exc:
            raise OracleUnresponsiveError(
                f"Could not {action} within {self.timeout_sec} seconds."
            ) from exc
        except (chess.engine.EngineError, OSError) as exc:
            raise OracleUnresponsiveError(f"Could not {action}: {exc}") from exc
