"""
Custom exceptions used across layers.

Everything derives from GameError, so the service layer (and the UI on top of it) can catch a single top-level type.
"""


class GameError(Exception):
    """Top-level exception for anything that goes wrong while playing a match."""


class InvalidRequestError(GameError):
    """Data coming in from the boundary (UI / environment) cannot be interpreted."""


class GameStateError(GameError):
    """Operation is not allowed in the current state of the match."""


class IllegalMoveError(GameError):
    """The rules oracle rejected the move."""


class UnauthorizedMoveError(GameError):
    """Wrong piece color or not your turn."""


class InvalidSnapshotError(GameError):
    """A position notation and move list that do not describe the same game."""


class RepositoryError(GameError):
    """Record could not be found / stored."""


class StoreUnavailableError(RepositoryError):
    """The persistent store could not be reached. Match state stays at the last successful synchronization."""


class OracleUnresponsiveError(GameError):
    """The engine channel could not be opened or never returned a move."""


class DuplicateSettlementError(GameError):
    """Settlement was requested a second time for the same match."""
