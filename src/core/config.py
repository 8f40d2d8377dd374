"""Runtime configuration, read from the environment with sane defaults."""

import os
from typing import Mapping, Optional, Self

from pydantic import BaseModel, ValidationError, field_validator

from src.core.exceptions import InvalidRequestError

ENV_PREFIX = "TREASURE_CHESS_"

# Reserved identity of the automated opponent. Never receives balance changes.
ENGINE_NAME = "AI"

MIN_DIFFICULTY = 0
MAX_DIFFICULTY = 20


class Settings(BaseModel):
    database_url: str = "sqlite:///treasure_chess.db"
    sql_echo: bool = False
    engine_path: str = "stockfish"
    engine_timeout_sec: float = 30.0
    difficulty: int = 10
    starting_balance: int = 50
    win_points: int = 3
    draw_points: int = 1
    loss_points: int = -3
    log_level: str = "INFO"

    @field_validator("difficulty")
    @classmethod
    def validate_difficulty(cls, value: int) -> int:
        if not MIN_DIFFICULTY <= value <= MAX_DIFFICULTY:
            raise InvalidRequestError(
                f"Difficulty must be between {MIN_DIFFICULTY} and {MAX_DIFFICULTY}, got {value}."
            )
        return value

    @field_validator("starting_balance")
    @classmethod
    def validate_starting_balance(cls, value: int) -> int:
        if value < 0:
            raise InvalidRequestError(f"Starting balance cannot be negative: {value}")
        return value

    @field_validator("engine_timeout_sec")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise InvalidRequestError(f"Engine timeout must be positive: {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise InvalidRequestError(f"Unknown log level: {value!r}")
        return level

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Self:
        """Collect every TREASURE_CHESS_* variable, e.g. TREASURE_CHESS_DATABASE_URL -> database_url."""
        environ = os.environ if environ is None else environ
        values = {
            key[len(ENV_PREFIX) :].lower(): value
            for key, value in environ.items()
            if key.startswith(ENV_PREFIX)
        }
        unknown = set(values) - set(cls.model_fields)
        if unknown:
            raise InvalidRequestError(
                f"Unknown settings: {', '.join(sorted(ENV_PREFIX + name.upper() for name in unknown))}"
            )
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise InvalidRequestError(f"Invalid settings: {exc}") from exc
