"""
Status of a shared Session Record.

One tagged variant per signal instead of a single string field with prefixes.
Consumers check the variant type, the `kind` field is only there for (de)serialization.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from src.core.exceptions import InvalidRequestError
from src.core.shared_types import Color


class _Status(BaseModel):
    model_config = ConfigDict(frozen=True)


class InProgress(_Status):
    kind: Literal["in_progress"] = "in_progress"
    turn: Color


class DrawOffered(_Status):
    kind: Literal["draw_offered"] = "draw_offered"
    by: Color


class Resigned(_Status):
    kind: Literal["resigned"] = "resigned"
    by: Color
    reason: str = ""


class Drawn(_Status):
    kind: Literal["drawn"] = "drawn"
    reason: str = "agreement"


MatchStatus = Annotated[
    Union[InProgress, DrawOffered, Resigned, Drawn], Field(discriminator="kind")
]

_STATUS_ADAPTER: TypeAdapter[MatchStatus] = TypeAdapter(MatchStatus)


def status_to_json(status: MatchStatus) -> dict[str, Any]:
    """Plain dict, ready for a JSON column."""
    return status.model_dump(mode="json")


def status_from_json(data: dict[str, Any]) -> MatchStatus:
    try:
        return _STATUS_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise InvalidRequestError(f"Cannot interpret session status: {data!r}") from exc


def is_final(status: MatchStatus) -> bool:
    """Resigned / Drawn end the match, the others do not."""
    return isinstance(status, (Resigned, Drawn))
