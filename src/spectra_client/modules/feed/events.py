"""
Decode step for raw provider events.

Provider events arrive as loosely shaped dictionaries. `decode_event` turns
each element into either a `RawEvent` or an `UnrecognizedEvent` so the
dispatcher can skip a bad element without touching its neighbours.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError


class RawEvent(BaseModel):
    """One provider notification keyed by feature field name."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    key: str = Field(validation_alias=AliasChoices("key", "name"), min_length=1)
    value: Any = None
    game_id: int | None = Field(default=None, validation_alias=AliasChoices("game_id", "gameId"))
    feature: str | None = Field(default=None)

    def json_value(self) -> Any:
        """Return the value with JSON-encoded strings decoded."""
        return parse_json_value(self.value)


@dataclass(frozen=True, slots=True)
class UnrecognizedEvent:
    raw: Any
    reason: str


def decode_event(raw: Any) -> RawEvent | UnrecognizedEvent:
    if isinstance(raw, RawEvent):
        return raw
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            return UnrecognizedEvent(raw=raw, reason=f"invalid JSON: {exc}")
    if not isinstance(raw, dict):
        return UnrecognizedEvent(raw=raw, reason=f"expected an object, got {type(raw).__name__}")
    try:
        return RawEvent.model_validate(raw)
    except ValidationError as exc:
        return UnrecognizedEvent(raw=raw, reason=str(exc.errors()[0]["msg"]))


def parse_json_value(value: Any) -> Any:
    """
    Decode provider values that carry JSON documents as strings.

    Raises `ValueError` for malformed JSON so callers can fail the single event.
    """
    if isinstance(value, str | bytes | bytearray):
        return json.loads(value)
    return value


__all__ = ["RawEvent", "UnrecognizedEvent", "decode_event", "parse_json_value"]
