"""
Wire-level schemas exchanged with the Spectra ingest server.

Every frame is a single JSON object. Outgoing telemetry frames have the shape
``{playerName, groupCode, type, data}``; the authentication frame replaces
``data`` with the two team descriptors. Identity fields are merged in by
`OutgoingMessage.to_wire`, which only the session connector calls.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class DataType(str, Enum):
    """Message kind tags understood by the ingest server."""

    AUTH = "authenticate"
    SCOREBOARD = "scoreboard"
    KILLFEED = "killfeed"
    ROSTER = "roster"
    MATCH_START = "match_start"
    OBSERVING = "observing"
    SPIKE_PLANTED = "spike_planted"
    SPIKE_DETONATED = "spike_detonated"
    SPIKE_DEFUSED = "spike_defused"
    ROUND_INFO = "round_info"
    SCORE = "score"
    GAME_MODE = "game_mode"
    MAP = "map"


class WireModel(BaseModel):
    """Base for models serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class TeamDescriptor(WireModel):
    name: str = ""
    tricode: str = ""
    url: str = ""


class SessionIdentity(WireModel):
    """Who is observing and which group the telemetry belongs to."""

    player_name: str = Field(description="Observer name shown by the ingest server.")
    group_code: str = Field(description="Group/session code the observer joins.")
    left_team: TeamDescriptor = Field(default_factory=TeamDescriptor)
    right_team: TeamDescriptor = Field(default_factory=TeamDescriptor)

    def auth_frame(self) -> str:
        """Encode the one-shot authentication request."""
        payload = {"type": DataType.AUTH.value, **self.model_dump(mode="json", by_alias=True)}
        return json.dumps(payload)


class OutgoingMessage(BaseModel):
    """A kind tag plus its kind-specific data value."""

    model_config = ConfigDict(frozen=True)

    type: DataType
    data: Any = None

    def to_wire(self, identity: SessionIdentity) -> str:
        """Merge the session identity into the message and encode it."""
        data = self.data
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True)
        payload = {
            "playerName": identity.player_name,
            "groupCode": identity.group_code,
            "type": self.type.value,
            "data": data,
        }
        return json.dumps(payload)


class AuthResponse(BaseModel):
    """Server verdict on the authentication request."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["authenticate"]
    value: bool


class ProtocolError(ValueError):
    """Raised when an inbound frame cannot be decoded."""


def decode_frame(raw: str | bytes) -> dict[str, Any]:
    """Decode one inbound frame into a JSON object."""
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Frame is not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(decoded).__name__}")
    return decoded


def decode_auth_response(raw: str | bytes) -> AuthResponse:
    """Interpret a frame as the authentication verdict."""
    frame = decode_frame(raw)
    try:
        return AuthResponse.model_validate(frame, strict=True)
    except ValidationError as exc:
        raise ProtocolError(f"Frame is not an authentication response: {frame!r}") from exc


__all__ = [
    "AuthResponse",
    "DataType",
    "OutgoingMessage",
    "ProtocolError",
    "SessionIdentity",
    "TeamDescriptor",
    "WireModel",
    "decode_auth_response",
    "decode_frame",
]
