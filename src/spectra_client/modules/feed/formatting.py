"""
Field formatter shaping provider payloads into ingest messages.

Provider field names (``ult_points``, ``character``, ``teamId``...) are mapped
onto the camelCase shapes the ingest server expects. Missing provider fields
fall back to neutral defaults; the formatter never rejects a payload because
of its contents.
"""

from __future__ import annotations

import re
from typing import Any, Protocol

from pydantic import Field

from ...core.protocol import DataType, OutgoingMessage, WireModel

_KEY_INDEX = re.compile(r"_(\d+)$")


class FormattingError(ValueError):
    """Raised when a payload kind has no formatter."""


class Formatter(Protocol):
    def __call__(
        self,
        kind: DataType,
        payload: Any,
        *,
        key: str | None = None,
        round_number: int | None = None,
    ) -> OutgoingMessage: ...


class FormattedScoreboard(WireModel):
    name: str
    tagline: str = ""
    start_team: int = 0
    agent_internal: str = ""
    is_alive: bool = True
    initial_shield: int = 0
    scoreboard_weapon: str = ""
    curr_ult_points: int = 0
    max_ult_points: int = 0
    money: int = 0
    kills: int = 0
    deaths: int = 0
    assists: int = 0


class FormattedRoster(WireModel):
    name: str
    tagline: str = ""
    start_team: int = 0
    agent_internal: str = ""
    player_id: str = ""
    position: int = 0
    locked: bool = False
    rank: int = 0


class FormattedKill(WireModel):
    attacker: str = ""
    victim: str = ""
    weapon: str = ""
    headshot: bool = False
    assists: list[str] = Field(default_factory=list)
    is_teamkill: bool = False


class FormattedRoundInfo(WireModel):
    round_phase: str
    round_number: int


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def _position_from_key(key: str | None) -> int:
    if not key:
        return 0
    match = _KEY_INDEX.search(key)
    return int(match.group(1)) if match else 0


def format_scoreboard(payload: dict[str, Any]) -> FormattedScoreboard:
    return FormattedScoreboard(
        name=str(payload.get("name", "")),
        tagline=str(payload.get("tagline", "")),
        start_team=_int(payload.get("teamId", payload.get("team"))),
        agent_internal=str(payload.get("character", "")),
        is_alive=_bool(payload.get("alive", True)),
        initial_shield=_int(payload.get("shield")),
        scoreboard_weapon=str(payload.get("weapon", "")),
        curr_ult_points=_int(payload.get("ult_points")),
        max_ult_points=_int(payload.get("ult_max")),
        money=_int(payload.get("money")),
        kills=_int(payload.get("kills")),
        deaths=_int(payload.get("deaths")),
        assists=_int(payload.get("assists")),
    )


def format_roster(payload: dict[str, Any], key: str | None) -> FormattedRoster:
    return FormattedRoster(
        name=str(payload.get("name", "")),
        tagline=str(payload.get("tagline", "")),
        start_team=_int(payload.get("teamId", payload.get("team"))),
        agent_internal=str(payload.get("character", "")),
        player_id=str(payload.get("player_id", "")),
        position=_position_from_key(key),
        locked=_bool(payload.get("locked", False)),
        rank=_int(payload.get("rank")),
    )


def format_kill(payload: dict[str, Any]) -> FormattedKill:
    assists = [
        str(payload[field])
        for field in ("assist1", "assist2", "assist3", "assist4")
        if payload.get(field)
    ]
    attacker_teammate = _bool(payload.get("is_attacker_teammate", False))
    victim_teammate = _bool(payload.get("is_victim_teammate", False))
    return FormattedKill(
        attacker=str(payload.get("attacker", "")),
        victim=str(payload.get("victim", "")),
        weapon=str(payload.get("weapon", "")),
        headshot=_bool(payload.get("headshot", False)),
        assists=assists,
        is_teamkill=attacker_teammate == victim_teammate
        and "is_attacker_teammate" in payload
        and "is_victim_teammate" in payload,
    )


def format_round(phase: Any, round_number: int) -> FormattedRoundInfo:
    return FormattedRoundInfo(round_phase=str(phase).strip().lower(), round_number=round_number)


def format_message(
    kind: DataType,
    payload: Any,
    *,
    key: str | None = None,
    round_number: int | None = None,
) -> OutgoingMessage:
    """Shape `payload` for `kind`; the default `Formatter`."""
    if kind is DataType.SCOREBOARD:
        return OutgoingMessage(type=kind, data=format_scoreboard(_mapping(kind, payload)))
    if kind is DataType.ROSTER:
        return OutgoingMessage(type=kind, data=format_roster(_mapping(kind, payload), key))
    if kind is DataType.KILLFEED:
        return OutgoingMessage(type=kind, data=format_kill(_mapping(kind, payload)))
    if kind is DataType.ROUND_INFO:
        return OutgoingMessage(type=kind, data=format_round(payload, round_number or 0))
    raise FormattingError(f"No formatter registered for {kind.value}")


def _mapping(kind: DataType, payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise FormattingError(f"{kind.value} payload must be an object, got {type(payload).__name__}")
    return payload


__all__ = [
    "FormattedKill",
    "FormattedRoster",
    "FormattedRoundInfo",
    "FormattedScoreboard",
    "Formatter",
    "FormattingError",
    "format_message",
]
