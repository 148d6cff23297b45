"""
Classify provider events and forward them through the session connector.

Info events (state snapshots) and game events (discrete occurrences) each
have their own classification table. Every element of a batch is decoded and
handled on its own: a malformed element is logged and skipped, and the rest
of the batch still goes out in arrival order.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from ...core.bus import Subscription
from ...core.contracts import BaseModule, FeedBatch, HealthStatus, ModuleConfig
from ...core.protocol import DataType, OutgoingMessage
from .events import RawEvent, UnrecognizedEvent, decode_event, parse_json_value
from .formatting import Formatter, FormattedRoundInfo, format_message

logger = logging.getLogger(__name__)

VALORANT_GAME_ID = 21640
TERMINAL_PHASE = "game_end"
# The ingest server keeps map names in a TypeScript enum, where a member named
# "Infinity" is rejected as numeric-looking.
DEFAULT_MAP_ALIASES = {"Infinity": "Infinityy"}

IGNORED_INFO_KEYS = frozenset(
    {"health", "team", "match_outcome", "pseudo_match_id", "player_id", "region"}
)
GAME_FLAGS: dict[str, DataType] = {
    "match_start": DataType.MATCH_START,
    "spike_planted": DataType.SPIKE_PLANTED,
    "spike_detonated": DataType.SPIKE_DETONATED,
    "spike_defused": DataType.SPIKE_DEFUSED,
}

EventHandler = Callable[[RawEvent], Awaitable[None]]


class MessageSink(Protocol):
    """What the dispatcher needs from the session connector."""

    async def send(self, message: OutgoingMessage) -> bool: ...

    async def end_session(self) -> None: ...


class EventDispatcher(BaseModule):
    """Turn feed batches into ingest messages and detect the end of the match."""

    name = "modules.feed.dispatcher"

    def __init__(
        self,
        connector: MessageSink,
        *,
        formatter: Formatter | None = None,
        on_player_name: Callable[[str], None] | None = None,
    ) -> None:
        super().__init__()
        self._connector = connector
        self._formatter: Formatter = formatter or format_message
        self._on_player_name = on_player_name or self._log_player_name
        self._info_topic = "feed.info"
        self._game_topic = "feed.game"
        self._game_id: int | None = VALORANT_GAME_ID
        self._terminal_phase = TERMINAL_PHASE
        self._map_aliases: dict[str, str] = dict(DEFAULT_MAP_ALIASES)
        self._subscriptions: list[Subscription] = []
        self._round_number = 0
        self._counters = {
            "forwarded": 0,
            "dropped": 0,
            "discarded": 0,
            "ignored": 0,
            "unhandled": 0,
            "failed": 0,
            "session_end_requests": 0,
        }
        # Checked in order before the exact-key table; first match wins.
        self._info_rules: list[tuple[Callable[[str], bool], EventHandler]] = [
            (lambda key: "scoreboard" in key, self._handle_scoreboard),
            (lambda key: "roster" in key, self._handle_roster),
        ]
        self._info_table: dict[str, EventHandler] = {
            "kill_feed": self._handle_kill_feed,
            "observing": self._handle_observing,
            "round_number": self._handle_round_number,
            "round_phase": self._handle_round_phase,
            "match_score": self._handle_match_score,
            "game_mode": self._handle_game_mode,
            "map": self._handle_map,
            "player_name": self._handle_player_name,
            **{key: self._ignore for key in IGNORED_INFO_KEYS},
        }
        self._game_table: dict[str, EventHandler] = {
            **{key: self._handle_game_flag for key in GAME_FLAGS},
            "match_end": self._handle_match_end,
            # Authoritative copy arrives on the info channel.
            "kill_feed": self._ignore,
        }

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._info_topic = options.get("info_topic", self._info_topic)
        self._game_topic = options.get("game_topic", self._game_topic)
        if "game_id" in options:
            game_id = options["game_id"]
            self._game_id = int(game_id) if game_id is not None else None
        self._terminal_phase = str(options.get("terminal_phase", self._terminal_phase)).lower()
        aliases = options.get("map_aliases")
        if isinstance(aliases, dict):
            self._map_aliases = {str(k): str(v) for k, v in aliases.items()}

    async def start(self) -> None:
        self._subscriptions.append(self.bus.subscribe(self._info_topic, self._handle_batch))
        self._subscriptions.append(self.bus.subscribe(self._game_topic, self._handle_batch))
        logger.info(
            "EventDispatcher listening on %s and %s", self._info_topic, self._game_topic
        )

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={"round_number": self._round_number, **self._counters},
        )

    @property
    def round_number(self) -> int:
        return self._round_number

    @property
    def counters(self) -> dict[str, int]:
        return dict(self._counters)

    async def process_info_batch(self, events: Iterable[Any]) -> None:
        for raw in events:
            try:
                await self._process_info(raw)
            except Exception:
                self._counters["failed"] += 1
                logger.exception("Info update error for %r", raw)

    async def process_game_batch(self, events: Iterable[Any]) -> None:
        for raw in events:
            try:
                await self._process_game(raw)
            except Exception:
                self._counters["failed"] += 1
                logger.exception("Game update error for %r", raw)

    async def _handle_batch(self, topic: str, payload: FeedBatch) -> None:
        if not isinstance(payload, FeedBatch):
            logger.debug("Ignoring non-batch payload on %s", topic)
            return
        if payload.channel == "info":
            await self.process_info_batch(payload.events)
        else:
            await self.process_game_batch(payload.events)

    async def _process_info(self, raw: Any) -> None:
        event = self._decode(raw)
        if event is None:
            return
        if self._game_id is not None and event.game_id not in (None, self._game_id):
            logger.debug("Ignoring info update for game %s", event.game_id)
            self._counters["ignored"] += 1
            return
        handler = self._classify_info(event.key)
        await handler(event)

    async def _process_game(self, raw: Any) -> None:
        event = self._decode(raw)
        if event is None:
            return
        handler = self._game_table.get(event.key, self._unhandled_game)
        await handler(event)

    def _decode(self, raw: Any) -> RawEvent | None:
        event = decode_event(raw)
        if isinstance(event, UnrecognizedEvent):
            self._counters["failed"] += 1
            logger.warning("Skipping unrecognized provider event (%s): %r", event.reason, event.raw)
            return None
        return event

    def _classify_info(self, key: str) -> EventHandler:
        for predicate, handler in self._info_rules:
            if predicate(key):
                return handler
        return self._info_table.get(key, self._unhandled_info)

    async def _forward(self, message: OutgoingMessage) -> None:
        accepted = await self._connector.send(message)
        self._counters["forwarded" if accepted else "dropped"] += 1

    async def _request_session_end(self, cause: str) -> None:
        self._counters["session_end_requests"] += 1
        logger.info("Match ended (%s); closing ingest session.", cause)
        await self._connector.end_session()

    async def _handle_scoreboard(self, event: RawEvent) -> None:
        await self._handle_player_snapshot(event, DataType.SCOREBOARD)

    async def _handle_roster(self, event: RawEvent) -> None:
        await self._handle_player_snapshot(event, DataType.ROSTER)

    async def _handle_player_snapshot(self, event: RawEvent, kind: DataType) -> None:
        value = event.json_value()
        # Snapshots without a name are transient while the provider fills slots.
        if not isinstance(value, dict) or not value.get("name"):
            self._counters["discarded"] += 1
            return
        await self._forward(self._formatter(kind, value, key=event.key))

    async def _handle_kill_feed(self, event: RawEvent) -> None:
        await self._forward(self._formatter(DataType.KILLFEED, event.json_value()))

    async def _handle_observing(self, event: RawEvent) -> None:
        await self._forward(OutgoingMessage(type=DataType.OBSERVING, data=event.value))

    async def _handle_round_number(self, event: RawEvent) -> None:
        self._round_number = int(event.value)

    async def _handle_round_phase(self, event: RawEvent) -> None:
        message = self._formatter(
            DataType.ROUND_INFO, event.value, round_number=self._round_number
        )
        await self._forward(message)
        info = message.data
        if isinstance(info, FormattedRoundInfo):
            phase = info.round_phase
        elif isinstance(info, dict):
            phase = info.get("roundPhase")
        else:
            phase = None
        if phase == self._terminal_phase:
            await self._request_session_end(f"round phase {phase}")

    async def _handle_match_score(self, event: RawEvent) -> None:
        await self._forward(OutgoingMessage(type=DataType.SCORE, data=event.json_value()))

    async def _handle_game_mode(self, event: RawEvent) -> None:
        value = parse_json_value(event.value)
        mode = value.get("mode") if isinstance(value, dict) else value
        await self._forward(OutgoingMessage(type=DataType.GAME_MODE, data=mode))

    async def _handle_map(self, event: RawEvent) -> None:
        value = event.value
        if isinstance(value, str):
            value = self._map_aliases.get(value, value)
        await self._forward(OutgoingMessage(type=DataType.MAP, data=value))

    async def _handle_player_name(self, event: RawEvent) -> None:
        self._on_player_name(str(event.value))

    async def _handle_game_flag(self, event: RawEvent) -> None:
        await self._forward(OutgoingMessage(type=GAME_FLAGS[event.key], data=True))

    async def _handle_match_end(self, event: RawEvent) -> None:
        await self._request_session_end("match_end event")

    async def _ignore(self, event: RawEvent) -> None:
        self._counters["ignored"] += 1

    async def _unhandled_info(self, event: RawEvent) -> None:
        self._counters["unhandled"] += 1
        logger.info("Unhandled info update: %s", event.model_dump())

    async def _unhandled_game(self, event: RawEvent) -> None:
        self._counters["unhandled"] += 1
        logger.info("Unhandled game update: %s", event.model_dump())

    @staticmethod
    def _log_player_name(name: str) -> None:
        logger.info("Detected player name: %s", name)


__all__ = [
    "DEFAULT_MAP_ALIASES",
    "TERMINAL_PHASE",
    "VALORANT_GAME_ID",
    "EventDispatcher",
    "MessageSink",
]
