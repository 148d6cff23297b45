"""
Feed intake gateway: the surface through which provider batches enter the bus.

The instrumentation feed (or a shim around it) POSTs batches or streams them
over a WebSocket. Each accepted batch becomes one `FeedBatch` on the bus. The
same app serves the operator status board and the latest health summary.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Any, Literal

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

from ...core.bus import Subscription
from ...core.contracts import BaseModule, FeedBatch, HealthStatus, HealthSummary, ModuleConfig
from ..session.status_board import StatusBoard

logger = logging.getLogger(__name__)


class BatchRequest(BaseModel):
    """HTTP body carrying raw provider events."""

    events: list[Any] = Field(default_factory=list)


class StreamFrame(BaseModel):
    """WebSocket frame carrying raw provider events for one channel."""

    channel: Literal["info", "game"]
    events: list[Any] = Field(default_factory=list)


class FeedGateway(BaseModule):
    """Accept provider batches over HTTP/WebSocket and publish them on the bus."""

    name = "modules.dashboard.feed_gateway"

    def __init__(
        self,
        *,
        status_board: StatusBoard | None = None,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._status_board = status_board or StatusBoard()
        self._host = "127.0.0.1"
        self._port = 5101
        self._serve_http = True
        self._info_topic = "feed.info"
        self._game_topic = "feed.game"
        self._health_topic = "status.health.summary"
        self._buffer_size = 16
        self._health: deque[HealthSummary] = deque(maxlen=self._buffer_size)
        self._subscriptions: list[Subscription] = []
        self._batches_accepted = 0
        self._frames_rejected = 0
        self._app: FastAPI | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_http = bool(options.get("serve_http", self._serve_http))
        self._info_topic = options.get("info_topic", self._info_topic)
        self._game_topic = options.get("game_topic", self._game_topic)
        self._health_topic = options.get("health_topic", self._health_topic)
        self._buffer_size = int(options.get("buffer_size", self._buffer_size))
        self._health = deque(self._health, maxlen=self._buffer_size)

    async def start(self) -> None:
        self._app = self._build_app()
        self._subscriptions.append(self.bus.subscribe(self._health_topic, self._handle_health))
        if not self._serve_http:
            logger.info("FeedGateway running in embedded mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="info",
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve())
        logger.info("FeedGateway accepting batches on http://%s:%s/feed", self._host, self._port)

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None
        self._app = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("FeedGateway has not been started.")
        return self._app

    async def health(self) -> HealthStatus:
        return HealthStatus(
            status="healthy",
            details={
                "batches_accepted": self._batches_accepted,
                "frames_rejected": self._frames_rejected,
                "serve_http": self._serve_http,
            },
        )

    async def publish_batch(self, channel: Literal["info", "game"], events: list[Any], source: str) -> None:
        topic = self._info_topic if channel == "info" else self._game_topic
        await self.bus.publish(topic, FeedBatch(channel=channel, events=events, source=source))
        self._batches_accepted += 1

    async def _handle_health(self, topic: str, payload: HealthSummary) -> None:
        if isinstance(payload, HealthSummary):
            self._health.append(payload)

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Spectra Client Feed Gateway", version="0.1.0")

        @app.post("/feed/info", status_code=202)
        async def post_info(request: BatchRequest) -> dict[str, Any]:
            await self.publish_batch("info", request.events, source="http")
            return {"accepted": len(request.events)}

        @app.post("/feed/game", status_code=202)
        async def post_game(request: BatchRequest) -> dict[str, Any]:
            await self.publish_batch("game", request.events, source="http")
            return {"accepted": len(request.events)}

        @app.get("/status")
        async def status() -> dict[str, Any]:
            return self._status_board.snapshot()

        @app.get("/health")
        async def health() -> dict[str, Any]:
            if not self._health:
                return {"status": "unknown", "modules": {}}
            return self._health[-1].model_dump(mode="json")

        @app.websocket("/feed")
        async def feed_stream(websocket: WebSocket) -> None:
            await websocket.accept()
            try:
                while True:
                    message = await websocket.receive()
                    if message["type"] == "websocket.disconnect":
                        raise WebSocketDisconnect(message.get("code", 1000))
                    raw = message.get("text")
                    if raw is None:
                        await self._reject_frame(websocket, "Binary frames are not accepted.")
                        continue
                    try:
                        frame = StreamFrame.model_validate_json(raw)
                    except ValidationError as exc:
                        await self._reject_frame(
                            websocket, exc.errors(include_url=False, include_context=False)
                        )
                        continue
                    await self.publish_batch(frame.channel, frame.events, source="websocket")
                    await websocket.send_json({"type": "ack", "accepted": len(frame.events)})
            except WebSocketDisconnect:
                logger.info("Feed websocket client disconnected.")

        return app

    async def _reject_frame(self, websocket: WebSocket, detail: Any) -> None:
        self._frames_rejected += 1
        logger.warning("Rejected feed websocket frame: %s", detail)
        await websocket.send_json({"type": "error", "detail": detail})


__all__ = ["BatchRequest", "FeedGateway", "StreamFrame"]
