import asyncio
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from spectra_client.core.bus import EventBus, Subscription
from spectra_client.core.contracts import FeedBatch, HealthStatus, HealthSummary, ModuleConfig
from spectra_client.modules.dashboard.feed_gateway import FeedGateway
from spectra_client.modules.session.status_board import StatusBoard


class RecordingBus:
    """Bus stand-in for the threaded TestClient, which runs its own event loop."""

    def __init__(self) -> None:
        self.published: list[tuple[str, Any]] = []

    def subscribe(self, topic: str, handler) -> Subscription:
        return Subscription(topic=topic, handler=handler)

    def unsubscribe(self, subscription: Subscription) -> None:
        return None

    async def publish(self, topic: str, payload: Any) -> None:
        self.published.append((topic, payload))


async def _embedded_gateway(bus: EventBus, board: StatusBoard | None = None) -> FeedGateway:
    gateway = FeedGateway(status_board=board)
    gateway.set_bus(bus)
    await gateway.configure(ModuleConfig(options={"serve_http": False, "buffer_size": 2}))
    await gateway.start()
    return gateway


@pytest.mark.asyncio
async def test_post_batches_publish_feed_batches() -> None:
    bus = EventBus(telemetry_enabled=False)
    await bus.start()
    received: list[tuple[str, FeedBatch]] = []

    async def collect(topic: str, payload: FeedBatch) -> None:
        received.append((topic, payload))

    bus.subscribe("feed.info", collect)
    bus.subscribe("feed.game", collect)
    gateway = await _embedded_gateway(bus)

    transport = httpx.ASGITransport(app=gateway.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        info = await client.post("/feed/info", json={"events": [{"key": "map", "value": "Bind"}]})
        game = await client.post("/feed/game", json={"events": [{"key": "match_start"}]})
        bad = await client.post("/feed/info", json={"events": "nope"})
    await bus.join()

    assert info.status_code == 202
    assert info.json() == {"accepted": 1}
    assert game.status_code == 202
    assert bad.status_code == 422
    assert [(topic, batch.channel, batch.source) for topic, batch in received] == [
        ("feed.info", "info", "http"),
        ("feed.game", "game", "http"),
    ]
    assert received[0][1].events == [{"key": "map", "value": "Bind"}]

    await gateway.stop()
    await bus.stop()


@pytest.mark.asyncio
async def test_status_and_health_endpoints() -> None:
    bus = EventBus(telemetry_enabled=False)
    await bus.start()
    board = StatusBoard()
    board.notify_title("Spectra Client | Connected with Group ID: G1")
    gateway = await _embedded_gateway(bus, board)

    transport = httpx.ASGITransport(app=gateway.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        empty = await client.get("/health")
        ready = asyncio.Event()

        async def wait_for_buffer(topic: str, _payload: HealthSummary) -> None:
            ready.set()

        bus.subscribe("status.health.summary", wait_for_buffer)
        await bus.publish(
            "status.health.summary",
            HealthSummary(
                status="degraded",
                modules={"modules.session.connector": HealthStatus(status="degraded")},
            ),
        )
        await asyncio.wait_for(ready.wait(), timeout=1.0)
        health = await client.get("/health")
        status = await client.get("/status")

    assert empty.json()["status"] == "unknown"
    assert health.json()["status"] == "degraded"
    assert "modules.session.connector" in health.json()["modules"]
    assert status.json()["title"] == "Spectra Client | Connected with Group ID: G1"

    await gateway.stop()
    await bus.stop()


def test_websocket_frames_are_published_and_errors_reported() -> None:
    bus = RecordingBus()
    gateway = FeedGateway()
    gateway.set_bus(bus)  # type: ignore[arg-type]
    asyncio.run(gateway.configure(ModuleConfig(options={"serve_http": False})))
    asyncio.run(gateway.start())

    with TestClient(gateway.app) as client:
        with client.websocket_connect("/feed") as websocket:
            websocket.send_json({"channel": "game", "events": [{"key": "spike_planted"}]})
            ack = websocket.receive_json()
            websocket.send_json({"channel": "lobby", "events": []})
            error = websocket.receive_json()
            websocket.send_text("{not json")
            not_json = websocket.receive_json()
            websocket.send_bytes(b"\x00\x01")
            binary = websocket.receive_json()
            websocket.send_json({"channel": "info", "events": [{"key": "map"}, {"key": "x"}]})
            second_ack = websocket.receive_json()

    assert ack == {"type": "ack", "accepted": 1}
    assert error["type"] == "error"
    assert not_json["type"] == "error"
    assert binary == {"type": "error", "detail": "Binary frames are not accepted."}
    assert second_ack == {"type": "ack", "accepted": 2}
    assert [(topic, batch.channel, batch.source) for topic, batch in bus.published] == [
        ("feed.game", "game", "websocket"),
        ("feed.info", "info", "websocket"),
    ]
    assert asyncio.run(gateway.health()).details["frames_rejected"] == 3


@pytest.mark.asyncio
async def test_gateway_serves_http_through_injected_factories() -> None:
    created: dict[str, Any] = {}

    class FakeServer:
        def __init__(self, config: Any) -> None:
            self.config = config
            self.should_exit = False

        async def serve(self) -> None:
            while not self.should_exit:
                await asyncio.sleep(0.01)

    def config_factory(**kwargs: Any) -> dict[str, Any]:
        created.update(kwargs)
        return kwargs

    bus = EventBus(telemetry_enabled=False)
    gateway = FeedGateway(config_factory=config_factory, server_factory=FakeServer)
    gateway.set_bus(bus)
    await gateway.configure(ModuleConfig(options={"host": "0.0.0.0", "port": 5123}))
    await gateway.start()
    await gateway.stop()

    assert created["host"] == "0.0.0.0"
    assert created["port"] == 5123
