import asyncio

import pytest

from spectra_client.core.contracts import BaseModule, HealthStatus, ModuleConfig
from spectra_client.core.orchestrator import Orchestrator


class _StubModule(BaseModule):
    def __init__(self, name: str, events: list[str], status: str = "healthy") -> None:
        super().__init__()
        self.name = name
        self._events = events
        self._status = status

    async def start(self) -> None:
        self._events.append(f"start:{self.name}")

    async def stop(self) -> None:
        self._events.append(f"stop:{self.name}")
        if self.name == "tests.stub.broken":
            raise RuntimeError("stop failed")

    async def health(self) -> HealthStatus:
        return HealthStatus(status=self._status, details={})


@pytest.mark.asyncio
async def test_orchestrator_emits_health_summary() -> None:
    orchestrator = Orchestrator(health_interval=0.05, publish_health=True)
    summary_signal = asyncio.Event()
    summaries: list[str] = []

    async def handler(topic: str, payload) -> None:
        summaries.append(payload.status)
        summary_signal.set()

    orchestrator.bus.subscribe("status.health.summary", handler)
    await orchestrator.add_module(_StubModule("tests.stub.module", []), ModuleConfig())
    await orchestrator.start()
    await asyncio.wait_for(summary_signal.wait(), timeout=0.5)
    await orchestrator.stop()

    assert summaries
    assert summaries[0] == "healthy"


@pytest.mark.asyncio
async def test_modules_start_in_order_and_stop_in_reverse() -> None:
    events: list[str] = []
    orchestrator = Orchestrator(publish_health=False)
    await orchestrator.add_module(_StubModule("tests.stub.first", events))
    await orchestrator.add_module(_StubModule("tests.stub.broken", events))
    await orchestrator.add_module(
        _StubModule("tests.stub.disabled", events), ModuleConfig(enabled=False)
    )
    await orchestrator.add_module(_StubModule("tests.stub.last", events))

    await orchestrator.start()
    await orchestrator.stop()

    assert [module.name for module in orchestrator.modules] == [
        "tests.stub.first",
        "tests.stub.broken",
        "tests.stub.last",
    ]
    assert events == [
        "start:tests.stub.first",
        "start:tests.stub.broken",
        "start:tests.stub.last",
        "stop:tests.stub.last",
        "stop:tests.stub.broken",
        "stop:tests.stub.first",
    ]
    assert orchestrator.running is False


@pytest.mark.asyncio
async def test_overall_status_prefers_worst_report() -> None:
    orchestrator = Orchestrator(publish_health=False)
    await orchestrator.add_module(_StubModule("tests.stub.ok", []))
    await orchestrator.add_module(_StubModule("tests.stub.slow", [], status="degraded"))
    await orchestrator.start()

    degraded = await orchestrator.publish_health()
    await orchestrator.add_module(_StubModule("tests.stub.down", [], status="error"))
    failing = await orchestrator.publish_health()
    await orchestrator.stop()

    assert degraded.status == "degraded"
    assert failing.status == "error"
    assert set(failing.modules) == {"tests.stub.ok", "tests.stub.slow", "tests.stub.down"}
