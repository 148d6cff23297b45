"""
Lifecycle coordinator for the Spectra client modules.

The orchestrator owns the shared event bus, configures modules, and
coordinates their startup and shutdown order. Modules start in registration
order and stop in reverse, so the feed gateway stops accepting batches before
the session connector closes the ingest connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

from .bus import EventBus
from .contracts import BaseModule, HealthStatus, HealthSummary, ModuleConfig

logger = logging.getLogger(__name__)


class Orchestrator:
    """Manage module lifecycle and shared infrastructure."""

    def __init__(
        self,
        *,
        bus: EventBus | None = None,
        health_interval: float = 5.0,
        publish_health: bool = True,
        health_topic: str = "status.health.summary",
    ) -> None:
        self.bus = bus or EventBus()
        self._modules: list[BaseModule] = []
        self._configs: dict[BaseModule, ModuleConfig] = {}
        self._running = False
        self._health_interval = health_interval
        self._publish_health = publish_health
        self._health_topic = health_topic
        self._health_task: asyncio.Task[None] | None = None

    @property
    def modules(self) -> list[BaseModule]:
        return list(self._modules)

    @property
    def running(self) -> bool:
        return self._running

    async def add_module(self, module: BaseModule, config: ModuleConfig | None = None) -> None:
        """
        Register a module with an optional configuration.

        Configuration defaults to the module's baseline if one is not
        provided. Modules receive the shared bus before configuration.
        Disabled modules are skipped.
        """
        if config is None:
            config = ModuleConfig()
        if not config.enabled:
            logger.info("Skipping disabled module %s", module.name)
            return
        module.set_bus(self.bus)
        await module.configure(config)
        self._modules.append(module)
        self._configs[module] = config
        logger.info("Registered module %s", module.name)

    async def start(self) -> None:
        """Start the bus and all registered modules."""
        if self._running:
            logger.warning("Orchestrator already running.")
            return
        await self.bus.start()
        for module in self._modules:
            logger.info("Starting module %s", module.name)
            await module.start()
        self._running = True
        if self._publish_health:
            self._health_task = asyncio.create_task(self._health_loop(), name="spectra-health")
        logger.info("Orchestrator started %d modules.", len(self._modules))

    async def stop(self) -> None:
        """Stop all modules in reverse order and shut down the bus."""
        if not self._running:
            logger.warning("Orchestrator stop requested while not running.")
            return
        self._running = False
        if self._health_task:
            self._health_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._health_task
            self._health_task = None
        for module in reversed(self._modules):
            logger.info("Stopping module %s", module.name)
            try:
                await module.stop()
            except Exception:
                logger.exception("Module %s failed to stop cleanly.", module.name)
        await self.bus.stop()
        logger.info("Orchestrator stopped.")

    async def health(self) -> dict[str, HealthStatus]:
        """Aggregate health information from all modules."""
        reports: dict[str, HealthStatus] = {}
        for module in self._modules:
            reports[module.name] = await module.health()
        return reports

    async def publish_health(self) -> HealthSummary:
        reports = await self.health()
        payload = HealthSummary(status=self._determine_overall_status(reports), modules=reports)
        await self.bus.publish(self._health_topic, payload)
        return payload

    async def _health_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._health_interval)
            await self.publish_health()

    @staticmethod
    def _determine_overall_status(reports: dict[str, HealthStatus]) -> str:
        statuses = {report.status for report in reports.values()}
        if "error" in statuses:
            return "error"
        if "degraded" in statuses:
            return "degraded"
        return "healthy"


__all__ = ["Orchestrator"]
