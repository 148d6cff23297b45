"""
Expose session and bus metrics via Prometheus.

The exporter listens to `status.bus` and `status.health.summary` and renders
them as gauges: bus throughput, the ingest connection state, and the
dispatcher's forwarding counters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from prometheus_client import CollectorRegistry, Gauge, start_http_server

from ...core.bus import Subscription
from ...core.contracts import BaseModule, BusStatus, HealthSummary, ModuleConfig
from ..session.state import ConnectionState

logger = logging.getLogger(__name__)

CONNECTOR_MODULE = "modules.session.connector"
DISPATCHER_MODULE = "modules.feed.dispatcher"
DISPATCHER_COUNTERS = (
    "forwarded",
    "dropped",
    "discarded",
    "ignored",
    "unhandled",
    "failed",
    "session_end_requests",
)


def _default_server_factory(
    port: int, addr: str, registry: CollectorRegistry
) -> object:  # pragma: no cover - thin wrapper
    return start_http_server(port=port, addr=addr, registry=registry)


class PrometheusExporter(BaseModule):
    """Status module that exports bus and session telemetry via HTTP."""

    name = "modules.status.prometheus_exporter"

    def __init__(
        self,
        *,
        registry: CollectorRegistry | None = None,
        server_factory: Callable[[int, str, CollectorRegistry], object] | None = None,
    ) -> None:
        super().__init__()
        self._registry = registry or CollectorRegistry()
        self._server_factory = server_factory or _default_server_factory
        self._server: object | None = None
        self._bus_topic = "status.bus"
        self._health_topic = "status.health.summary"
        self._port = 9093
        self._addr = "127.0.0.1"
        self._subscriptions: list[Subscription] = []
        self._queue_depth = Gauge(
            "spectra_bus_queue_depth",
            "Number of events currently waiting on the bus.",
            registry=self._registry,
        )
        self._lag_seconds = Gauge(
            "spectra_bus_lag_seconds",
            "Event dispatch lag in seconds.",
            registry=self._registry,
        )
        self._published_total = Gauge(
            "spectra_bus_published_total",
            "Total published events since startup.",
            registry=self._registry,
        )
        self._failed_total = Gauge(
            "spectra_bus_failed_total",
            "Subscriber invocations that raised.",
            registry=self._registry,
        )
        self._session_state = Gauge(
            "spectra_session_state",
            "1 for the current ingest connection state, 0 for the others.",
            ["state"],
            registry=self._registry,
        )
        self._remote_unreachable = Gauge(
            "spectra_session_remote_unreachable",
            "1 when the ingest server refused the connection.",
            registry=self._registry,
        )
        self._messages_sent = Gauge(
            "spectra_session_messages_sent_total",
            "Messages written to the ingest connection.",
            registry=self._registry,
        )
        self._messages_dropped = Gauge(
            "spectra_session_messages_dropped_total",
            "Messages dropped before authentication or on a closing transport.",
            registry=self._registry,
        )
        self._round_number = Gauge(
            "spectra_feed_round_number",
            "Most recent round number reported by the provider.",
            registry=self._registry,
        )
        self._dispatcher_events = Gauge(
            "spectra_feed_events",
            "Provider events by dispatch outcome.",
            ["outcome"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._port = int(options.get("port", self._port))
        self._addr = options.get("addr", self._addr)
        self._bus_topic = options.get("bus_topic", self._bus_topic)
        self._health_topic = options.get("health_topic", self._health_topic)

    async def start(self) -> None:
        if self._server is None:
            self._server = self._server_factory(self._port, self._addr, self._registry)
            logger.info("Started Prometheus exporter on %s:%d", self._addr, self._port)
        self._subscriptions.append(self.bus.subscribe(self._bus_topic, self._handle_bus_status))
        self._subscriptions.append(self.bus.subscribe(self._health_topic, self._handle_health))

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions.clear()
        # start_http_server returns (server, thread) on current prometheus_client releases.
        server = self._server[0] if isinstance(self._server, tuple) else self._server
        shutdown = getattr(server, "shutdown", None)
        if callable(shutdown):
            shutdown()
        self._server = None

    async def _handle_bus_status(self, topic: str, payload: BusStatus) -> None:
        if not isinstance(payload, BusStatus):
            return
        self._queue_depth.set(payload.queue_depth)
        self._lag_seconds.set(payload.lag_seconds)
        self._published_total.set(payload.published_total)
        self._failed_total.set(payload.failed_total)

    async def _handle_health(self, topic: str, payload: HealthSummary) -> None:
        if not isinstance(payload, HealthSummary):
            return
        connector = payload.modules.get(CONNECTOR_MODULE)
        if connector is not None:
            details = connector.details
            current = details.get("state")
            for state in ConnectionState:
                self._session_state.labels(state=state.value).set(
                    1 if state.value == current else 0
                )
            self._remote_unreachable.set(1 if details.get("remote_unreachable") else 0)
            self._messages_sent.set(details.get("sent_total", 0))
            self._messages_dropped.set(details.get("dropped_total", 0))
        dispatcher = payload.modules.get(DISPATCHER_MODULE)
        if dispatcher is not None:
            details = dispatcher.details
            self._round_number.set(details.get("round_number", 0))
            for outcome in DISPATCHER_COUNTERS:
                self._dispatcher_events.labels(outcome=outcome).set(details.get(outcome, 0))


__all__ = ["PrometheusExporter"]
