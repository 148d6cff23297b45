"""
Contracts and payload schemas shared by the Spectra client modules.

Bus payloads are frozen pydantic models so a batch published by the feed
gateway cannot be mutated by a subscriber further down the line. Modules
implement the `BaseModule` lifecycle and are wired by the orchestrator.
"""

from __future__ import annotations

import abc
import datetime as dt
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(extra="allow", frozen=True)

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )


class FeedBatch(BasePayload):
    """One delivery of raw provider events from the instrumentation feed."""

    channel: Literal["info", "game"] = Field(
        description="`info` for state snapshots, `game` for discrete occurrences."
    )
    events: list[Any] = Field(
        default_factory=list,
        description="Raw, undecoded provider events in arrival order.",
    )
    received_utc: dt.datetime = Field(
        default_factory=lambda: dt.datetime.now(tz=dt.UTC),
        description="Time the batch entered the process.",
    )
    source: str = Field(default="unknown", description="Surface that accepted the batch.")


class BusStatus(BasePayload):
    """Telemetry snapshot emitted by the event bus on `status.bus`."""

    queue_depth: int = Field(ge=0, description="Current number of queued events.")
    queue_capacity: int = Field(gt=0, description="Maximum queue capacity.")
    subscriber_count: int = Field(ge=0, description="Total registered handlers.")
    topic_count: int = Field(ge=0, description="Unique topics with subscribers.")
    published_total: int = Field(ge=0, description="Cumulative published events.")
    processed_total: int = Field(ge=0, description="Cumulative dispatched events.")
    failed_total: int = Field(ge=0, description="Subscriber invocations that raised.")
    dropped_total: int = Field(ge=0, description="Events discarded during shutdown.")
    lag_seconds: float = Field(
        ge=0.0,
        description="Approximate lag between last publish and last dispatch completion.",
    )


class HealthStatus(BaseModel):
    """Structured health report for modules."""

    model_config = ConfigDict(extra="allow", frozen=True)

    status: str = Field(description="Health classification such as healthy/degraded/error.")
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BasePayload):
    """Aggregated health report emitted on `status.health.summary`."""

    status: str = Field(description="Overall classification.")
    modules: dict[str, HealthStatus] = Field(default_factory=dict)


class ModuleConfig(BaseModel):
    """Baseline configuration contract applied to all modules."""

    model_config = ConfigDict(extra="allow")

    enabled: bool = Field(default=True)
    options: dict[str, Any] = Field(
        default_factory=dict, description="Arbitrary module configuration."
    )


@runtime_checkable
class EventHandler(Protocol):
    """Callable type for bus subscribers."""

    async def __call__(self, topic: str, payload: BasePayload) -> None: ...


if TYPE_CHECKING:
    from .bus import EventBus


class BaseModule(abc.ABC):
    """
    Abstract base class for all modular components.

    Modules receive an event bus instance and are responsible for
    subscribing to topics during `start`.
    """

    name: str

    def __init__(self) -> None:
        self._configured = False
        self._config = ModuleConfig()
        self._bus: EventBus | None = None

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            raise RuntimeError(f"{self.__class__.__name__} has not been attached to an EventBus.")
        return self._bus

    def set_bus(self, bus: EventBus) -> None:
        """Attach the shared event bus instance to the module."""
        self._bus = bus

    async def configure(self, config: ModuleConfig) -> None:
        """Apply the provided configuration prior to module start."""
        self._config = config
        self._configured = True

    @abc.abstractmethod
    async def start(self) -> None:
        """Begin processing by registering bus subscriptions or scheduling tasks."""

    async def stop(self) -> None:
        """Optional hook to release resources."""
        return None

    async def health(self) -> HealthStatus:
        """Return a basic health status; modules can override for richer diagnostics."""
        status = "healthy" if self._configured else "degraded"
        return HealthStatus(status=status, details={"configured": self._configured})


__all__ = [
    "BaseModule",
    "BasePayload",
    "BusStatus",
    "EventHandler",
    "FeedBatch",
    "HealthStatus",
    "HealthSummary",
    "ModuleConfig",
]
