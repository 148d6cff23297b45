"""
Core infrastructure for the Spectra client.

Exposes the asynchronous event bus, payload contracts, wire protocol,
configuration service and the orchestrator that wires modules together.
"""

from .bus import EventBus, Subscription
from .config import ConfigError, ConfigService, ConfigSnapshot
from .contracts import (
    BaseModule,
    BasePayload,
    FeedBatch,
    HealthStatus,
    HealthSummary,
    ModuleConfig,
)
from .orchestrator import Orchestrator
from .protocol import DataType, OutgoingMessage, SessionIdentity, TeamDescriptor

__all__ = [
    "BaseModule",
    "BasePayload",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "DataType",
    "EventBus",
    "FeedBatch",
    "HealthStatus",
    "HealthSummary",
    "ModuleConfig",
    "Orchestrator",
    "OutgoingMessage",
    "SessionIdentity",
    "Subscription",
    "TeamDescriptor",
]
