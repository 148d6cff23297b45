"""
Connection state machine for one ingest session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_AUTH_RESPONSE = "awaiting_auth_response"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class CloseReason(str, Enum):
    """Why a session reached CLOSED."""

    ENDED = "ended"
    REJECTED = "rejected"
    UNREACHABLE = "unreachable"
    DISCONNECTED = "disconnected"


TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset({ConnectionState.CONNECTING, ConnectionState.CLOSED}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AWAITING_AUTH_RESPONSE, ConnectionState.CLOSED}
    ),
    ConnectionState.AWAITING_AUTH_RESPONSE: frozenset(
        {ConnectionState.AUTHENTICATED, ConnectionState.CLOSED}
    ),
    ConnectionState.AUTHENTICATED: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a transition is not allowed from the current state."""

    def __init__(self, current: ConnectionState, target: ConnectionState) -> None:
        super().__init__(f"Illegal connection transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass(slots=True)
class ConnectionStatus:
    """
    Current state plus the sticky unreachable flag.

    `remote_unreachable` is only ever raised, never cleared, for the
    lifetime of the session.
    """

    state: ConnectionState = ConnectionState.IDLE
    remote_unreachable: bool = False
    close_reason: CloseReason | None = None

    def can_transition(self, target: ConnectionState) -> bool:
        return target in TRANSITIONS[self.state]

    def transition(
        self, target: ConnectionState, *, reason: CloseReason | None = None
    ) -> ConnectionState:
        """Move to `target` and return the previous state."""
        if not self.can_transition(target):
            raise InvalidTransitionError(self.state, target)
        previous = self.state
        self.state = target
        if target is ConnectionState.CLOSED:
            self.close_reason = reason or CloseReason.DISCONNECTED
        logger.debug("Connection state %s -> %s", previous.value, target.value)
        return previous

    def mark_unreachable(self) -> None:
        self.remote_unreachable = True

    @property
    def is_authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    @property
    def is_closed(self) -> bool:
        return self.state is ConnectionState.CLOSED


__all__ = [
    "TRANSITIONS",
    "CloseReason",
    "ConnectionState",
    "ConnectionStatus",
    "InvalidTransitionError",
]
