"""
Session connector that owns the outbound WebSocket to the ingest server.

One connector runs exactly one session: connect, authenticate with the
session identity, stream telemetry while authenticated, then close. Transport
failures never propagate to callers; they resolve into a state transition
plus one presenter notification.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol

import websockets
from websockets.exceptions import WebSocketException

from ...core.contracts import BaseModule, HealthStatus, ModuleConfig
from ...core.protocol import (
    OutgoingMessage,
    ProtocolError,
    SessionIdentity,
    decode_auth_response,
    decode_frame,
)
from .state import CloseReason, ConnectionState, ConnectionStatus
from .status_board import Presenter, StatusBoard

logger = logging.getLogger(__name__)

INGEST_SERVER_URL = "ws://localhost:5100/ingest"
TITLE_PREFIX = "Spectra Client"
ERROR_TITLE = "Spectra Client - Error"

TRANSPORT_ERRORS = (OSError, TimeoutError, WebSocketException)


class SessionError(RuntimeError):
    """Raised when the connector is driven in a way its lifecycle forbids."""


class Transport(Protocol):
    """Subset of a WebSocket client connection the connector relies on."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


ConnectFactory = Callable[[str], Awaitable[Transport]]


def is_connection_refused(exc: BaseException) -> bool:
    """Return True when `exc` (or anything it wraps) is a refused connection."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, ConnectionRefusedError):
            return True
        if isinstance(current, OSError):
            if current.errno == errno.ECONNREFUSED:
                return True
            # asyncio folds per-address failures into one errno-less OSError
            # when a host resolves to several addresses (e.g. ::1 and 127.0.0.1).
            if str(current).startswith("Multiple exceptions") and (
                f"[Errno {errno.ECONNREFUSED}]" in str(current)
            ):
                return True
        current = current.__cause__ or current.__context__
    return False


class SessionConnector(BaseModule):
    """Authenticate once, then forward telemetry frames until the session closes."""

    name = "modules.session.connector"

    def __init__(
        self,
        *,
        presenter: Presenter | None = None,
        connect: ConnectFactory | None = None,
    ) -> None:
        super().__init__()
        self._presenter: Presenter = presenter or StatusBoard()
        self._connect_factory = connect
        self._url = INGEST_SERVER_URL
        self._open_timeout = 10.0
        self._close_timeout = 5.0
        self._configured_identity: SessionIdentity | None = None
        self._identity: SessionIdentity | None = None
        self._status = ConnectionStatus()
        self._transport: Transport | None = None
        self._task: asyncio.Task[None] | None = None
        self._sent_total = 0
        self._dropped_total = 0

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._url = options.get("url", self._url)
        self._open_timeout = float(options.get("open_timeout_seconds", self._open_timeout))
        self._close_timeout = float(options.get("close_timeout_seconds", self._close_timeout))
        identity = options.get("identity")
        if isinstance(identity, SessionIdentity):
            self._configured_identity = identity
        elif identity:
            self._configured_identity = SessionIdentity.model_validate(identity)

    async def start(self) -> None:
        if self._configured_identity is None:
            logger.warning("SessionConnector has no session identity; not connecting.")
            return
        await self.begin(self._configured_identity)

    async def stop(self) -> None:
        await self.end_session()
        await self.wait_closed(timeout=self._close_timeout + 1.0)

    @property
    def state(self) -> ConnectionState:
        return self._status.state

    @property
    def remote_unreachable(self) -> bool:
        return self._status.remote_unreachable

    @property
    def close_reason(self) -> CloseReason | None:
        return self._status.close_reason

    @property
    def identity(self) -> SessionIdentity | None:
        return self._identity

    @property
    def url(self) -> str:
        return self._url

    async def begin(self, identity: SessionIdentity) -> None:
        """Schedule the single connection attempt of this session."""
        if self._status.state is not ConnectionState.IDLE:
            raise SessionError(
                f"Session already started (state={self._status.state.value}); "
                "create a new connector for a new session."
            )
        self._identity = identity
        self._enter(ConnectionState.CONNECTING)
        logger.info("Connecting to ingest server at %s", self._url)
        self._task = asyncio.create_task(self._run_session(), name="spectra-session")

    async def send(self, message: OutgoingMessage) -> bool:
        """Transmit `message` if authenticated; otherwise drop it.

        Returns whether the message was written to the transport.
        """
        transport = self._transport
        if not self._status.is_authenticated or transport is None or self._identity is None:
            self._dropped_total += 1
            logger.debug(
                "Dropping %s message while session is %s",
                message.type.value,
                self._status.state.value,
            )
            return False
        frame = message.to_wire(self._identity)
        try:
            await transport.send(frame)
        except TRANSPORT_ERRORS as exc:
            self._dropped_total += 1
            logger.warning("Failed to send %s message: %s", message.type.value, exc)
            return False
        self._sent_total += 1
        return True

    async def end_session(self) -> None:
        """Close the session from the local side; a no-op once closed."""
        if self._status.is_closed:
            logger.debug("end_session ignored; session already closed.")
            return
        self._enter(ConnectionState.CLOSED, reason=CloseReason.ENDED)
        transport = self._transport
        if transport is not None:
            try:
                await transport.close()
            except TRANSPORT_ERRORS as exc:
                logger.warning("Error while closing ingest connection: %s", exc)
        elif self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait_closed(self, timeout: float | None = None) -> None:
        """Wait for the session task to finish."""
        task = self._task
        if task is None:
            return
        done, _pending = await asyncio.wait([task], timeout=timeout)
        if not done:
            logger.warning("Session task still running after %.1fs; cancelling.", timeout or 0)
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def health(self) -> HealthStatus:
        state = self._status.state
        if state is ConnectionState.AUTHENTICATED:
            status = "healthy"
        elif self._status.close_reason in (CloseReason.REJECTED, CloseReason.UNREACHABLE):
            status = "error"
        else:
            status = "degraded"
        return HealthStatus(
            status=status,
            details={
                "url": self._url,
                "state": state.value,
                "remote_unreachable": self._status.remote_unreachable,
                "close_reason": self._status.close_reason.value
                if self._status.close_reason
                else None,
                "sent_total": self._sent_total,
                "dropped_total": self._dropped_total,
            },
        )

    async def _run_session(self) -> None:
        try:
            try:
                transport = await self._connect(self._url)
            except TRANSPORT_ERRORS as exc:
                self._handle_error(exc)
                return
            if self._status.is_closed:
                await transport.close()
                return
            self._transport = transport
            try:
                await self._handle_open(transport)
                async for frame in transport:
                    await self._handle_message(transport, frame)
            except TRANSPORT_ERRORS as exc:
                self._handle_error(exc)
        except Exception:
            logger.exception("Ingest session crashed.")
            await self._close_transport()
        finally:
            self._handle_close()

    def _connect(self, url: str) -> Awaitable[Transport]:
        if self._connect_factory is not None:
            return self._connect_factory(url)
        return websockets.connect(
            url,
            open_timeout=self._open_timeout,
            close_timeout=self._close_timeout,
        )

    async def _handle_open(self, transport: Transport) -> None:
        identity = self._identity
        if identity is None:  # pragma: no cover - begin() always sets it
            raise SessionError("Transport opened without a session identity.")
        self._enter(ConnectionState.AWAITING_AUTH_RESPONSE)
        await transport.send(identity.auth_frame())

    async def _handle_message(self, transport: Transport, frame: str | bytes) -> None:
        state = self._status.state
        if state is ConnectionState.AWAITING_AUTH_RESPONSE:
            try:
                response = decode_auth_response(frame)
            except ProtocolError as exc:
                logger.warning("Unexpected first frame from ingest server: %s", exc)
                await self._reject(transport)
                return
            if response.value:
                logger.info("Authentication successful!")
                self._enter(ConnectionState.AUTHENTICATED)
            else:
                logger.warning("Authentication failed!")
                await self._reject(transport)
        elif state is ConnectionState.AUTHENTICATED:
            try:
                logger.info("Ingest server message: %s", decode_frame(frame))
            except ProtocolError as exc:
                logger.warning("Ignoring undecodable frame from ingest server: %s", exc)
        else:
            logger.debug("Ignoring frame received while %s", state.value)

    async def _reject(self, transport: Transport) -> None:
        self._enter(ConnectionState.CLOSED, reason=CloseReason.REJECTED)
        await transport.close()

    def _handle_error(self, exc: BaseException) -> None:
        if is_connection_refused(exc):
            self._status.mark_unreachable()
            logger.warning("Failed connection to ingest server at %s - is it up?", self._url)
        else:
            logger.warning("Ingest connection error: %r", exc)

    async def _close_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.close()
        except TRANSPORT_ERRORS as exc:
            logger.warning("Error while closing ingest connection: %s", exc)

    def _handle_close(self) -> None:
        self._transport = None
        logger.info("Connection to ingest server closed")
        if self._status.is_closed:
            return
        if self._status.remote_unreachable:
            self._enter(ConnectionState.CLOSED, reason=CloseReason.UNREACHABLE)
        else:
            self._enter(ConnectionState.CLOSED, reason=CloseReason.DISCONNECTED)

    def _enter(self, target: ConnectionState, *, reason: CloseReason | None = None) -> None:
        """Apply a transition and emit its single notification."""
        self._status.transition(target, reason=reason)
        title, error = self._notification_for(target, reason)
        self._presenter.notify_title(f"{TITLE_PREFIX} | {title}")
        if error is not None:
            self._presenter.notify_error(ERROR_TITLE, error)

    def _notification_for(
        self, target: ConnectionState, reason: CloseReason | None
    ) -> tuple[str, str | None]:
        if target is ConnectionState.CONNECTING:
            return "Connecting...", None
        if target is ConnectionState.AWAITING_AUTH_RESPONSE:
            return "Authenticating...", None
        if target is ConnectionState.AUTHENTICATED:
            group = self._identity.group_code if self._identity else ""
            return f"Connected with Group ID: {group}", None
        if reason is CloseReason.REJECTED:
            return "Connection failed, invalid data", "Inputted data was invalid!"
        if reason is CloseReason.UNREACHABLE:
            return "Connection failed, server not reachable", "Spectra server not reachable!"
        if reason is CloseReason.ENDED:
            return "Match ended, connection closed", None
        return "Connection closed", None


def describe(connector: SessionConnector) -> dict[str, Any]:
    """Short status view used by the CLI when the session finishes."""
    return {
        "state": connector.state.value,
        "close_reason": connector.close_reason.value if connector.close_reason else None,
        "remote_unreachable": connector.remote_unreachable,
    }


__all__ = [
    "INGEST_SERVER_URL",
    "ConnectFactory",
    "SessionConnector",
    "SessionError",
    "Transport",
    "describe",
    "is_connection_refused",
]
