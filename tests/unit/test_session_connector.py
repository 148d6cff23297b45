import asyncio
import errno
import json

import pytest
from websockets.exceptions import ConnectionClosedOK

from spectra_client.core.contracts import ModuleConfig
from spectra_client.core.protocol import DataType, OutgoingMessage
from spectra_client.modules.session.connector import (
    SessionConnector,
    SessionError,
    is_connection_refused,
)
from spectra_client.modules.session.state import CloseReason, ConnectionState

PREFIX = "Spectra Client | "
AUTH_OK = {"type": "authenticate", "value": True}


async def _authenticated(connector, identity, fake_connect, wait_until) -> None:
    await connector.begin(identity)
    await wait_until(lambda: fake_connect.transport.sent)
    fake_connect.transport.push(AUTH_OK)
    await wait_until(lambda: connector.state is ConnectionState.AUTHENTICATED)


@pytest.mark.asyncio
async def test_handshake_sends_single_auth_frame(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)

    await _authenticated(connector, identity, fake_connect, wait_until)

    assert fake_connect.urls == ["ws://localhost:5100/ingest"]
    assert fake_connect.transport.frames == [
        {
            "type": "authenticate",
            "playerName": "Observer",
            "groupCode": "GRP42",
            "leftTeam": {"name": "Left Side", "tricode": "LFT", "url": "https://example.test/l"},
            "rightTeam": {"name": "Right Side", "tricode": "RGT", "url": ""},
        }
    ]
    assert presenter.titles == [
        PREFIX + "Connecting...",
        PREFIX + "Authenticating...",
        PREFIX + "Connected with Group ID: GRP42",
    ]
    assert presenter.errors == []

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


@pytest.mark.asyncio
async def test_send_is_dropped_until_authenticated(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    message = OutgoingMessage(type=DataType.MAP, data="Ascent")

    await connector.send(message)
    await connector.begin(identity)
    for _ in range(5):
        await connector.send(message)
    await wait_until(lambda: connector.state is ConnectionState.AWAITING_AUTH_RESPONSE)
    await connector.send(message)

    assert [frame["type"] for frame in fake_connect.transport.frames] == ["authenticate"]
    health = await connector.health()
    assert health.details["dropped_total"] == 7
    assert health.details["sent_total"] == 0

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


@pytest.mark.asyncio
async def test_send_merges_identity_once_authenticated(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await _authenticated(connector, identity, fake_connect, wait_until)

    await connector.send(OutgoingMessage(type=DataType.SPIKE_PLANTED, data=True))

    assert fake_connect.transport.frames[-1] == {
        "playerName": "Observer",
        "groupCode": "GRP42",
        "type": "spike_planted",
        "data": True,
    }
    health = await connector.health()
    assert health.status == "healthy"
    assert health.details["sent_total"] == 1

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


@pytest.mark.asyncio
async def test_rejected_authentication_closes_with_error(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await connector.begin(identity)
    await wait_until(lambda: fake_connect.transport.sent)

    fake_connect.transport.push({"type": "authenticate", "value": False})
    await connector.wait_closed(timeout=1.0)

    assert connector.state is ConnectionState.CLOSED
    assert connector.close_reason is CloseReason.REJECTED
    assert fake_connect.transport.closed
    assert presenter.titles[-1] == PREFIX + "Connection failed, invalid data"
    assert presenter.titles.count(PREFIX + "Connection closed") == 0
    assert presenter.errors == [("Spectra Client - Error", "Inputted data was invalid!")]
    assert (await connector.health()).status == "error"


@pytest.mark.asyncio
async def test_unexpected_first_frame_counts_as_rejection(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await connector.begin(identity)
    await wait_until(lambda: fake_connect.transport.sent)

    fake_connect.transport.push({"type": "welcome"})
    await connector.wait_closed(timeout=1.0)

    assert connector.close_reason is CloseReason.REJECTED


@pytest.mark.asyncio
async def test_refused_connection_marks_remote_unreachable(
    identity, fake_connect, presenter
) -> None:
    fake_connect.error = ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
    connector = SessionConnector(presenter=presenter, connect=fake_connect)

    await connector.begin(identity)
    await connector.wait_closed(timeout=1.0)

    assert connector.remote_unreachable is True
    assert connector.close_reason is CloseReason.UNREACHABLE
    assert presenter.titles == [
        PREFIX + "Connecting...",
        PREFIX + "Connection failed, server not reachable",
    ]
    assert presenter.errors == [("Spectra Client - Error", "Spectra server not reachable!")]


@pytest.mark.asyncio
async def test_other_transport_error_closes_without_unreachable(
    identity, fake_connect, presenter
) -> None:
    fake_connect.error = TimeoutError("timed out during opening handshake")
    connector = SessionConnector(presenter=presenter, connect=fake_connect)

    await connector.begin(identity)
    await connector.wait_closed(timeout=1.0)

    assert connector.remote_unreachable is False
    assert connector.close_reason is CloseReason.DISCONNECTED
    assert presenter.titles[-1] == PREFIX + "Connection closed"
    assert presenter.errors == []


@pytest.mark.asyncio
async def test_unexpected_session_error_is_logged(identity, presenter, caplog) -> None:
    async def broken_connect(url: str):
        raise ValueError("connect factory bug")

    connector = SessionConnector(presenter=presenter, connect=broken_connect)

    with caplog.at_level("ERROR", logger="spectra_client.modules.session.connector"):
        await connector.begin(identity)
        await connector.wait_closed(timeout=1.0)

    assert connector.state is ConnectionState.CLOSED
    assert connector.close_reason is CloseReason.DISCONNECTED
    assert presenter.titles[-1] == PREFIX + "Connection closed"
    crash = [
        record for record in caplog.records if record.getMessage() == "Ingest session crashed."
    ]
    assert len(crash) == 1
    assert isinstance(crash[0].exc_info[1], ValueError)


@pytest.mark.asyncio
async def test_remote_close_notifies_connection_closed(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await _authenticated(connector, identity, fake_connect, wait_until)

    fake_connect.transport.remote_close()
    await connector.wait_closed(timeout=1.0)

    assert connector.close_reason is CloseReason.DISCONNECTED
    assert presenter.titles[-1] == PREFIX + "Connection closed"


@pytest.mark.asyncio
async def test_end_session_is_idempotent(identity, fake_connect, presenter, wait_until) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await _authenticated(connector, identity, fake_connect, wait_until)

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)
    titles_after_first = list(presenter.titles)
    await connector.end_session()

    assert connector.close_reason is CloseReason.ENDED
    assert fake_connect.transport.closed
    assert titles_after_first[-1] == PREFIX + "Match ended, connection closed"
    assert presenter.titles == titles_after_first
    await connector.send(OutgoingMessage(type=DataType.MAP, data="Bind"))
    assert len(fake_connect.transport.sent) == 1


@pytest.mark.asyncio
async def test_end_session_while_connecting_cancels_attempt(
    identity, fake_connect, presenter
) -> None:
    fake_connect.gate = asyncio.Event()
    connector = SessionConnector(presenter=presenter, connect=fake_connect)

    await connector.begin(identity)
    await asyncio.sleep(0)
    await connector.end_session()
    await connector.wait_closed(timeout=1.0)

    assert connector.state is ConnectionState.CLOSED
    assert connector.close_reason is CloseReason.ENDED
    assert fake_connect.transport.sent == []
    assert presenter.titles == [
        PREFIX + "Connecting...",
        PREFIX + "Match ended, connection closed",
    ]


@pytest.mark.asyncio
async def test_begin_twice_raises(identity, fake_connect, presenter, wait_until) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await connector.begin(identity)

    with pytest.raises(SessionError):
        await connector.begin(identity)

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


@pytest.mark.asyncio
async def test_send_on_closing_transport_is_dropped(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await _authenticated(connector, identity, fake_connect, wait_until)
    fake_connect.transport.send_error = ConnectionClosedOK(None, None)

    await connector.send(OutgoingMessage(type=DataType.OBSERVING, data="someone"))

    health = await connector.health()
    assert health.details["dropped_total"] == 1
    assert health.details["sent_total"] == 0

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


@pytest.mark.asyncio
async def test_frames_after_authentication_are_only_logged(
    identity, fake_connect, presenter, wait_until, caplog
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await _authenticated(connector, identity, fake_connect, wait_until)

    with caplog.at_level("INFO", logger="spectra_client.modules.session.connector"):
        fake_connect.transport.push(json.dumps({"type": "notice", "value": "hello"}))
        await wait_until(lambda: "Ingest server message" in caplog.text)

    assert connector.state is ConnectionState.AUTHENTICATED

    await connector.end_session()
    await connector.wait_closed(timeout=1.0)


def test_is_connection_refused_walks_cause_chain() -> None:
    refused = OSError(errno.ECONNREFUSED, "Connect call failed")
    wrapped = RuntimeError("handshake failed")
    wrapped.__cause__ = refused
    multiple = OSError(
        "Multiple exceptions: [Errno 111] Connect call failed ('::1', 5100), "
        "[Errno 111] Connect call failed ('127.0.0.1', 5100)"
    )

    assert is_connection_refused(ConnectionRefusedError())
    assert is_connection_refused(refused)
    assert is_connection_refused(wrapped)
    assert is_connection_refused(multiple)
    assert not is_connection_refused(TimeoutError())
    assert not is_connection_refused(OSError(errno.EHOSTUNREACH, "No route to host"))


@pytest.mark.asyncio
async def test_configure_and_start_use_configured_identity(
    identity, fake_connect, presenter, wait_until
) -> None:
    connector = SessionConnector(presenter=presenter, connect=fake_connect)
    await connector.configure(
        ModuleConfig(
            options={
                "url": "ws://ingest.test/ingest",
                "identity": identity.model_dump(),
            }
        )
    )

    await connector.start()
    await wait_until(lambda: fake_connect.transport.sent)
    await connector.stop()

    assert fake_connect.urls == ["ws://ingest.test/ingest"]
    assert connector.identity == identity
    assert connector.close_reason is CloseReason.ENDED
