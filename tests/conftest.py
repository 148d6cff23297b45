from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
from websockets.exceptions import ConnectionClosedOK

from spectra_client.core.config import ConfigService
from spectra_client.core.protocol import SessionIdentity, TeamDescriptor


def _write_yaml(path: Path, content: str) -> None:
    path.write_text(textwrap.dedent(content).strip() + "\n", encoding="utf-8")


@pytest.fixture
def sample_config_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary configuration directory for tests.
    """

    config_dir = tmp_path / "config"
    config_dir.mkdir()
    log_file = tmp_path / "logs" / "spectra.log"
    config_yaml = f"""
    ingest:
      url: "ws://ingest.test:5100/ingest"
      open_timeout_seconds: 2
      close_timeout_seconds: 1

    session:
      observer_name: "Observer"
      left_team:
        name: "Left Side"
        tricode: "LFT"
        url: "https://example.test/left.png"
      right_team:
        name: "Right Side"
        tricode: "RGT"

    feed:
      game_id: 21640
      terminal_phase: "game_end"
      map_aliases:
        Infinity: "Infinityy"
        Ascent: "Ascent"

    feed_gateway:
      host: "127.0.0.1"
      port: 5999
      serve_http: false
      buffer_size: 4

    prometheus:
      enabled: false
      port: 9999

    logging:
      level: "debug"
      file: "{log_file.as_posix()}"

    health_interval_seconds: 0.05
    """
    secrets_yaml = """
    session:
      group_code: "GRP42"
    """
    _write_yaml(config_dir / "config.yaml", config_yaml)
    _write_yaml(config_dir / "secrets.yaml", secrets_yaml)
    return config_dir


@pytest.fixture
def sample_config_service(sample_config_dir: Path) -> ConfigService:
    """Return a ConfigService wired to the temporary configuration."""

    return ConfigService(config_dir=sample_config_dir)


@pytest.fixture
def identity() -> SessionIdentity:
    return SessionIdentity(
        player_name="Observer",
        group_code="GRP42",
        left_team=TeamDescriptor(name="Left Side", tricode="LFT", url="https://example.test/l"),
        right_team=TeamDescriptor(name="Right Side", tricode="RGT", url=""),
    )


class FakeTransport:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.send_error: BaseException | None = None
        self._inbound: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbound.put_nowait(None)

    def push(self, frame: dict[str, Any] | str) -> None:
        """Queue a frame as if the server had sent it."""
        self._inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def remote_close(self) -> None:
        self._inbound.put_nowait(None)

    @property
    def frames(self) -> list[dict[str, Any]]:
        return [json.loads(message) for message in self.sent]

    def __aiter__(self) -> FakeTransport:
        return self

    async def __anext__(self) -> str:
        frame = await self._inbound.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


class FakeConnect:
    """Connect factory handing out one `FakeTransport` or raising `error`."""

    def __init__(self, *, error: BaseException | None = None) -> None:
        self.error = error
        self.transport = FakeTransport()
        self.urls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.transport


class RecordingPresenter:
    def __init__(self) -> None:
        self.titles: list[str] = []
        self.errors: list[tuple[str, str]] = []

    def notify_title(self, text: str) -> None:
        self.titles.append(text)

    def notify_error(self, title: str, message: str) -> None:
        self.errors.append((title, message))


@pytest.fixture
def fake_connect() -> FakeConnect:
    return FakeConnect()


@pytest.fixture
def presenter() -> RecordingPresenter:
    return RecordingPresenter()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll `predicate` on the running loop until it holds or the timeout expires."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout=timeout)

    return _wait
