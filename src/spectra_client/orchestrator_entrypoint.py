"""
CLI entrypoint that runs one Spectra ingest session.

Loads the Dynaconf configuration, applies command-line overrides, wires the
session connector, event dispatcher, feed gateway and Prometheus exporter on
a shared bus, and runs until the session closes or the process is signalled.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import logging.handlers
import signal
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from .core.bus import EventBus
from .core.config import ConfigError, ConfigService, ConfigSnapshot
from .core.orchestrator import Orchestrator
from .modules import (
    EventDispatcher,
    FeedGateway,
    PrometheusExporter,
    SessionConnector,
    StatusBoard,
)
from .modules.session.connector import ConnectFactory, describe
from .modules.session.state import CloseReason

LOGGER = logging.getLogger(__name__)
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DEFAULT_LOG_FILE = Path("logs") / "spectra_client.log"

EXIT_OK = 0
EXIT_SESSION_FAILED = 1
EXIT_CONFIG_ERROR = 2


def _ensure_rotating_file_handler(
    log_file: Path,
    *,
    max_mb: float = 10,
    backup_count: int = 3,
) -> None:
    """Attach a rotating file handler pointed at ``log_file`` if missing."""

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create log directory %s: %s", log_file.parent, exc)
        return

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            existing = getattr(handler, "baseFilename", None)
            if existing and Path(existing) == log_file.resolve():
                return

    handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=int(max_mb * 1024 * 1024),
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(handler)


def configure_logging(level: str) -> None:
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
    )
    logging.getLogger().setLevel(numeric_level)


def apply_logging_settings(snapshot: ConfigSnapshot, *, level_override: str | None) -> None:
    """Switch to the configured level and attach the rotating log file."""
    configure_logging(level_override or snapshot.logging.level)
    if snapshot.logging.file:
        _ensure_rotating_file_handler(
            Path(snapshot.logging.file),
            max_mb=snapshot.logging.max_mb,
            backup_count=snapshot.logging.backup_count,
        )


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate CLI flags into a nested configuration change set."""
    changes: dict[str, Any] = {}
    if args.observer_name is not None:
        changes.setdefault("session", {})["observer_name"] = args.observer_name
    if args.group_code is not None:
        changes.setdefault("session", {})["group_code"] = args.group_code
    if args.ingest_url is not None:
        changes.setdefault("ingest", {})["url"] = args.ingest_url
    if args.no_gateway:
        changes.setdefault("feed_gateway", {})["serve_http"] = False
    if args.no_metrics:
        changes.setdefault("prometheus", {})["enabled"] = False
    if args.log_file is not None:
        changes.setdefault("logging", {})["file"] = str(args.log_file)
    return changes


async def run_session(
    config_service: ConfigService,
    *,
    connect: ConnectFactory | None = None,
    stop_event: asyncio.Event | None = None,
    install_signal_handlers: bool = True,
    bus: EventBus | None = None,
) -> SessionConnector:
    """Wire the modules, run one session, and return the finished connector."""

    snapshot = config_service.snapshot
    if not snapshot.session.complete:
        raise ConfigError(
            "An observer name and a group code are required "
            "(session.observer_name / session.group_code or --observer-name / --group-code)."
        )

    status_board = StatusBoard()
    connector = SessionConnector(presenter=status_board, connect=connect)
    dispatcher = EventDispatcher(connector, on_player_name=status_board.set_player_name)
    gateway = FeedGateway(status_board=status_board)
    exporter = PrometheusExporter()

    orchestrator = Orchestrator(bus=bus, health_interval=snapshot.health_interval_seconds)
    # Dispatcher subscribes before the gateway can publish.
    for module in (connector, dispatcher, gateway, exporter):
        await orchestrator.add_module(module, config_service.module_config_for(module))

    stop_event = stop_event or asyncio.Event()
    if install_signal_handlers:
        _install_signal_handlers(stop_event)

    await orchestrator.start()
    LOGGER.info(
        "Spectra client running as %s in group %s. Press Ctrl+C to stop.",
        snapshot.session.observer_name,
        snapshot.session.group_code,
    )

    stop_waiter = asyncio.create_task(stop_event.wait(), name="spectra-stop")
    closed_waiter = asyncio.create_task(connector.wait_closed(), name="spectra-closed")
    try:
        await asyncio.wait([stop_waiter, closed_waiter], return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in (stop_waiter, closed_waiter):
            waiter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await waiter
        await orchestrator.stop()
    LOGGER.info("Session finished: %s", describe(connector))
    return connector


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _request_shutdown(sig_name: str) -> None:
        if not stop_event.is_set():
            LOGGER.info("Received %s, beginning graceful shutdown.", sig_name)
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_shutdown, sig.name)
        except NotImplementedError:  # Windows Proactor loop
            signal.signal(  # type: ignore[arg-type]
                sig,
                lambda signum, _frame, sig_name=sig.name: loop.call_soon_threadsafe(
                    _request_shutdown, sig_name or str(signum)
                ),
            )


def exit_code_for(connector: SessionConnector) -> int:
    if connector.close_reason in (CloseReason.REJECTED, CloseReason.UNREACHABLE):
        return EXIT_SESSION_FAILED
    return EXIT_OK


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Stream Valorant match telemetry to a Spectra ingest server."
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Directory that contains config.yaml/secrets.yaml (default: repo config/).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Python logging level (default: logging.level from config, else INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help=f"Rotating log file (default: {DEFAULT_LOG_FILE}).",
    )
    parser.add_argument("--observer-name", default=None, help="Observer name to authenticate as.")
    parser.add_argument("--group-code", default=None, help="Group code of the match session.")
    parser.add_argument("--ingest-url", default=None, help="WebSocket URL of the ingest server.")
    parser.add_argument(
        "--no-gateway",
        action="store_true",
        help="Do not serve the HTTP/WebSocket feed gateway.",
    )
    parser.add_argument(
        "--no-metrics",
        action="store_true",
        help="Do not start the Prometheus exporter.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level or "INFO")
    try:
        config_service = ConfigService(config_dir=args.config_dir)
        overrides = build_overrides(args)
        if overrides:
            config_service.apply_changes(overrides)
        apply_logging_settings(config_service.snapshot, level_override=args.log_level)
        connector = asyncio.run(run_session(config_service))
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user.")
        return EXIT_OK
    except ConfigError as exc:
        LOGGER.error("Configuration failed: %s", exc)
        return EXIT_CONFIG_ERROR
    except Exception:  # pragma: no cover - surfaced to operator
        LOGGER.exception("Spectra client crashed.")
        return EXIT_SESSION_FAILED
    return exit_code_for(connector)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = [
    "build_overrides",
    "configure_logging",
    "exit_code_for",
    "main",
    "parse_args",
    "run_session",
]
