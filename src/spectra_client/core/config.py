"""
Dynaconf-powered configuration loader with Pydantic validation.

The configuration service loads the layered YAML files from the config
directory (``config.yaml`` then ``secrets.yaml``), lets ``SPECTRA_*``
environment variables override them, validates the result, and produces
`ModuleConfig` instances so the entrypoint can wire modules without
hand-written dictionaries.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .contracts import BaseModule, ModuleConfig
from .protocol import SessionIdentity, TeamDescriptor


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    """Case-insensitive dictionary lookup helper."""
    value = raw.get(key) or raw.get(key.upper()) or raw.get(key.lower())
    if isinstance(value, dict):
        return value
    return {}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge dictionaries without mutating the originals."""
    result: dict[str, Any] = {**base}
    for key, value in updates.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _lower_keys(raw: dict[str, Any]) -> dict[str, Any]:
    """Dynaconf upper-cases top-level keys; fold them back for merging."""
    return {str(key).lower(): value for key, value in raw.items()}


CONFIG_FILENAMES = ("config.yaml", "secrets.yaml")
_REPO_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_CONFIG_DIR = _REPO_ROOT / "config"


class ConfigError(RuntimeError):
    """Raised when configuration files are missing or invalid."""


class IngestSettings(BaseModel):
    """Where the ingest server lives and how long to wait for it."""

    model_config = ConfigDict(extra="ignore")

    url: str = Field(default="ws://localhost:5100/ingest")
    open_timeout_seconds: float = Field(default=10.0, gt=0.0)
    close_timeout_seconds: float = Field(default=5.0, gt=0.0)

    @field_validator("url")
    @classmethod
    def _websocket_scheme(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("ingest url must use the ws:// or wss:// scheme")
        return value


class TeamSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="")
    tricode: str = Field(default="")
    url: str = Field(default="")


class SessionSettings(BaseModel):
    """Observer identity sent once in the authentication frame."""

    model_config = ConfigDict(extra="ignore")

    observer_name: str = Field(default="")
    group_code: str = Field(default="")
    left_team: TeamSettings = Field(default_factory=TeamSettings)
    right_team: TeamSettings = Field(default_factory=TeamSettings)

    @field_validator("observer_name", "group_code", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @property
    def complete(self) -> bool:
        return bool(self.observer_name and self.group_code)

    def identity(self) -> SessionIdentity:
        if not self.complete:
            raise ConfigError("session.observer_name and session.group_code must be set.")
        return SessionIdentity(
            player_name=self.observer_name,
            group_code=self.group_code,
            left_team=TeamDescriptor(**self.left_team.model_dump()),
            right_team=TeamDescriptor(**self.right_team.model_dump()),
        )


class FeedSettings(BaseModel):
    """Provider feed filtering and bus routing."""

    model_config = ConfigDict(extra="ignore")

    game_id: int | None = Field(default=21640)
    terminal_phase: str = Field(default="game_end")
    info_topic: str = Field(default="feed.info")
    game_topic: str = Field(default="feed.game")
    map_aliases: dict[str, str] = Field(default_factory=lambda: {"Infinity": "Infinityy"})


class FeedGatewaySettings(BaseModel):
    """Local HTTP/WebSocket intake surface configuration."""

    model_config = ConfigDict(extra="ignore")

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=5101, ge=1, le=65535)
    serve_http: bool = Field(default=True)
    buffer_size: int = Field(default=16, ge=1)


class PrometheusSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = Field(default=True)
    addr: str = Field(default="127.0.0.1")
    port: int = Field(default=9093, ge=1, le=65535)


class LoggingSettings(BaseModel):
    """Console and rotating-file logging preferences."""

    model_config = ConfigDict(extra="ignore")

    level: str = Field(default="INFO")
    file: str | None = Field(default="logs/spectra_client.log")
    max_mb: float = Field(default=10.0, gt=0.0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> str:
        return str(value or "INFO").upper()


class ConfigSnapshot(BaseModel):
    """
    Validated, strongly typed view of the merged configuration.

    Provides helpers to derive per-module configuration dictionaries.
    """

    model_config = ConfigDict(extra="ignore")

    ingest: IngestSettings = Field(default_factory=IngestSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    feed_gateway: FeedGatewaySettings = Field(default_factory=FeedGatewaySettings)
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    health_interval_seconds: float = Field(default=5.0, gt=0.0)

    def module_config(self, module_name: str) -> ModuleConfig:
        """Produce a ModuleConfig tailored for the requested module."""

        def _connector_config() -> ModuleConfig:
            options: dict[str, Any] = {
                "url": self.ingest.url,
                "open_timeout_seconds": self.ingest.open_timeout_seconds,
                "close_timeout_seconds": self.ingest.close_timeout_seconds,
            }
            if self.session.complete:
                options["identity"] = self.session.identity()
            return ModuleConfig(options=options)

        def _dispatcher_config() -> ModuleConfig:
            return ModuleConfig(
                options={
                    "info_topic": self.feed.info_topic,
                    "game_topic": self.feed.game_topic,
                    "game_id": self.feed.game_id,
                    "terminal_phase": self.feed.terminal_phase,
                    "map_aliases": dict(self.feed.map_aliases),
                }
            )

        def _feed_gateway_config() -> ModuleConfig:
            gateway = self.feed_gateway
            return ModuleConfig(
                options={
                    "host": gateway.host,
                    "port": gateway.port,
                    "serve_http": gateway.serve_http,
                    "buffer_size": gateway.buffer_size,
                    "info_topic": self.feed.info_topic,
                    "game_topic": self.feed.game_topic,
                }
            )

        def _prometheus_exporter_config() -> ModuleConfig:
            return ModuleConfig(
                enabled=self.prometheus.enabled,
                options={
                    "port": self.prometheus.port,
                    "addr": self.prometheus.addr,
                    "bus_topic": "status.bus",
                    "health_topic": "status.health.summary",
                },
            )

        builders: dict[str, Callable[[], ModuleConfig]] = {
            "modules.session.connector": _connector_config,
            "modules.feed.dispatcher": _dispatcher_config,
            "modules.dashboard.feed_gateway": _feed_gateway_config,
            "modules.status.prometheus_exporter": _prometheus_exporter_config,
        }

        try:
            builder = builders[module_name]
        except KeyError as exc:
            raise KeyError(f"No module configuration defined for {module_name}") from exc
        return builder()


class ConfigService:
    """
    Runtime facade for loading, validating, and distributing configuration.
    """

    def __init__(
        self,
        *,
        config_dir: str | Path | None = None,
        settings: Dynaconf | None = None,
    ) -> None:
        self._config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        settings_files = [self._config_dir / name for name in CONFIG_FILENAMES]
        existing_files = [str(path) for path in settings_files if path.exists()]
        if settings is None and not existing_files:
            raise ConfigError(
                f"No configuration files found in {self._config_dir}. "
                "Expected at least config.yaml."
            )

        self._settings = settings or Dynaconf(
            envvar_prefix="SPECTRA",
            settings_files=existing_files,
            load_dotenv=True,
            environments=False,
            merge_enabled=True,
        )
        self._overrides: dict[str, Any] = {}
        self._snapshot = self._build_snapshot()

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def snapshot(self) -> ConfigSnapshot:
        """Latest validated configuration snapshot."""
        return self._snapshot

    def refresh(self) -> ConfigSnapshot:
        """Reload configuration files and rebuild the snapshot, keeping overrides."""
        self._settings.reload()
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def apply_changes(self, changes: dict[str, Any]) -> ConfigSnapshot:
        """
        Merge the provided changes into the current configuration snapshot.

        Changes are kept in memory only; the files on disk are not touched.
        """
        overrides = _deep_merge(self._overrides, changes)
        snapshot = self._build_snapshot(overrides)
        self._overrides = overrides
        self._snapshot = snapshot
        return self._snapshot

    def _resolve_module_name(self, module: str | type[BaseModule] | BaseModule) -> str:
        if isinstance(module, BaseModule):
            return module.name
        if isinstance(module, str):
            return module
        return getattr(module, "name", module.__name__)

    def module_config_for(self, module: str | type[BaseModule] | BaseModule) -> ModuleConfig:
        """
        Convenient wrapper around ConfigSnapshot.module_config that accepts
        module names, classes, or instances.
        """
        module_name = self._resolve_module_name(module)
        return self._snapshot.module_config(module_name)

    def _build_snapshot(self, overrides: dict[str, Any] | None = None) -> ConfigSnapshot:
        raw = _lower_keys(self._settings.as_dict())
        merged = _deep_merge(raw, overrides if overrides is not None else self._overrides)
        data = self._extract_snapshot_data(merged)
        try:
            return ConfigSnapshot.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed: {exc}") from exc

    def _extract_snapshot_data(self, raw: dict[str, Any]) -> dict[str, Any]:
        data: dict[str, Any] = {
            "ingest": _section(raw, "ingest"),
            "session": _section(raw, "session"),
            "feed": _section(raw, "feed"),
            "feed_gateway": _section(raw, "feed_gateway"),
            "prometheus": _section(raw, "prometheus"),
            "logging": _section(raw, "logging"),
        }
        interval = raw.get("health_interval_seconds")
        if interval is not None:
            data["health_interval_seconds"] = interval
        return data


__all__ = [
    "CONFIG_FILENAMES",
    "DEFAULT_CONFIG_DIR",
    "ConfigError",
    "ConfigService",
    "ConfigSnapshot",
    "FeedGatewaySettings",
    "FeedSettings",
    "IngestSettings",
    "LoggingSettings",
    "PrometheusSettings",
    "SessionSettings",
    "TeamSettings",
]
