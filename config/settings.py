"""
config/settings.py — Team Control Runtime Settings

Merges config.yaml (defaults/structure) with environment variables / .env.
Pydantic-powered — all fields are validated and typed.

  - ProtocolConfig validates the protocol range and handshake descriptor
  - HealthConfig rejects non-positive intervals and timeouts at parse time
  - DiscoveryConfig rejects out-of-range UDP/scan ports
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a clear, numbered list of every problem found
  - load_settings() respects the TEAMCONTROL_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import sys
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_ROLES = {"operator", "node"}
_VALID_CLIENT_MODES = {"backend", "cli", "ui", "webchat", "probe", "test"}


def _check_port(v: int, name: str) -> int:
    if not (1 <= v <= 65535):
        raise ValueError(f"{name} must be between 1 and 65535, got {v}")
    return v


def _check_positive(v: float, name: str) -> float:
    if v <= 0:
        raise ValueError(f"{name} must be > 0")
    return v


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolConfig(BaseModel):
    """Handshake descriptor sent in every `connect` request."""
    min_protocol: int = 3
    max_protocol: int = 3
    client_id: str = "team-control"
    client_display_name: str = "Team Control"
    client_version: str = "1.0.0"
    client_platform: str = Field(default_factory=lambda: sys.platform)
    client_mode: str = "backend"
    role: str = "operator"
    scopes: list[str] = Field(
        default_factory=lambda: ["operator.read", "operator.write", "operator.admin"]
    )
    caps: list[str] = Field(
        default_factory=lambda: ["sessions.list", "agents.list", "sessions.subscribe"]
    )

    @field_validator("min_protocol", "max_protocol")
    @classmethod
    def _positive_protocol(cls, v: int) -> int:
        if v < 1:
            raise ValueError("protocol versions must be >= 1")
        return v

    @field_validator("role")
    @classmethod
    def _valid_role(cls, v: str) -> str:
        if v not in _VALID_ROLES:
            raise ValueError(
                f"protocol.role must be one of {sorted(_VALID_ROLES)}, got '{v}'"
            )
        return v

    @field_validator("client_mode")
    @classmethod
    def _valid_mode(cls, v: str) -> str:
        if v not in _VALID_CLIENT_MODES:
            raise ValueError(
                f"protocol.client_mode must be one of "
                f"{sorted(_VALID_CLIENT_MODES)}, got '{v}'"
            )
        return v


class ConnectionConfig(BaseModel):
    reconnect_delay_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    handshake_timeout_seconds: float = 10.0
    open_timeout_seconds: float = 5.0
    max_message_bytes: int = 4 * 1024 * 1024

    @field_validator(
        "reconnect_delay_seconds",
        "request_timeout_seconds",
        "handshake_timeout_seconds",
        "open_timeout_seconds",
    )
    @classmethod
    def _positive_seconds(cls, v: float, info) -> float:
        return _check_positive(v, f"connection.{info.field_name}")


class HealthConfig(BaseModel):
    interval_seconds: float = 10.0
    ping_timeout_seconds: float = 5.0
    http_timeout_seconds: float = 5.0
    http_path: str = "/api/health"

    @field_validator("interval_seconds", "ping_timeout_seconds", "http_timeout_seconds")
    @classmethod
    def _positive_seconds(cls, v: float, info) -> float:
        return _check_positive(v, f"health.{info.field_name}")

    @field_validator("http_path")
    @classmethod
    def _leading_slash(cls, v: str) -> str:
        return v if v.startswith("/") else "/" + v


class StorageConfig(BaseModel):
    gateways_file: str = "./data/gateways.json"


class DiscoveryConfig(BaseModel):
    enabled: bool = True
    port: int = 18790
    broadcast_interval_seconds: float = 30.0
    broadcast_addresses: list[str] = Field(
        default_factory=lambda: [
            "255.255.255.255", "192.168.1.255", "192.168.0.255", "10.0.0.255",
        ]
    )
    scan_on_start: bool = True
    scan_ports: list[int] = Field(default_factory=lambda: [18789, 3000, 8080])
    scan_timeout_seconds: float = 2.0

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        return _check_port(v, "discovery.port")

    @field_validator("scan_ports")
    @classmethod
    def _valid_scan_ports(cls, v: list[int]) -> list[int]:
        for p in v:
            _check_port(p, "discovery.scan_ports")
        return v

    @field_validator("broadcast_interval_seconds", "scan_timeout_seconds")
    @classmethod
    def _positive_seconds(cls, v: float, info) -> float:
        return _check_positive(v, f"discovery.{info.field_name}")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: bool = False

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    Team Control runtime settings.

    Priority (highest to lowest):
      1. Environment variables  (e.g. HEALTH__INTERVAL_SECONDS=30)
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    protocol: ProtocolConfig = Field(default_factory=ProtocolConfig)
    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("protocol", mode="before")
    @classmethod
    def _coerce_protocol(cls, v: Any) -> Any:
        return ProtocolConfig(**v) if isinstance(v, dict) else v

    @field_validator("connection", mode="before")
    @classmethod
    def _coerce_connection(cls, v: Any) -> Any:
        return ConnectionConfig(**v) if isinstance(v, dict) else v

    @field_validator("health", mode="before")
    @classmethod
    def _coerce_health(cls, v: Any) -> Any:
        return HealthConfig(**v) if isinstance(v, dict) else v

    @field_validator("storage", mode="before")
    @classmethod
    def _coerce_storage(cls, v: Any) -> Any:
        return StorageConfig(**v) if isinstance(v, dict) else v

    @field_validator("discovery", mode="before")
    @classmethod
    def _coerce_discovery(cls, v: Any) -> Any:
        return DiscoveryConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def gateways_file(self) -> Path:
        return Path(self.storage.gateways_file)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems they can't see.
        """
        errors: list[str] = []

        if self.protocol.min_protocol > self.protocol.max_protocol:
            errors.append(
                f"protocol.min_protocol ({self.protocol.min_protocol}) must not "
                f"exceed protocol.max_protocol ({self.protocol.max_protocol})."
            )

        if self.health.ping_timeout_seconds >= self.health.interval_seconds:
            errors.append(
                "health.ping_timeout_seconds must be shorter than "
                "health.interval_seconds, otherwise probes overlap."
            )

        if self.health.http_timeout_seconds >= self.health.interval_seconds:
            errors.append(
                "health.http_timeout_seconds must be shorter than "
                "health.interval_seconds, otherwise probes overlap."
            )

        if not self.protocol.client_id.strip():
            errors.append("protocol.client_id must not be empty.")

        if not self.storage.gateways_file.strip():
            errors.append("storage.gateways_file must not be empty.")

        if self.discovery.enabled and not self.discovery.broadcast_addresses:
            errors.append(
                "discovery.broadcast_addresses is empty while discovery is "
                "enabled. Add an address or set discovery.enabled: false."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nTeam Control startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"protocol", "connection", "health", "storage", "discovery", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. TEAMCONTROL_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TEAMCONTROL_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    resolved_path = _resolve_config_path(config_path)
    yaml_data = _load_yaml(resolved_path)

    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading it from the default
    config path on first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()
