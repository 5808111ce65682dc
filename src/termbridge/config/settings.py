"""
config/settings.py — termbridge Runtime Settings

Merges config.yaml (defaults/structure) with .env and TERMBRIDGE_* env vars.
Pydantic-powered: all fields are validated and typed.

  - GatewayConfig rejects out-of-range ports and non-absolute WebSocket paths
  - NormalizerConfig rejects prompt patterns that do not compile
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a human-readable list of every problem found
  - load_settings() respects TERMBRIDGE_CONFIG as a fallback when no explicit
    config_path argument is given

The serial vendor allow-list and baud-rate priority list are not settings;
they are constants of transport/discovery.py.
"""

from __future__ import annotations

import os
import re
import threading as _threading
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# Prompt line of the zsh/kali two-line theme:  ┌──(user㉿host)-[~]  /  └─#
DEFAULT_PROMPT_PATTERN = r"^(\x1B\[.*?m)?(┌──\(.*?\)-\[.*?\]|└─# ?)$"


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class GatewayConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 3002
    path: str = "/ws"
    health_interval_seconds: float = 30.0
    ping_timeout_seconds: float = 10.0
    max_connections: int = 50
    max_message_bytes: int = 2**20
    tls_cert_path: Optional[str] = None
    tls_key_path: Optional[str] = None

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not (1 <= v <= 65535):
            raise ValueError(f"gateway.port must be between 1 and 65535, got {v}")
        return v

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"gateway.path must start with '/', got '{v}'")
        return v

    @field_validator("health_interval_seconds")
    @classmethod
    def _positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("gateway.health_interval_seconds must be > 0")
        return v

    @field_validator("ping_timeout_seconds")
    @classmethod
    def _positive_ping_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("gateway.ping_timeout_seconds must be > 0")
        return v

    @field_validator("max_connections")
    @classmethod
    def _positive_connections(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway.max_connections must be >= 1")
        return v

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert_path and self.tls_key_path)


class ShellConfig(BaseModel):
    default_port: int = 22
    ready_timeout_seconds: float = 30.0
    keepalive_interval_seconds: int = 10
    term: str = "xterm-256color"

    @field_validator("ready_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("shell.ready_timeout_seconds must be > 0")
        return v


class SerialConfig(BaseModel):
    read_timeout_seconds: float = 0.1
    write_timeout_seconds: float = 1.0


class SessionConfig(BaseModel):
    dedup_capacity: int = 1000

    @field_validator("dedup_capacity")
    @classmethod
    def _positive_capacity(cls, v: int) -> int:
        if v < 1:
            raise ValueError("session.dedup_capacity must be >= 1")
        return v


class NormalizerConfig(BaseModel):
    banner_marker: str = "Last login"
    prompt_pattern: str = DEFAULT_PROMPT_PATTERN

    @field_validator("prompt_pattern")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"normalizer.prompt_pattern is not a valid regex: {exc}") from exc
        return v

    @property
    def prompt_regex(self) -> re.Pattern[str]:
        return re.compile(self.prompt_pattern)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 50
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

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
    termbridge runtime settings.

    Sources: keyword arguments (from config.yaml), TERMBRIDGE_* environment
    variables (nested with "__", e.g. TERMBRIDGE_GATEWAY__PORT=8443), the
    .env file, then field defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="TERMBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    serial: SerialConfig = Field(default_factory=SerialConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Field validators catch type/value errors at parse time; this method
        catches cross-field and filesystem problems they cannot see.
        """
        errors: list[str] = []

        # ── TLS: both halves or neither ─────────────────────────────────────
        cert, key = self.gateway.tls_cert_path, self.gateway.tls_key_path
        if bool(cert) != bool(key):
            errors.append(
                "gateway.tls_cert_path and gateway.tls_key_path must be set "
                "together (or both left empty for plain ws://)."
            )
        for label, path in (("tls_cert_path", cert), ("tls_key_path", key)):
            if path and not Path(path).expanduser().is_file():
                errors.append(f"gateway.{label} '{path}' does not exist.")

        # ── Health sweep interval ───────────────────────────────────────────
        if self.gateway.health_interval_seconds < 1:
            errors.append(
                "gateway.health_interval_seconds below 1s would terminate "
                "healthy clients before they can answer a ping."
            )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\ntermbridge startup failed: {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your environment "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {"gateway", "shell", "serial", "session", "normalizer", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. TERMBRIDGE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("TERMBRIDGE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the global Settings singleton, loading defaults on first use."""
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(**{
                k: v for k, v in _load_yaml(_resolve_config_path(None)).items()
                if k in _KNOWN_SECTIONS
            })
    return _singleton
