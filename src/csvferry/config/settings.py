"""
Validated runtime settings.

Flattens a :class:`Config` plus the process environment into one frozen
dataclass. Environment variables win over file values, matching the
variable names the service has always been deployed with.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from csvferry.config.loader import Config
from csvferry.exceptions import ConfigurationError
from csvferry.transfer.planner import default_arg_budget

# Environment variable -> dotted config key
ENV_OVERRIDES: dict[str, str] = {
    "SOURCE_DIR": "watch.source_dir",
    "CSV_EVENT_WAIT_SECONDS": "watch.wait_seconds",
    "CSV_EVENT_UPPER_LIMIT": "watch.upper_limit",
    "TEMPLATE_DIR": "templates.dir",
    "DEST_HOST": "remote.host",
    "DEST_USER": "remote.user",
    "DEST_DIR": "remote.dir",
    "DEST_IDENTITY_FILE": "remote.identity_file",
    "FILE_SUFFIX": "manifest.rename_format",
    "TRANSFER_ARG_BUDGET": "transfer.arg_budget",
    "TRANSFER_TIMEOUT_SECONDS": "transfer.timeout_seconds",
    "TRANSFER_MAX_ATTEMPTS": "transfer.max_attempts",
    "UPLOAD_LOG": "upload_log.path",
    "LOG_LEVEL": "logging.level",
}

RETRY_BACKOFF_MODES = ("fixed", "exponential")


@dataclass(frozen=True)
class Settings:
    """Everything the watch service needs, validated once at startup."""

    source_dir: Path
    template_dir: Path
    remote_host: str
    remote_user: str
    remote_dir: str
    identity_file: str | None = None

    # Batching
    wait_seconds: float = 5.0
    upper_limit: int = 100
    extension: str = ".csv"
    polling: bool = False
    queue_size: int = 1000
    poll_interval: float = 1.0

    # Matching / manifests
    template_suffix: str = "_template"
    rename_format: str | None = None

    # Dispatch
    arg_budget: int = field(default_factory=default_arg_budget)
    timeout_seconds: float = 300.0
    max_attempts: int = 3
    retry_delay_seconds: float = 1.0
    retry_backoff: str = "fixed"
    retry_max_delay_seconds: float = 30.0
    max_workers: int = 4
    delete_after_upload: bool = True

    upload_log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.wait_seconds < 0:
            raise ConfigurationError("watch.wait_seconds must be >= 0")
        if self.upper_limit < 1:
            raise ConfigurationError("watch.upper_limit must be >= 1")
        if self.queue_size < 1:
            raise ConfigurationError("watch.queue_size must be >= 1")
        if self.poll_interval <= 0:
            raise ConfigurationError("watch.poll_interval must be > 0")
        if not self.extension.startswith("."):
            raise ConfigurationError(f"watch.extension must start with '.', got {self.extension!r}")
        if self.arg_budget < 1:
            raise ConfigurationError("transfer.arg_budget must be >= 1")
        if self.timeout_seconds <= 0:
            raise ConfigurationError("transfer.timeout_seconds must be > 0")
        if self.max_attempts < 1:
            raise ConfigurationError("transfer.max_attempts must be >= 1")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("transfer.retry_delay_seconds must be >= 0")
        if self.retry_backoff not in RETRY_BACKOFF_MODES:
            raise ConfigurationError(
                f"transfer.retry_backoff must be one of {RETRY_BACKOFF_MODES}, got {self.retry_backoff!r}"
            )
        if self.max_workers < 1:
            raise ConfigurationError("transfer.max_workers must be >= 1")

    @property
    def resolved_upload_log_path(self) -> Path:
        """Upload log location, defaulting to ``upload.log`` in the watched root."""
        return self.upload_log_path or self.source_dir / "upload.log"

    @classmethod
    def from_config(cls, config: Config, environ: Mapping[str, str] | None = None) -> Settings:
        """
        Build settings from a loaded config and the environment.

        Args:
            config: Loaded configuration
            environ: Environment mapping (default: os.environ)

        Returns:
            Validated Settings

        Raises:
            ConfigurationError: On missing required values or malformed numbers
        """
        merged = apply_env_overrides(config.data, os.environ if environ is None else environ)
        cfg = Config(merged)

        kwargs: dict[str, Any] = {
            "source_dir": Path(_required(cfg, "watch.source_dir")).expanduser(),
            "template_dir": Path(_required(cfg, "templates.dir")).expanduser(),
            "remote_host": str(_required(cfg, "remote.host")),
            "remote_user": str(_required(cfg, "remote.user")),
            "remote_dir": str(_required(cfg, "remote.dir")),
            "identity_file": _expand(_optional_str(cfg, "remote.identity_file")),
            "rename_format": _optional_str(cfg, "manifest.rename_format"),
        }

        _put(kwargs, "wait_seconds", cfg, "watch.wait_seconds", _as_float)
        _put(kwargs, "upper_limit", cfg, "watch.upper_limit", _as_int)
        _put(kwargs, "extension", cfg, "watch.extension", str)
        _put(kwargs, "polling", cfg, "watch.polling", _as_bool)
        _put(kwargs, "queue_size", cfg, "watch.queue_size", _as_int)
        _put(kwargs, "poll_interval", cfg, "watch.poll_interval", _as_float)
        _put(kwargs, "template_suffix", cfg, "templates.suffix", str)
        _put(kwargs, "arg_budget", cfg, "transfer.arg_budget", _as_int)
        _put(kwargs, "timeout_seconds", cfg, "transfer.timeout_seconds", _as_float)
        _put(kwargs, "max_attempts", cfg, "transfer.max_attempts", _as_int)
        _put(kwargs, "retry_delay_seconds", cfg, "transfer.retry_delay_seconds", _as_float)
        _put(kwargs, "retry_backoff", cfg, "transfer.retry_backoff", str)
        _put(kwargs, "retry_max_delay_seconds", cfg, "transfer.retry_max_delay_seconds", _as_float)
        _put(kwargs, "max_workers", cfg, "transfer.max_workers", _as_int)
        _put(kwargs, "delete_after_upload", cfg, "transfer.delete_after_upload", _as_bool)

        upload_log = _optional_str(cfg, "upload_log.path")
        if upload_log:
            kwargs["upload_log_path"] = Path(upload_log).expanduser()

        return cls(**kwargs)


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Return a copy of ``data`` with recognised environment variables applied."""
    merged = _deep_copy(data)
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        node = merged
        *parents, leaf = dotted.split(".")
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[leaf] = value
    return merged


def _deep_copy(data: dict[str, Any]) -> dict[str, Any]:
    return {k: _deep_copy(v) if isinstance(v, dict) else v for k, v in data.items()}


def _required(cfg: Config, key: str) -> Any:
    value = cfg.get(key)
    if value is None or value == "":
        env_names = [var for var, dotted in ENV_OVERRIDES.items() if dotted == key]
        hint = f" (or environment variable {env_names[0]})" if env_names else ""
        raise ConfigurationError(f"Missing required configuration '{key}'{hint}")
    return value


def _optional_str(cfg: Config, key: str) -> str | None:
    value = cfg.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _put(kwargs: dict[str, Any], name: str, cfg: Config, key: str, convert) -> None:
    value = cfg.get(key)
    if value is None:
        return
    try:
        kwargs[name] = convert(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for '{key}': {value!r} ({e})") from None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    return int(value)


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    return float(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ValueError("expected a boolean")


def _expand(path: str | None) -> str | None:
    return os.path.expanduser(path) if path else path
