"""
Configuration file loading.

Loads ``config.yaml`` (plus an optional ``config.{env}.yaml`` overlay) and a
``.env`` file from the project directory. Environment variables are applied
later, by :class:`csvferry.config.settings.Settings`.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from csvferry.config.resolver import resolve_config
from csvferry.exceptions import ConfigurationError


class Config:
    """csvferry configuration container with dict-like access."""

    def __init__(self, data: dict[str, Any]):
        self.data = data
        # Convenience properties for common config sections
        self.watch = data.get("watch") or {}
        self.remote = data.get("remote") or {}
        self.transfer = data.get("transfer") or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation."""
        keys = key.split(".")
        value = self.data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default
        return value

    def __getitem__(self, key: str) -> Any:
        """Dict-like access: config['key'] or config['nested.key']."""
        if isinstance(key, str) and "." in key:
            return self.get(key)
        if key in self.data:
            value = self.data[key]
            # Return nested dicts as Config objects for chaining
            if isinstance(value, dict):
                return Config(value)
            return value
        raise KeyError(f"Config key '{key}' not found")

    def __contains__(self, key: str) -> bool:
        """Check if key exists in config."""
        if isinstance(key, str) and "." in key:
            value = self.data
            for k in key.split("."):
                if not isinstance(value, dict) or k not in value:
                    return False
                value = value[k]
            return True
        return key in self.data

    def __iter__(self) -> "Iterator[str]":
        """Iterate over top-level keys."""
        return iter(self.data)

    def keys(self):
        """Get top-level keys."""
        return self.data.keys()

    def validate(self) -> None:
        """Validate configuration structure."""
        errors = []

        if not isinstance(self.data, dict):
            errors.append(f"Configuration must be a dictionary/mapping, got {type(self.data).__name__}")
            raise ConfigurationError("\n".join(errors))

        for section in ("watch", "templates", "remote", "transfer", "manifest", "upload_log", "logging"):
            value = self.data.get(section)
            if value is not None and not isinstance(value, dict):
                errors.append(f"Configuration '{section}' must be a dictionary, got {type(value).__name__}")

        if errors:
            raise ConfigurationError("\n".join(errors))


def load_config(
    project_path: Path | None = None,
    env: str | None = None,
    config_file: Path | None = None,
) -> Config:
    """
    Load csvferry configuration.

    A missing ``config.yaml`` is not an error: the service can be configured
    purely through environment variables. An explicitly requested
    ``config_file`` must exist.

    Args:
        project_path: Directory holding config.yaml and .env (default: current directory)
        env: Environment name (dev, staging, prod) selecting config.{env}.yaml
        config_file: Explicit config file path, overrides project_path/config.yaml

    Returns:
        Config instance with merged configuration

    Raises:
        ConfigurationError: If the file is unreadable or not valid YAML
    """
    if project_path is None:
        project_path = Path.cwd()

    # .env values never override variables already set in the process
    load_dotenv(project_path / ".env", override=False)

    if config_file is not None:
        if not Path(config_file).is_file():
            raise ConfigurationError(f"Configuration file not found: {config_file}")
        base_config_path = Path(config_file)
    else:
        base_config_path = project_path / "config.yaml"

    config_data: dict[str, Any] = {}
    if base_config_path.is_file():
        config_data = _read_yaml(base_config_path)

    if env:
        env_config_path = base_config_path.parent / f"config.{env}.yaml"
        if env_config_path.is_file():
            _merge_dict(config_data, _read_yaml(env_config_path))

    config_data = resolve_config(config_data, env or "dev")

    config = Config(config_data)
    config.validate()
    return config


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        if hasattr(e, "problem_mark"):
            mark = e.problem_mark
            raise ConfigurationError(
                f"Error parsing {path.name} at line {mark.line + 1}, column {mark.column + 1}:\n"
                f"  {e}\n"
                f"  File: {path}\n"
                f"  Suggestion: Check YAML syntax, ensure proper indentation and quotes"
            ) from e
        raise ConfigurationError(f"Error parsing {path.name}: {e}\n  File: {path}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration must be a dictionary/mapping, got {type(data).__name__}")
    return data


def _merge_dict(base: dict, override: dict):
    """Recursively merge override into base."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dict(base[key], value)
        else:
            base[key] = value
