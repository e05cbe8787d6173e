"""
Configuration management: config.yaml, .env and environment overrides.
"""

from csvferry.config.loader import Config, load_config
from csvferry.config.resolver import resolve_config
from csvferry.config.settings import Settings

__all__ = [
    "load_config",
    "Config",
    "resolve_config",
    "Settings",
]
