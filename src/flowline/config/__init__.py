"""Configuration module for Flowline.

This module holds the Pydantic policy models used by the workflow builder
and the YAML loader for engine settings.
"""

from flowline.config.loader import SettingsLoader, load_settings, resolve_env_vars
from flowline.config.schema import (
    EngineSettings,
    ForEachOptions,
    LoopOptions,
    RetryConfig,
    parse_duration,
)

__all__ = [
    # Loader
    "SettingsLoader",
    "load_settings",
    "resolve_env_vars",
    # Schema models
    "EngineSettings",
    "ForEachOptions",
    "LoopOptions",
    "RetryConfig",
    "parse_duration",
]
