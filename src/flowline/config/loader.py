# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Loads EngineSettings from a YAML file or string.

Settings may sit at the top of the document or under an ``engine:`` key.
String values may reference the environment as ``${NAME}`` or
``${NAME:-fallback}``; references are expanded before validation.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from flowline.config.schema import EngineSettings
from flowline.exceptions import ConfigurationError

ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

MAX_EXPANSION_DEPTH = 10


def resolve_env_vars(value: str, max_depth: int = MAX_EXPANSION_DEPTH) -> str:
    """Expand ``${NAME}`` and ``${NAME:-fallback}`` references in ``value``.

    An expanded value that itself holds references is expanded again, at
    most ``max_depth`` times.

    Raises:
        ConfigurationError: If a variable without a fallback is unset, or
            expansion is still unfinished after ``max_depth`` rounds.
    """
    if max_depth <= 0:
        raise ConfigurationError(
            f"Exceeded recursion depth expanding environment references in: {value}",
            suggestion="Look for variables that refer to each other",
        )

    def expand(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        if name in os.environ:
            return os.environ[name]
        if fallback is not None:
            return fallback
        raise ConfigurationError(
            f"Required environment variable '{name}' is not set",
            suggestion=f"Export {name} or write ${{{name}:-value}} to give it a fallback",
        )

    expanded = ENV_VAR_PATTERN.sub(expand, value)
    if ENV_VAR_PATTERN.search(expanded):
        return resolve_env_vars(expanded, max_depth - 1)
    return expanded


def _expand_all(data: Any) -> Any:
    if isinstance(data, dict):
        return {key: _expand_all(item) for key, item in data.items()}
    if isinstance(data, list):
        return [_expand_all(item) for item in data]
    if isinstance(data, str):
        return resolve_env_vars(data)
    return data


class SettingsLoader:
    """Reads engine settings with a safe ruamel.yaml parser."""

    def __init__(self) -> None:
        self._yaml = YAML(typ="safe")

    def load(self, path: str | Path) -> EngineSettings:
        """Load settings from ``path``.

        Raises:
            ConfigurationError: If the file is missing or unreadable, or its
                content is rejected by ``load_string``.
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigurationError(
                f"Settings file not found: {path}",
                suggestion="Pass the path of an existing YAML file",
            )
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read settings file '{path}': {e}") from e
        return self.load_string(content, source_path=path)

    def load_string(self, content: str, source_path: Path | None = None) -> EngineSettings:
        """Parse and validate settings from YAML text.

        An empty document yields ``EngineSettings()``.

        Raises:
            ConfigurationError: On YAML syntax errors, a non-mapping document,
                unset environment references or invalid setting values.
        """
        source = str(source_path) if source_path else "<string>"
        try:
            data = self._yaml.load(content)
        except YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            where = f" at line {mark.line + 1}, column {mark.column + 1}" if mark else ""
            raise ConfigurationError(
                f"Invalid YAML syntax in '{source}'{where}: {e}",
                suggestion="Check indentation and brackets around the reported position",
            ) from e

        if data is None:
            return EngineSettings()
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Invalid settings in '{source}': expected a mapping, "
                f"got {type(data).__name__}",
                suggestion="Write settings as 'name: value' pairs",
            )
        if "engine" in data:
            data = data["engine"] or {}
        return self._validate(_expand_all(data), source)

    def _validate(self, data: dict[str, Any], source: str) -> EngineSettings:
        try:
            return EngineSettings.model_validate(data)
        except PydanticValidationError as e:
            problems = [
                (".".join(str(part) for part in error["loc"]), error["msg"])
                for error in e.errors()
            ]
            raise ConfigurationError(
                f"Invalid engine settings in '{source}':\n"
                + "\n".join(f"  - {loc}: {msg}" for loc, msg in problems),
                suggestion="See EngineSettings for the accepted fields and values",
                field_path=problems[0][0] if problems else None,
            ) from e


def load_settings(path: str | Path) -> EngineSettings:
    """Load engine settings from a YAML file."""
    return SettingsLoader().load(path)
