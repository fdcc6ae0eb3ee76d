"""Engine configuration loading.

Configuration is YAML, merged from several locations with defined precedence
(highest first):

1. An explicit path (``--config``)
2. ``./.toolflow/config.yaml`` in the working directory
3. ``~/.toolflow/config.yaml``
4. The packaged defaults in ``toolflow/config/engine.yaml``
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent.parent


class ConfigError(Exception):
    """Invalid or unreadable engine configuration."""

    pass


class HttpSettings(BaseModel):
    """Defaults for outbound requests made by ApiCall nodes."""

    model_config = ConfigDict(extra="forbid")

    timeout_ms: int = Field(default=30000, gt=0)
    user_agent: str = "toolflow/0.1"
    max_response_bytes: int = Field(default=5 * 1024 * 1024, gt=0)


class GuardSettings(BaseModel):
    """Outbound request guard settings.

    ``blocked_hosts`` entries block the host itself and all of its subdomains.
    ``resolve_hostnames`` additionally checks every resolved address of a
    hostname before the request is made.
    """

    model_config = ConfigDict(extra="forbid")

    blocked_hosts: list[str] = Field(default_factory=list)
    resolve_hostnames: bool = False

    @field_validator("blocked_hosts")
    @classmethod
    def normalize_hosts(cls, v):
        return [h.strip().lower() for h in v if h and h.strip()]


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_call_depth: int = Field(default=5, ge=1)
    http: HttpSettings = Field(default_factory=HttpSettings)
    guard: GuardSettings = Field(default_factory=GuardSettings)


def _deep_merge(base: dict, override: dict) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigLoader:
    """Load engine configuration from YAML files with defined precedence."""

    STATIC_SEARCH_PATHS = [
        Path.home() / ".toolflow/config.yaml",
        PACKAGE_DIR / "config/engine.yaml",
    ]

    def __init__(self, config_path: Path | None = None, project_dir: Path | None = None) -> None:
        self._search_paths = self.STATIC_SEARCH_PATHS.copy()
        self._search_paths.insert(0, (project_dir or Path.cwd()) / ".toolflow/config.yaml")
        self._explicit = Path(config_path) if config_path else None
        if self._explicit is not None:
            self._search_paths.insert(0, self._explicit)

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _read(self, path: Path) -> dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Invalid config in {path}: {e}")
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Invalid config in {path}: expected a mapping")
        return data

    def load(self) -> EngineConfig:
        if self._explicit is not None and not self._explicit.exists():
            raise ConfigError(f"Config file not found: {self._explicit}")

        merged: dict[str, Any] = {}
        for path in reversed(self._search_paths):
            if not path.exists():
                continue
            logger.debug(f"Loading config from {path}")
            merged = _deep_merge(merged, self._read(path))

        try:
            return EngineConfig(**merged)
        except ValidationError as e:
            raise ConfigError(f"Invalid engine configuration: {e}")


def load_config(config_path: Path | None = None, project_dir: Path | None = None) -> EngineConfig:
    return ConfigLoader(config_path, project_dir).load()
