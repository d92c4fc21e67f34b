"""Engine configuration loaded from `arazzo-engine.toml`."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from arazzo_engine.config._error import ConfigError
from arazzo_engine.config._http import HttpConfig
from arazzo_engine.config._retry import RetryConfig

if sys.version_info < (3, 11):
    import tomli as tomllib
else:
    import tomllib

__all__ = ["CONFIG_FILE_NAME", "ConfigError", "EngineConfig", "HttpConfig", "RetryConfig"]

CONFIG_FILE_NAME = "arazzo-engine.toml"
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")
KNOWN_KEYS = {"log-level", "http", "retry"}


@dataclass
class EngineConfig:
    """Top-level configuration."""

    log_level: str
    http: HttpConfig
    retry: RetryConfig
    config_path: str | None

    __slots__ = ("log_level", "http", "retry", "config_path")

    def __init__(
        self,
        *,
        log_level: str = "INFO",
        http: HttpConfig | None = None,
        retry: RetryConfig | None = None,
        config_path: str | None = None,
    ) -> None:
        self.log_level = log_level
        self.http = http or HttpConfig()
        self.retry = retry or RetryConfig()
        self.config_path = config_path

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_path: str | None = None) -> EngineConfig:
        unknown = sorted(set(data) - KNOWN_KEYS)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        log_level = str(data.get("log-level", "INFO")).upper()
        if log_level not in LOG_LEVELS:
            raise ConfigError(f"log-level must be one of {', '.join(LOG_LEVELS)}, got {data['log-level']!r}")
        for section in ("http", "retry"):
            if not isinstance(data.get(section, {}), dict):
                raise ConfigError(f"[{section}] must be a table")
        return cls(
            log_level=log_level,
            http=HttpConfig.from_dict(data.get("http", {})),
            retry=RetryConfig.from_dict(data.get("retry", {})),
            config_path=config_path,
        )

    @classmethod
    def from_str(cls, content: str, config_path: str | None = None) -> EngineConfig:
        try:
            data = tomllib.loads(content)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML: {exc}") from exc
        return cls.from_dict(data, config_path=config_path)

    @classmethod
    def from_path(cls, path: str | os.PathLike[str]) -> EngineConfig:
        """Load configuration from a file.

        Raises:
            FileNotFoundError: If the file does not exist.
            ConfigError: If the content is not valid.
        """
        with open(path, encoding="utf-8") as fd:
            return cls.from_str(fd.read(), config_path=str(path))

    @classmethod
    def discover(cls, directory: str | os.PathLike[str] | None = None) -> EngineConfig:
        """Load `arazzo-engine.toml` from the directory if present, otherwise the defaults."""
        candidate = Path(directory or os.getcwd()) / CONFIG_FILE_NAME
        if candidate.is_file():
            return cls.from_path(candidate)
        return cls()

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level)

    def update(self, *, log_level: str | None = None) -> None:
        if log_level is not None:
            self.log_level = log_level.upper()
