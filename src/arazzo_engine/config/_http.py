"""Configuration of the HTTP step executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from arazzo_engine.config._error import ConfigError

DEFAULT_TIMEOUT = 30.0
DEFAULT_FALLBACK_PORT = 8080


@dataclass
class HttpConfig:
    """Transport settings for remote operations."""

    timeout: float
    verify_ssl: bool
    base_url: str | None
    fallback_port: int
    headers: dict[str, str]

    __slots__ = ("timeout", "verify_ssl", "base_url", "fallback_port", "headers")

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        base_url: str | None = None,
        fallback_port: int = DEFAULT_FALLBACK_PORT,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.base_url = base_url
        self.fallback_port = fallback_port
        self.headers = headers or {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HttpConfig:
        timeout = data.get("timeout", DEFAULT_TIMEOUT)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"http.timeout must be a positive number, got {timeout!r}")
        fallback_port = data.get("fallback-port", DEFAULT_FALLBACK_PORT)
        if isinstance(fallback_port, bool) or not isinstance(fallback_port, int) or not 0 < fallback_port < 65536:
            raise ConfigError(f"http.fallback-port must be a valid port number, got {fallback_port!r}")
        headers = data.get("headers", {})
        if not isinstance(headers, dict) or not all(isinstance(value, str) for value in headers.values()):
            raise ConfigError("http.headers must be a table of strings")
        return cls(
            timeout=float(timeout),
            verify_ssl=data.get("verify-ssl", True),
            base_url=data.get("base-url"),
            fallback_port=fallback_port,
            headers=dict(headers),
        )

    def update(
        self,
        *,
        timeout: float | None = None,
        verify_ssl: bool | None = None,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        if timeout is not None:
            self.timeout = timeout
        if verify_ssl is not None:
            self.verify_ssl = verify_ssl
        if base_url is not None:
            self.base_url = base_url
        if headers is not None:
            self.headers = {**self.headers, **headers}
