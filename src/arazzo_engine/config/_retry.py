"""Configuration of retry waits."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from arazzo_engine.config._error import ConfigError


@dataclass
class RetryConfig:
    """How long a retry action may wait before re-running its step."""

    honor_retry_after: bool
    max_delay: float | None

    __slots__ = ("honor_retry_after", "max_delay")

    def __init__(self, *, honor_retry_after: bool = True, max_delay: float | None = None) -> None:
        self.honor_retry_after = honor_retry_after
        self.max_delay = max_delay

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        max_delay = data.get("max-delay")
        if max_delay is not None and (
            isinstance(max_delay, bool) or not isinstance(max_delay, (int, float)) or max_delay < 0
        ):
            raise ConfigError(f"retry.max-delay must be a non-negative number, got {max_delay!r}")
        return cls(
            honor_retry_after=data.get("honor-retry-after", True),
            max_delay=None if max_delay is None else float(max_delay),
        )

    def delay_for(self, seconds: float) -> float:
        """Cap a requested wait by `max_delay`."""
        if self.max_delay is not None:
            return min(seconds, self.max_delay)
        return seconds

    def update(self, *, honor_retry_after: bool | None = None, max_delay: float | None = None) -> None:
        if honor_retry_after is not None:
            self.honor_retry_after = honor_retry_after
        if max_delay is not None:
            self.max_delay = max_delay
