"""Shared store of resolved runtime expression values.

One cache is shared by every workflow of a run. Outputs published by a
workflow or a step are visible to everything executed after it.
"""

from __future__ import annotations

import threading
from typing import Any, Iterator


class ExpressionCache:
    """Thread-safe mapping from runtime expression text to its resolved value.

    `add` memoizes a resolution and never replaces an existing entry, while
    `publish` is used for outputs and always stores the latest value.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._lock = threading.RLock()
        self._values: dict[str, Any] = dict(initial or {})

    def add(self, expression: str, value: Any) -> Any:
        """Memoize a resolved value; the first value stored for an expression wins.

        Returns:
            The value held by the cache after the call.
        """
        if value is None:
            return self.lookup(expression)
        with self._lock:
            return self._values.setdefault(expression, value)

    def publish(self, expression: str, value: Any) -> None:
        """Store an output value, replacing whatever was there before."""
        with self._lock:
            self._values[expression] = value

    def lookup(self, expression: str) -> Any | None:
        with self._lock:
            return self._values.get(expression)

    def export(self) -> dict[str, Any]:
        """Return a snapshot copy of every stored entry."""
        with self._lock:
            return dict(self._values)

    def clear(self) -> None:
        with self._lock:
            self._values.clear()

    def __contains__(self, expression: object) -> bool:
        with self._lock:
            return expression in self._values

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self.export())
