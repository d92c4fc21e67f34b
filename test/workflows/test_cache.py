"""Tests for arazzo_engine.workflows.cache module."""
from __future__ import annotations

import threading

from arazzo_engine.workflows.cache import ExpressionCache


class TestExpressionCache:
    """Tests for ExpressionCache."""

    def test_lookup_missing_returns_none(self):
        cache = ExpressionCache()
        assert cache.lookup("$inputs.user") is None
        assert "$inputs.user" not in cache

    def test_add_is_write_once(self):
        cache = ExpressionCache()
        assert cache.add("$steps.a.outputs.id", "1") == "1"
        assert cache.add("$steps.a.outputs.id", "2") == "1"
        assert cache.lookup("$steps.a.outputs.id") == "1"

    def test_add_ignores_none(self):
        cache = ExpressionCache()
        cache.add("$steps.a.outputs.id", None)
        assert len(cache) == 0

    def test_publish_overwrites(self):
        cache = ExpressionCache()
        cache.add("$steps.a.outputs.id", "1")
        cache.publish("$steps.a.outputs.id", "2")
        assert cache.lookup("$steps.a.outputs.id") == "2"

    def test_same_value_under_different_keys(self):
        cache = ExpressionCache()
        cache.add("$sourceDescriptions.api.url", "x")
        cache.add("$workflows.w.summary", "x")
        assert len(cache) == 2

    def test_export_is_a_copy(self):
        cache = ExpressionCache({"$workflows.w.outputs.total": 3})
        exported = cache.export()
        exported["other"] = 1
        assert "other" not in cache
        assert exported["$workflows.w.outputs.total"] == 3

    def test_clear(self):
        cache = ExpressionCache({"a": 1})
        cache.clear()
        assert len(cache) == 0

    def test_iterates_over_keys(self):
        cache = ExpressionCache({"a": 1, "b": 2})
        assert sorted(cache) == ["a", "b"]

    def test_first_writer_wins_across_threads(self):
        cache = ExpressionCache()
        barrier = threading.Barrier(8)
        seen = []

        def writer(value):
            barrier.wait()
            seen.append(cache.add("$steps.s.outputs.id", value))

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(seen)) == 1
        assert cache.lookup("$steps.s.outputs.id") == seen[0]
