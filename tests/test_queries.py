"""Tests for the bounded query history table."""

from __future__ import annotations

from colloquy.dispatch.queries import Query, QueryTable, UsageTelemetry


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _query(qid: str) -> Query:
    return Query(qid=qid, owner=None, provider="openai", payload={})


def test_table_below_limit_keeps_old_entries() -> None:
    clock = _Clock()
    table = QueryTable(limit=3, max_age=60, clock=clock)

    table.add(_query("a"))
    clock.now += 3600
    table.add(_query("b"))

    assert "a" in table
    assert len(table) == 2


def test_eviction_drops_only_stale_entries_once_over_limit() -> None:
    clock = _Clock()
    table = QueryTable(limit=2, max_age=60, clock=clock)

    table.add(_query("old"))
    clock.now += 30
    table.add(_query("recent"))
    clock.now += 40
    table.add(_query("new"))

    assert "old" not in table
    assert "recent" in table
    assert "new" in table
    assert [query.qid for query in table] == ["recent", "new"]


def test_eviction_does_not_care_about_finished_state() -> None:
    clock = _Clock()
    table = QueryTable(limit=1, max_age=10, clock=clock)
    running = table.add(_query("running"))
    assert not running.finished

    clock.now += 11
    table.add(_query("next"))

    assert table.get("running") is None


def test_remove_and_get() -> None:
    table = QueryTable()
    table.add(_query("x"))

    assert table.get("x") is not None
    assert table.remove("x") is not None
    assert table.remove("x") is None
    assert table.get("x") is None


def test_usage_telemetry_defaults_to_no_data() -> None:
    usage = UsageTelemetry()

    assert usage.empty
    assert usage.as_dict() == {"input": None, "cache_read": None, "cache_creation": None}
    assert not UsageTelemetry(input=0).empty
