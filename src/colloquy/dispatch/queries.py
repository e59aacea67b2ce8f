"""In-flight query records and their bounded history table."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, Iterator

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10
DEFAULT_HISTORY_AGE = 60.0


@dataclass(slots=True)
class UsageTelemetry:
    """Token usage reported by a provider; ``None`` means the provider sent no data."""

    input: int | None = None
    cache_read: int | None = None
    cache_creation: int | None = None

    @property
    def empty(self) -> bool:
        return self.input is None and self.cache_read is None and self.cache_creation is None

    def as_dict(self) -> dict[str, int | None]:
        return {
            "input": self.input,
            "cache_read": self.cache_read,
            "cache_creation": self.cache_creation,
        }


@dataclass(slots=True)
class Query:
    """One request/response cycle, mutated only by its stream session."""

    qid: str
    owner: Hashable | None
    provider: str
    payload: Dict[str, Any]
    raw_response: str = ""
    response: str = ""
    first_line: int = -1
    last_line: int = -1
    created_at: float = field(default_factory=time.time)
    usage: UsageTelemetry | None = None
    prompt_tokens_estimate: int | None = None
    finished: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


class QueryTable:
    """Holds recent queries, evicting old entries once the table grows past ``limit``.

    Eviction only runs when a query is added: if more than ``limit`` entries are
    tracked, every entry older than ``max_age`` seconds is dropped, finished or not.
    """

    def __init__(
        self,
        *,
        limit: int = DEFAULT_HISTORY_LIMIT,
        max_age: float = DEFAULT_HISTORY_AGE,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limit = max(1, int(limit))
        self._max_age = max(0.0, float(max_age))
        self._clock = clock
        self._queries: dict[str, Query] = {}

    def add(self, query: Query) -> Query:
        query.created_at = self._clock()
        self._queries[query.qid] = query
        self.evict()
        return query

    def get(self, qid: str) -> Query | None:
        query = self._queries.get(qid)
        if query is None:
            LOGGER.debug("Query %s not found (finished or evicted)", qid)
        return query

    def remove(self, qid: str) -> Query | None:
        return self._queries.pop(qid, None)

    def evict(self) -> int:
        if len(self._queries) <= self._limit:
            return 0
        now = self._clock()
        stale = [qid for qid, query in self._queries.items() if now - query.created_at > self._max_age]
        for qid in stale:
            self._queries.pop(qid, None)
        if stale:
            LOGGER.debug("Evicted %s stale query record(s)", len(stale))
        return len(stale)

    def __contains__(self, qid: object) -> bool:
        return qid in self._queries

    def __len__(self) -> int:
        return len(self._queries)

    def __iter__(self) -> Iterator[Query]:
        return iter(list(self._queries.values()))


__all__ = ["UsageTelemetry", "Query", "QueryTable", "DEFAULT_HISTORY_LIMIT", "DEFAULT_HISTORY_AGE"]
