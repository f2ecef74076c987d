from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

from crmforms.core.models import (
    Candidate,
    Fetcher,
    OutcomeCallback,
    SearchOutcome,
    TransportError,
)


DEFAULT_MAX_ENTRIES = 256

Clock = Callable[[], float]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(slots=True)
class SuggestionCacheEntry:
    key: str
    results: tuple[Candidate, ...]
    fetched_at: float
    ttl_ms: float

    def age_ms(self, now: float) -> float:
        return now - self.fetched_at

    def is_fresh(self, now: float, ttl_ms: float | None = None) -> bool:
        limit = self.ttl_ms if ttl_ms is None else ttl_ms
        return self.age_ms(now) < limit


@dataclass(slots=True)
class _InFlightFetch:
    key: str
    ttl_ms: float
    waiters: list[OutcomeCallback] = field(default_factory=list)
    settled: bool = False
    store_result: bool = True


class SuggestionCache:
    """TTL memo of asynchronous suggestion lookups with in-flight coalescing.

    One instance is meant to be shared by every picker of the same type.
    Failures are never cached, and the store is bounded by ``max_entries``
    with least recently used entries evicted first.
    """

    def __init__(
        self,
        *,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._clock = clock or _monotonic_ms
        self._logger = logger or logging.getLogger("crmforms.cache")
        self._entries: dict[str, SuggestionCacheEntry] = {}
        self._in_flight: dict[str, _InFlightFetch] = {}

    @property
    def max_entries(self) -> int:
        return self._max_entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> tuple[str, ...]:
        return tuple(self._entries.keys())

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def peek(self, key: str, ttl_ms: float | None = None) -> tuple[Candidate, ...] | None:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock(), ttl_ms):
            return None
        return entry.results

    def get(
        self,
        key: str,
        ttl_ms: float,
        fetcher: Fetcher,
        on_done: OutcomeCallback,
        *,
        min_length: int = 0,
    ) -> None:
        if len(key) < max(0, int(min_length)):
            on_done(SearchOutcome.too_short())
            return

        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            if entry.is_fresh(now, ttl_ms):
                self._touch(key, entry)
                on_done(SearchOutcome.found(entry.results, from_cache=True))
                return
            del self._entries[key]

        pending = self._in_flight.get(key)
        if pending is not None:
            pending.waiters.append(on_done)
            return

        pending = _InFlightFetch(key=key, ttl_ms=float(ttl_ms), waiters=[on_done])
        self._in_flight[key] = pending

        def _resolve(results: Sequence[Candidate]) -> None:
            self._settle_success(pending, results)

        def _reject(error: BaseException) -> None:
            self._settle_failure(pending, error)

        try:
            fetcher(_resolve, _reject)
        except Exception as exc:
            _reject(exc)

    def prime(self, key: str, results: Sequence[Candidate], ttl_ms: float) -> None:
        self._store(key, tuple(results), float(ttl_ms))

    def invalidate(self, key: str | None = None) -> None:
        if key is None:
            self._entries.clear()
            for pending in self._in_flight.values():
                pending.store_result = False
            self._in_flight.clear()
            return
        self._entries.pop(key, None)
        pending = self._in_flight.pop(key, None)
        if pending is not None:
            pending.store_result = False

    def _settle_success(self, pending: _InFlightFetch, results: Sequence[Candidate]) -> None:
        if pending.settled:
            return
        pending.settled = True
        self._release(pending)
        rows = tuple(results or ())
        if pending.store_result:
            self._store(pending.key, rows, pending.ttl_ms)
        self._notify(pending, SearchOutcome.found(rows))

    def _settle_failure(self, pending: _InFlightFetch, error: BaseException) -> None:
        if pending.settled:
            return
        pending.settled = True
        self._release(pending)
        if isinstance(error, TransportError):
            transport_error = error
        else:
            message = str(error) or error.__class__.__name__
            transport_error = TransportError(message)
            transport_error.__cause__ = error
        self._logger.warning("Suggestion fetch failed for %r: %s", pending.key, transport_error)
        self._notify(pending, SearchOutcome.failed(transport_error))

    def _release(self, pending: _InFlightFetch) -> None:
        if self._in_flight.get(pending.key) is pending:
            del self._in_flight[pending.key]

    def _notify(self, pending: _InFlightFetch, outcome: SearchOutcome) -> None:
        waiters = tuple(pending.waiters)
        pending.waiters.clear()
        for waiter in waiters:
            try:
                waiter(outcome)
            except Exception as exc:
                self._logger.warning("Suggestion waiter failed for %r: %s", pending.key, exc)

    def _store(self, key: str, results: tuple[Candidate, ...], ttl_ms: float) -> None:
        now = self._clock()
        self._entries.pop(key, None)
        self._entries[key] = SuggestionCacheEntry(
            key=key,
            results=results,
            fetched_at=now,
            ttl_ms=ttl_ms,
        )
        self._trim(now)

    def _touch(self, key: str, entry: SuggestionCacheEntry) -> None:
        del self._entries[key]
        self._entries[key] = entry

    def _trim(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self._max_entries
        if overflow <= 0:
            return
        for key in list(self._entries.keys())[:overflow]:
            del self._entries[key]
