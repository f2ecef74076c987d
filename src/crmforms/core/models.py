from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Sequence, Union


EntityId = Union[int, str]

STATUS_IDLE = "idle"
STATUS_TOO_SHORT = "too_short"
STATUS_LOADING = "loading"
STATUS_RESULTS = "results"
STATUS_NO_RESULTS = "no_results"
STATUS_TRANSPORT_ERROR = "transport_error"
SEARCH_STATUSES: tuple[str, ...] = (
    STATUS_IDLE,
    STATUS_TOO_SHORT,
    STATUS_LOADING,
    STATUS_RESULTS,
    STATUS_NO_RESULTS,
    STATUS_TRANSPORT_ERROR,
)


class PickerError(Exception):
    """Base class for failures surfaced by the selection core."""


class TransportError(PickerError):
    """A search or entity-by-id collaborator could not answer."""


def normalize_query_key(value: Any) -> str:
    text = "" if value is None else str(value)
    return " ".join(text.split()).casefold()


@dataclass(frozen=True, slots=True)
class Candidate:
    id: EntityId
    label: str
    secondary_text: str | None = None


@dataclass(frozen=True, slots=True)
class Query:
    raw_text: str
    normalized_key: str
    issued_at: int

    def supersedes(self, other: "Query") -> bool:
        return self.issued_at > other.issued_at


@dataclass(frozen=True, slots=True)
class SearchOutcome:
    status: str
    candidates: tuple[Candidate, ...] = ()
    error: TransportError | None = None
    from_cache: bool = False

    @classmethod
    def too_short(cls) -> "SearchOutcome":
        return cls(status=STATUS_TOO_SHORT)

    @classmethod
    def found(cls, candidates: Sequence[Candidate], *, from_cache: bool = False) -> "SearchOutcome":
        rows = tuple(candidates)
        status = STATUS_RESULTS if rows else STATUS_NO_RESULTS
        return cls(status=status, candidates=rows, from_cache=from_cache)

    @classmethod
    def failed(cls, error: TransportError) -> "SearchOutcome":
        return cls(status=STATUS_TRANSPORT_ERROR, error=error)

    @property
    def ok(self) -> bool:
        return self.status in {STATUS_RESULTS, STATUS_NO_RESULTS}


ResolveCallback = Callable[[Sequence[Candidate]], None]
RejectCallback = Callable[[BaseException], None]
Fetcher = Callable[[ResolveCallback, RejectCallback], None]
OutcomeCallback = Callable[[SearchOutcome], None]
