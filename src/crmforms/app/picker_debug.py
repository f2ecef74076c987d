from __future__ import annotations

import json
import os
import sys
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from pathlib import Path
from threading import Lock
from typing import Any, Iterable


_PICKER_DEBUG_ENV = "CRMFORMS_PICKER_DEBUG"
_PICKER_DEBUG_LOG_ENV = "CRMFORMS_PICKER_DEBUG_LOG"
_STDERR_PREFIX = "[picker-debug] "
_REDACTED_VALUE = "<redacted>"
_SECRET_KEYS = frozenset({"api_key", "apikey", "authorization", "bearer", "password", "token", "access_token", "secret"})
_TRUTHY = frozenset({"1", "true", "yes", "on", "y"})
_RECENT_LIMIT = 200


@dataclass(frozen=True, slots=True)
class PickerTrace:
    """One traced step of a picker, its CRM transport or an address form."""

    seq: int
    ts: str
    event: str
    picker: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> str:
        return self.event.split(".", 1)[0]

    def matches(self, picker: str | None, source: str | None) -> bool:
        if picker is not None and self.picker != picker:
            return False
        return source is None or self.source == source

    def as_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {"seq": self.seq, "ts": self.ts, "event": self.event}
        if self.picker is not None:
            record["picker"] = self.picker
        record["data"] = self.data
        return record


class _TraceBuffer:
    def __init__(self, limit: int) -> None:
        self._lock = Lock()
        self._sequence = count(1)
        self._traces: deque[PickerTrace] = deque(maxlen=limit)

    def append(self, event: str, picker: str | None, data: dict[str, Any]) -> PickerTrace:
        with self._lock:
            trace = PickerTrace(
                seq=next(self._sequence),
                ts=datetime.now(timezone.utc).isoformat(timespec="milliseconds"),
                event=event,
                picker=picker,
                data=data,
            )
            self._traces.append(trace)
        return trace

    def snapshot(self) -> list[PickerTrace]:
        with self._lock:
            return list(self._traces)

    def clear(self) -> None:
        with self._lock:
            self._traces.clear()


_BUFFER = _TraceBuffer(_RECENT_LIMIT)


def picker_debug_enabled() -> bool:
    return str(os.getenv(_PICKER_DEBUG_ENV, "") or "").strip().casefold() in _TRUTHY


def picker_debug(event: str, *, picker: str | None = None, **payload: object) -> None:
    """Record a trace step when ``CRMFORMS_PICKER_DEBUG`` is set.

    Steps emitted by a picker carry its field name in ``picker`` so a
    single form with several pickers can be traced one field at a time.
    """
    if not picker_debug_enabled():
        return
    name = str(picker).strip() if picker is not None else ""
    trace = _BUFFER.append(
        str(event or "").strip() or "unknown",
        name or None,
        _redact(payload),
    )
    _write_line(json.dumps(trace.as_record(), ensure_ascii=True, default=str))


def recent_picker_events(
    limit: int | None = None,
    *,
    picker: str | None = None,
    source: str | None = None,
) -> list[dict[str, Any]]:
    """Most recent trace records, oldest first.

    ``picker`` keeps only steps of the named field and ``source`` keeps
    only one event family (``picker``, ``crm`` or ``address``).
    """
    traces = [trace for trace in _BUFFER.snapshot() if trace.matches(picker, source)]
    if limit is not None:
        size = max(0, int(limit))
        traces = traces[-size:] if size else []
    return [trace.as_record() for trace in traces]


def picker_event_counts(picker: str | None = None) -> dict[str, int]:
    return dict(Counter(trace.event for trace in _BUFFER.snapshot() if trace.matches(picker, None)))


def traced_pickers() -> list[str]:
    return _unique(trace.picker for trace in _BUFFER.snapshot() if trace.picker is not None)


def clear_picker_events() -> None:
    _BUFFER.clear()


def _write_line(line: str) -> None:
    target = str(os.getenv(_PICKER_DEBUG_LOG_ENV, "") or "").strip()
    if target:
        destination = Path(target).expanduser()
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with destination.open("a", encoding="utf-8") as handle:
                handle.write(f"{line}\n")
            return
        except OSError:
            pass
    try:
        sys.stderr.write(f"{_STDERR_PREFIX}{line}\n")
        sys.stderr.flush()
    except (OSError, ValueError):
        pass


def _unique(names: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for name in names:
        seen.setdefault(name, None)
    return list(seen)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if str(key or "").strip().casefold() in _SECRET_KEYS else _redact(raw)
            for key, raw in value.items()
        }
    if isinstance(value, set):
        value = sorted(value, key=str)
    if isinstance(value, (list, tuple)):
        return [_redact(entry) for entry in value]
    return value
