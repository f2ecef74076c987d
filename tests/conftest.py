from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

import pytest
from PySide6.QtCore import QCoreApplication

from crmforms.app.settings_store import PickerSettings
from crmforms.core.debounce import DebounceScheduler
from crmforms.core.geography import GeographyIndex, load_geography_index
from crmforms.core.models import Candidate


class FakeSignal:
    def __init__(self) -> None:
        self._slots: list[Callable[[], None]] = []

    def connect(self, slot: Callable[[], None]) -> None:
        self._slots.append(slot)

    def emit(self) -> None:
        for slot in tuple(self._slots):
            slot()


class ManualTimer:
    """Single-shot timer driven by ``ManualEventLoop.advance``."""

    def __init__(self, loop: "ManualEventLoop") -> None:
        self._loop = loop
        self.timeout = FakeSignal()
        self.single_shot = False
        self.deadline: int | None = None
        self.starts = 0

    def setSingleShot(self, value: bool) -> None:
        self.single_shot = bool(value)

    def start(self, delay_ms: int) -> None:
        self.starts += 1
        self.deadline = self._loop.now + int(delay_ms)

    def stop(self) -> None:
        self.deadline = None

    def isActive(self) -> bool:
        return self.deadline is not None


class ManualEventLoop:
    def __init__(self) -> None:
        self.now = 0
        self.timers: list[ManualTimer] = []

    def timer(self, _parent: Any = None) -> ManualTimer:
        timer = ManualTimer(self)
        self.timers.append(timer)
        return timer

    def clock(self) -> float:
        return float(self.now)

    def scheduler(self, delay_ms: int = 300, **kwargs: Any) -> DebounceScheduler:
        return DebounceScheduler(delay_ms, timer_factory=self.timer, **kwargs)

    def advance(self, ms: int) -> None:
        target = self.now + int(ms)
        while True:
            due = [timer for timer in self.timers if timer.deadline is not None and timer.deadline <= target]
            if not due:
                break
            timer = min(due, key=lambda item: item.deadline)
            self.now = max(self.now, timer.deadline)
            timer.deadline = None
            timer.timeout.emit()
        self.now = target


@dataclass
class PendingCall:
    args: tuple[Any, ...]
    on_success: Callable[..., None]
    on_error: Callable[[BaseException], None]


@dataclass
class FakeSearch:
    """Search collaborator that holds every request until the test answers it."""

    calls: list[PendingCall] = field(default_factory=list)

    def search_entities(self, query, limit, on_success, on_error) -> None:
        self.calls.append(PendingCall((query, limit), on_success, on_error))

    def queries(self) -> list[str]:
        return [call.args[0] for call in self.calls]

    def answer(self, position: int, candidates) -> None:
        self.calls[position].on_success(tuple(candidates))

    def fail(self, position: int, error: BaseException) -> None:
        self.calls[position].on_error(error)


@dataclass
class FakeLookup:
    calls: list[PendingCall] = field(default_factory=list)

    def get_entity_by_id(self, entity_id, on_success, on_error) -> None:
        self.calls.append(PendingCall((entity_id,), on_success, on_error))

    def answer(self, position: int, candidate) -> None:
        self.calls[position].on_success(candidate)

    def fail(self, position: int, error: BaseException) -> None:
        self.calls[position].on_error(error)


@pytest.fixture(scope="session")
def qt_app():
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    return app


@pytest.fixture
def loop() -> ManualEventLoop:
    return ManualEventLoop()


@pytest.fixture(scope="session")
def geography() -> GeographyIndex:
    return load_geography_index()


@pytest.fixture
def fake_search() -> FakeSearch:
    return FakeSearch()


@pytest.fixture
def fake_lookup() -> FakeLookup:
    return FakeLookup()


@pytest.fixture
def picker_settings() -> PickerSettings:
    return PickerSettings()


@pytest.fixture(autouse=True)
def quiet_picker_debug(monkeypatch):
    monkeypatch.delenv("CRMFORMS_PICKER_DEBUG", raising=False)
    monkeypatch.delenv("CRMFORMS_PICKER_DEBUG_LOG", raising=False)


def acme() -> tuple[Candidate, ...]:
    return (
        Candidate(id=1, label="Acme Corp", secondary_text="sales@acme.test"),
        Candidate(id=2, label="Acme Labs"),
    )
