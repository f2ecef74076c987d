from __future__ import annotations

from typing import Any, Callable

from PySide6.QtCore import QObject, QTimer, Signal


DEFAULT_DEBOUNCE_MS = 300

TimerFactory = Callable[[QObject], Any]


def _qt_timer(parent: QObject) -> QTimer:
    return QTimer(parent)


class DebounceScheduler(QObject):
    """Emits only the last scheduled value once input has been quiet.

    A zero delay still coalesces same-tick bursts because the single-shot
    timer only fires on the next pass of the event loop.
    """

    emitted = Signal(object)

    def __init__(
        self,
        delay_ms: int = DEFAULT_DEBOUNCE_MS,
        *,
        parent: QObject | None = None,
        timer_factory: TimerFactory | None = None,
        on_emit: Callable[[Any], None] | None = None,
    ) -> None:
        super().__init__(parent)
        self._delay_ms = max(0, int(delay_ms))
        self._on_emit = on_emit
        self._pending_value: Any = None
        self._has_pending = False

        self._timer = (timer_factory or _qt_timer)(self)
        self._timer.setSingleShot(True)
        self._timer.timeout.connect(self._fire)

    @property
    def delay_ms(self) -> int:
        return self._delay_ms

    @property
    def pending(self) -> bool:
        return self._has_pending

    @property
    def pending_value(self) -> Any:
        return self._pending_value if self._has_pending else None

    def schedule(self, value: Any, delay_ms: int | None = None) -> None:
        delay = self._delay_ms if delay_ms is None else max(0, int(delay_ms))
        self._pending_value = value
        self._has_pending = True
        self._timer.start(delay)

    def cancel(self) -> None:
        self._timer.stop()
        self._has_pending = False
        self._pending_value = None

    def flush(self) -> bool:
        if not self._has_pending:
            return False
        self._timer.stop()
        self._fire()
        return True

    def _fire(self) -> None:
        if not self._has_pending:
            return
        value = self._pending_value
        self._has_pending = False
        self._pending_value = None
        self.emitted.emit(value)
        if self._on_emit is not None:
            self._on_emit(value)
