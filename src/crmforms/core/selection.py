from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import count
from typing import Callable

from crmforms.core.models import Candidate, EntityId, Query, normalize_query_key


SELECTION_EMPTY = "empty"
SELECTION_EDITING = "editing"
SELECTION_SELECTED = "selected"
SELECTION_REVERTING = "reverting"
SELECTION_STATES: tuple[str, ...] = (
    SELECTION_EMPTY,
    SELECTION_EDITING,
    SELECTION_SELECTED,
    SELECTION_REVERTING,
)

ValueChangeCallback = Callable[[EntityId | None], None]


class QueryTracker:
    """Issues per-field queries and remembers which one is current."""

    def __init__(self) -> None:
        self._sequence = count(1)
        self._current: Query | None = None

    @property
    def current(self) -> Query | None:
        return self._current

    def issue(self, raw_text: str) -> Query:
        text = "" if raw_text is None else str(raw_text)
        query = Query(
            raw_text=text,
            normalized_key=normalize_query_key(text),
            issued_at=next(self._sequence),
        )
        self._current = query
        return query

    def is_current(self, query: Query | None) -> bool:
        return query is not None and self._current is not None and query.issued_at == self._current.issued_at

    def invalidate(self) -> None:
        self._current = None


@dataclass(frozen=True, slots=True)
class LabelTicket:
    value: EntityId
    issued_at: int


class SelectionSynchronizer:
    """Reconciles a caller-owned value with locally edited display text.

    Mutation sources are user typing, user picking, blur and out-of-band
    value changes from the caller. Only user intent (typing, picking,
    clearing) reports back through ``on_value_change``.
    """

    def __init__(
        self,
        *,
        name: str = "field",
        on_value_change: ValueChangeCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.on_value_change = on_value_change
        self._logger = logger or logging.getLogger("crmforms.selection")
        self._state = SELECTION_EMPTY
        self._value: EntityId | None = None
        self._display_text = ""
        self._last_synced_label: str | None = None
        self._selected: Candidate | None = None
        self._focused = False
        self._pending_external_clear = False
        self._queries = QueryTracker()
        self._label_sequence = count(1)
        self._label_ticket: LabelTicket | None = None
        self._reset_listeners: list[Callable[[], None]] = []

    @property
    def state(self) -> str:
        return self._state

    @property
    def value(self) -> EntityId | None:
        return self._value

    @property
    def display_text(self) -> str:
        return self._display_text

    @property
    def last_synced_label(self) -> str | None:
        return self._last_synced_label

    @property
    def selected_candidate(self) -> Candidate | None:
        return self._selected

    @property
    def focused(self) -> bool:
        return self._focused

    @property
    def editing(self) -> bool:
        return self._state == SELECTION_EDITING

    @property
    def has_pending_external_clear(self) -> bool:
        return self._pending_external_clear

    @property
    def awaiting_label(self) -> bool:
        return self._label_ticket is not None

    def add_reset_listener(self, listener: Callable[[], None]) -> None:
        self._reset_listeners.append(listener)

    def remove_reset_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._reset_listeners:
            self._reset_listeners.remove(listener)

    def focus(self) -> None:
        self._focused = True

    def type_text(self, text: str) -> None:
        value = "" if text is None else str(text)
        self._display_text = value
        if value.strip():
            self._set_state(SELECTION_EDITING)
            return

        self._queries.invalidate()
        if self._value is not None:
            self._forget_selection()
            self._set_state(SELECTION_EMPTY)
            self._report(None)
            return
        self._set_state(SELECTION_EDITING if value else SELECTION_EMPTY)

    def pick(self, candidate: Candidate) -> None:
        previous = self._value
        self._queries.invalidate()
        self._label_ticket = None
        self._pending_external_clear = False
        self._value = candidate.id
        self._selected = candidate
        self._display_text = candidate.label
        self._last_synced_label = candidate.label
        self._set_state(SELECTION_SELECTED)
        if previous != candidate.id:
            self._report(candidate.id)

    def clear(self) -> None:
        previous = self._value
        self._queries.invalidate()
        self._label_ticket = None
        self._pending_external_clear = False
        self._forget_selection()
        self._display_text = ""
        self._set_state(SELECTION_EMPTY)
        if previous is not None:
            self._report(None)

    def blur(self) -> None:
        self._focused = False
        self._queries.invalidate()
        if self._state == SELECTION_EDITING:
            self._set_state(SELECTION_REVERTING)
            if self._value is not None and self._last_synced_label is not None:
                self._display_text = self._last_synced_label
                self._set_state(SELECTION_SELECTED)
            elif self._value is not None:
                self._display_text = ""
                self._set_state(SELECTION_SELECTED)
            else:
                self._display_text = ""
                self._set_state(SELECTION_EMPTY)

        if self._pending_external_clear:
            self._pending_external_clear = False
            self._apply_external_clear()

    def set_external_value(self, value: EntityId | None, label: str | None = None) -> LabelTicket | None:
        if value is None:
            if self._state == SELECTION_EDITING:
                self._pending_external_clear = self._value is not None or bool(self._display_text)
                return None
            self._apply_external_clear()
            return None

        self._pending_external_clear = False
        if value == self._value:
            if label is not None:
                self._label_ticket = None
                self._selected = Candidate(id=value, label=label)
                self._sync_label(label)
                return None
            if self._state == SELECTION_EDITING or self._last_synced_label is not None:
                return None
            if self._label_ticket is not None:
                return self._label_ticket

        self._queries.invalidate()
        self._value = value
        self._set_state(SELECTION_SELECTED)
        if label is not None:
            self._label_ticket = None
            self._selected = Candidate(id=value, label=label)
            self._sync_label(label)
            return None

        if self._selected is not None and self._selected.id == value:
            self._label_ticket = None
            self._sync_label(self._selected.label)
            return None

        self._selected = None
        self._last_synced_label = None
        self._display_text = ""
        ticket = LabelTicket(value=value, issued_at=next(self._label_sequence))
        self._label_ticket = ticket
        return ticket

    def apply_resolved_label(self, ticket: LabelTicket, candidate: Candidate) -> bool:
        if self._label_ticket is None or ticket.issued_at != self._label_ticket.issued_at:
            self._logger.debug("Discarding stale label for %s: %r", self.name, ticket.value)
            return False
        if self._value != ticket.value:
            return False
        self._label_ticket = None
        self._selected = Candidate(id=ticket.value, label=candidate.label, secondary_text=candidate.secondary_text)
        self._sync_label(candidate.label)
        return True

    def reject_label(self, ticket: LabelTicket) -> None:
        if self._label_ticket is not None and ticket.issued_at == self._label_ticket.issued_at:
            self._label_ticket = None

    def reset(self) -> None:
        self._queries.invalidate()
        self._label_ticket = None
        self._pending_external_clear = False
        self._forget_selection()
        self._display_text = ""
        self._set_state(SELECTION_EMPTY)
        for listener in tuple(self._reset_listeners):
            listener()

    def begin_query(self, raw_text: str) -> Query:
        return self._queries.issue(raw_text)

    def is_current(self, query: Query | None) -> bool:
        return self._queries.is_current(query)

    def cancel_queries(self) -> None:
        self._queries.invalidate()

    def _apply_external_clear(self) -> None:
        self._queries.invalidate()
        self._label_ticket = None
        self._forget_selection()
        self._display_text = ""
        self._set_state(SELECTION_EMPTY)

    def _sync_label(self, label: str) -> None:
        self._last_synced_label = label
        if self._state != SELECTION_EDITING:
            self._display_text = label

    def _forget_selection(self) -> None:
        self._label_ticket = None
        self._value = None
        self._selected = None
        self._last_synced_label = None

    def _set_state(self, state: str) -> None:
        if state == self._state:
            return
        self._logger.debug("%s: %s -> %s", self.name, self._state, state)
        self._state = state

    def _report(self, value: EntityId | None) -> None:
        if self.on_value_change is not None:
            self.on_value_change(value)
