from __future__ import annotations

import logging
from typing import Callable, Sequence

from PySide6.QtCore import QObject, Signal

from crmforms.app.crm_api import EntityLookup, SearchCollaborator
from crmforms.app.picker_debug import picker_debug
from crmforms.app.settings_store import TTL_CLASS_AUTOCOMPLETE, PickerSettings
from crmforms.core.debounce import DebounceScheduler
from crmforms.core.models import (
    STATUS_IDLE,
    STATUS_LOADING,
    STATUS_NO_RESULTS,
    STATUS_TOO_SHORT,
    STATUS_TRANSPORT_ERROR,
    Candidate,
    EntityId,
    Query,
    SearchOutcome,
    TransportError,
    normalize_query_key,
)
from crmforms.core.selection import LabelTicket, SelectionSynchronizer
from crmforms.core.suggestion_cache import SuggestionCache


CREATE_NEW_ID = "__create_new__"
DEFAULT_CREATE_LABEL = "+ Create new"
DEFAULT_ENTITY_NOUN = "records"

KeyScope = str | Callable[[], str]


class EntityPicker(QObject):
    """Search-as-you-type field bound to a single entity id.

    Typing is debounced into queries against ``search``; results are shared
    through ``cache``. The committed id lives in the synchronizer and only
    user intent is reported through ``on_value_change``.
    """

    suggestions_changed = Signal(object)
    status_changed = Signal(str)
    display_text_changed = Signal(str)

    def __init__(
        self,
        *,
        search: SearchCollaborator,
        lookup: EntityLookup | None = None,
        settings: PickerSettings | None = None,
        cache: SuggestionCache | None = None,
        entity_cache: SuggestionCache | None = None,
        scheduler: DebounceScheduler | None = None,
        synchronizer: SelectionSynchronizer | None = None,
        on_value_change: Callable[[EntityId | None], None] | None = None,
        on_create_new: Callable[[], None] | None = None,
        on_focus: Callable[[], None] | None = None,
        on_blur: Callable[[], None] | None = None,
        placeholder: str = "",
        create_label: str = DEFAULT_CREATE_LABEL,
        entity_noun: str = DEFAULT_ENTITY_NOUN,
        ttl_class: str = TTL_CLASS_AUTOCOMPLETE,
        key_scope: KeyScope = "",
        name: str = "picker",
        logger: logging.Logger | None = None,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._search = search
        self._lookup = lookup
        self._settings = settings or PickerSettings()
        self._ttl_ms = self._settings.ttl_ms_for(ttl_class)
        self._cache = cache if cache is not None else SuggestionCache(max_entries=self._settings.cache_max_entries)
        self._entity_cache = (
            entity_cache if entity_cache is not None else SuggestionCache(max_entries=self._settings.cache_max_entries)
        )
        self._on_create_new = on_create_new
        self._on_focus = on_focus
        self._on_blur = on_blur
        self.placeholder = placeholder
        self.create_label = create_label
        self.entity_noun = entity_noun
        self._key_scope = key_scope
        self.name = name
        self._logger = logger or logging.getLogger("crmforms.picker")

        if synchronizer is None:
            synchronizer = SelectionSynchronizer(name=name, on_value_change=on_value_change)
        elif on_value_change is not None:
            upstream = synchronizer.on_value_change

            def _chained(value: EntityId | None) -> None:
                if upstream is not None:
                    upstream(value)
                on_value_change(value)

            synchronizer.on_value_change = _chained
        self._sync = synchronizer
        self._sync.add_reset_listener(self._on_sync_reset)

        self._scheduler = scheduler or DebounceScheduler(self._settings.debounce_ms, parent=self)
        self._scheduler.emitted.connect(self._run_search)

        self._suggestions: tuple[Candidate, ...] = ()
        self._status = STATUS_IDLE
        self._last_error: TransportError | None = None
        self._last_search_text: str | None = None
        self._answered_query = 0
        self._emitted_display = self._sync.display_text
        self._disposed = False

    @property
    def synchronizer(self) -> SelectionSynchronizer:
        return self._sync

    @property
    def settings(self) -> PickerSettings:
        return self._settings

    @property
    def value(self) -> EntityId | None:
        return self._sync.value

    @property
    def display_text(self) -> str:
        return self._sync.display_text

    @property
    def suggestions(self) -> tuple[Candidate, ...]:
        return self._suggestions

    @property
    def status(self) -> str:
        return self._status

    @property
    def last_error(self) -> TransportError | None:
        return self._last_error

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def empty_message(self) -> str:
        noun = self.entity_noun
        if self._status == STATUS_TRANSPORT_ERROR:
            return f"Error searching {noun}"
        if self._status == STATUS_TOO_SHORT:
            return f"Type at least {self._settings.min_query_length} characters"
        if self._status == STATUS_LOADING:
            return f"Searching {noun}..."
        if self._status == STATUS_NO_RESULTS:
            return f"No {noun} found"
        return f"Start typing to search {noun}"

    def can_create_new(self) -> bool:
        if self._on_create_new is None or not self._sync.editing:
            return False
        key = normalize_query_key(self._sync.display_text)
        return bool(key) and len(key) >= self._settings.min_query_length

    def options(self) -> tuple[Candidate, ...]:
        if not self.can_create_new():
            return self._suggestions
        return self._suggestions + (Candidate(id=CREATE_NEW_ID, label=self.create_label),)

    def text_edited(self, text: str) -> None:
        if self._disposed:
            return
        self._sync.type_text(text)
        self._emit_display()
        key = normalize_query_key(text)
        minimum = self._settings.min_query_length
        if not key and minimum > 0:
            self._abandon_search(STATUS_IDLE)
            return
        if len(key) < minimum:
            self._abandon_search(STATUS_TOO_SHORT)
            return
        self._scheduler.schedule("" if text is None else str(text))

    def pick(self, candidate: Candidate) -> None:
        if self._disposed:
            return
        self._scheduler.cancel()
        if candidate.id == CREATE_NEW_ID:
            self._sync.cancel_queries()
            picker_debug("picker.create_new", picker=self.name)
            if self._on_create_new is not None:
                self._on_create_new()
            return

        self._sync.pick(candidate)
        self._entity_cache.prime(self._entity_key(candidate.id), (candidate,), self._settings.entity_ttl_ms)
        picker_debug("picker.pick", picker=self.name, id=candidate.id)
        self._set_suggestions(())
        self._set_status(STATUS_IDLE)
        self._emit_display()

    def clear(self) -> None:
        if self._disposed:
            return
        self._scheduler.cancel()
        self._sync.clear()
        self._set_suggestions(())
        self._set_status(STATUS_IDLE)
        self._emit_display()

    def focus_in(self) -> None:
        if self._disposed:
            return
        self._sync.focus()
        if self._on_focus is not None:
            self._on_focus()

    def focus_out(self) -> None:
        if self._disposed:
            return
        self._scheduler.cancel()
        self._sync.blur()
        self._set_suggestions(())
        self._set_status(STATUS_IDLE)
        self._emit_display()
        if self._on_blur is not None:
            self._on_blur()

    def set_value(self, value: EntityId | None, label: str | None = None) -> None:
        if self._disposed:
            return
        if value is None:
            self._sync.set_external_value(None)
            if not self._sync.editing:
                self._scheduler.cancel()
                self._set_suggestions(())
                self._set_status(STATUS_IDLE)
            self._emit_display()
            return

        ticket = self._sync.set_external_value(value, label=label)
        if not self._sync.editing:
            self._scheduler.cancel()
        self._emit_display()
        if ticket is not None:
            self._resolve_label(ticket)

    def sync_display(self) -> None:
        self._emit_display()

    def open_suggestions(self) -> None:
        if self._disposed:
            return
        self._scheduler.cancel()
        text = self._sync.display_text if self._sync.editing else ""
        if len(normalize_query_key(text)) < self._settings.min_query_length:
            self._abandon_search(STATUS_TOO_SHORT if text.strip() else STATUS_IDLE)
            return
        self._run_search(text)

    def search_now(self) -> None:
        if self._disposed:
            return
        if self._scheduler.flush():
            return
        if self._sync.editing:
            self._run_search(self._sync.display_text)

    def retry(self) -> None:
        if self._disposed or self._last_search_text is None:
            return
        self._scheduler.cancel()
        self._run_search(self._last_search_text)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._scheduler.cancel()
        self._sync.cancel_queries()
        self._sync.remove_reset_listener(self._on_sync_reset)
        self._suggestions = ()
        self._status = STATUS_IDLE

    def _run_search(self, text: object) -> None:
        if self._disposed:
            return
        raw = "" if text is None else str(text)
        query = self._sync.begin_query(raw)
        self._last_search_text = raw
        prefix = self._scope_prefix()
        cache_key = f"{prefix}{query.normalized_key}"
        limit = self._settings.max_suggestions
        search_text = raw.strip()
        picker_debug("picker.search", picker=self.name, query=query.normalized_key, seq=query.issued_at)

        def _fetch(resolve, reject) -> None:
            self._search.search_entities(search_text, limit, resolve, reject)

        self._cache.get(
            cache_key,
            self._ttl_ms,
            _fetch,
            lambda outcome: self._on_outcome(query, outcome),
            min_length=len(prefix) + self._settings.min_query_length,
        )
        if self._answered_query != query.issued_at and self._sync.is_current(query):
            self._set_status(STATUS_LOADING)

    def _on_outcome(self, query: Query, outcome: SearchOutcome) -> None:
        self._answered_query = query.issued_at
        if self._disposed or not self._sync.is_current(query):
            picker_debug("picker.stale", picker=self.name, seq=query.issued_at, status=outcome.status)
            return
        picker_debug(
            "picker.outcome",
            picker=self.name,
            seq=query.issued_at,
            status=outcome.status,
            count=len(outcome.candidates),
            cached=outcome.from_cache,
        )
        self._last_error = outcome.error
        if outcome.error is not None:
            self._logger.info("%s search failed: %s", self.name, outcome.error)
        self._set_suggestions(outcome.candidates[: self._settings.max_suggestions])
        self._set_status(outcome.status)

    def _resolve_label(self, ticket: LabelTicket) -> None:
        lookup = self._lookup
        if lookup is None:
            return

        def _fetch(resolve, reject) -> None:
            lookup.get_entity_by_id(
                ticket.value,
                lambda candidate: resolve((candidate,) if candidate is not None else ()),
                reject,
            )

        self._entity_cache.get(
            self._entity_key(ticket.value),
            self._settings.entity_ttl_ms,
            _fetch,
            lambda outcome: self._on_label_outcome(ticket, outcome),
        )

    def _on_label_outcome(self, ticket: LabelTicket, outcome: SearchOutcome) -> None:
        if self._disposed:
            return
        if not outcome.candidates:
            if outcome.error is not None:
                self._logger.info("%s label lookup failed for %r: %s", self.name, ticket.value, outcome.error)
            self._sync.reject_label(ticket)
            return
        if self._sync.apply_resolved_label(ticket, outcome.candidates[0]):
            self._emit_display()
        else:
            picker_debug("picker.label.stale", picker=self.name, id=ticket.value)

    def _on_sync_reset(self) -> None:
        self._scheduler.cancel()
        self._last_search_text = None
        self._last_error = None
        self._set_suggestions(())
        self._set_status(STATUS_IDLE)
        self._emit_display()

    def _abandon_search(self, status: str) -> None:
        self._scheduler.cancel()
        self._sync.cancel_queries()
        self._last_error = None
        self._set_suggestions(())
        self._set_status(status)

    def _scope_prefix(self) -> str:
        scope = self._key_scope() if callable(self._key_scope) else self._key_scope
        return f"{scope}\x1f" if scope else ""

    def _entity_key(self, entity_id: EntityId) -> str:
        return f"id:{entity_id}"

    def _set_suggestions(self, candidates: Sequence[Candidate]) -> None:
        rows = tuple(candidates)
        if rows == self._suggestions:
            return
        self._suggestions = rows
        self.suggestions_changed.emit(rows)

    def _set_status(self, status: str) -> None:
        if status == self._status:
            return
        self._status = status
        self.status_changed.emit(status)

    def _emit_display(self) -> None:
        text = self._sync.display_text
        if text == self._emitted_display:
            return
        self._emitted_display = text
        self.display_text_changed.emit(text)
