from __future__ import annotations

from functools import partial
from typing import Any, Callable, Mapping

from PySide6.QtCore import QObject, Signal

from crmforms.app.crm_api import ErrorCallback, SuccessCallback
from crmforms.app.entity_picker import EntityPicker
from crmforms.app.picker_debug import picker_debug
from crmforms.app.settings_store import PICKER_KIND_GEOGRAPHY, PickerSettings, load_picker_settings
from crmforms.core.cascade import DEFAULT_POSTAL_CODE_TARGET, AutoFillHint, CascadingSelectionGraph
from crmforms.core.debounce import DebounceScheduler
from crmforms.core.geography import LEVEL_CITY, LEVEL_COUNTRY, GeographyIndex, load_geography_index
from crmforms.core.models import Candidate, EntityId, normalize_query_key
from crmforms.core.suggestion_cache import SuggestionCache


_LEVEL_NOUNS = {
    "country": "countries",
    "state": "states",
    "city": "cities",
}

SchedulerFactory = Callable[[QObject], DebounceScheduler]


class GeographyLevelSearch:
    """Answers picker searches for one cascade level from the local index."""

    def __init__(self, index: GeographyIndex, graph: CascadingSelectionGraph, level: str) -> None:
        self._index = index
        self._graph = graph
        self._level = level

    def search_entities(
        self,
        query: str,
        limit: int,
        on_success: SuccessCallback,
        on_error: ErrorCallback,
    ) -> None:
        if not self._graph.is_enabled(self._level):
            on_success(())
            return
        if self._level == LEVEL_COUNTRY:
            candidates = self._country_candidates(query)
        else:
            candidates = self._graph.options(self._level, query)
            if self._level == LEVEL_CITY:
                candidates = tuple(self._with_postal_code(candidate) for candidate in candidates)
        on_success(tuple(candidates)[: max(1, int(limit))])

    def _country_candidates(self, query: str) -> tuple[Candidate, ...]:
        needle = normalize_query_key(query)
        rows: list[Candidate] = []
        for code in self._index.countries():
            name = self._index.country_name(code) or code
            if needle and needle not in name.casefold() and needle != code.casefold():
                continue
            rows.append(Candidate(id=code, label=name, secondary_text=code))
        return tuple(rows)

    def _with_postal_code(self, candidate: Candidate) -> Candidate:
        country, state = self._graph.path(LEVEL_CITY)[:2]
        code = self._index.primary_postal_code_of(country, state, str(candidate.id))
        return Candidate(id=candidate.id, label=candidate.label, secondary_text=code or None)


class AddressFormController(QObject):
    """Country, state and city pickers plus the auto-filled postal code."""

    address_changed = Signal(dict)
    postal_code_auto_filled = Signal(str)
    postal_code_cleared = Signal()

    def __init__(
        self,
        index: GeographyIndex | None = None,
        *,
        settings: PickerSettings | None = None,
        cache: SuggestionCache | None = None,
        scheduler_factory: SchedulerFactory | None = None,
        postal_code_target: str = DEFAULT_POSTAL_CODE_TARGET,
        parent: QObject | None = None,
    ) -> None:
        super().__init__(parent)
        self._index = index or load_geography_index()
        self._settings = settings or load_picker_settings(PICKER_KIND_GEOGRAPHY)
        self._cache = cache if cache is not None else SuggestionCache(max_entries=self._settings.cache_max_entries)
        self._graph = CascadingSelectionGraph.for_geography(
            self._index,
            target=postal_code_target,
            on_change=self._on_level_change,
            on_auto_fill=self._on_auto_fill,
            on_auto_fill_cleared=self._on_auto_fill_cleared,
        )
        self._pickers: tuple[EntityPicker, ...] = tuple(
            EntityPicker(
                search=GeographyLevelSearch(self._index, self._graph, level),
                settings=self._settings,
                cache=self._cache,
                scheduler=scheduler_factory(self) if scheduler_factory is not None else None,
                synchronizer=self._graph.field(level),
                on_value_change=self._on_user_change,
                entity_noun=_LEVEL_NOUNS.get(level, level),
                key_scope=partial(self._scope_for, position),
                name=level,
                parent=self,
            )
            for position, level in enumerate(self._graph.levels)
        )

    @property
    def graph(self) -> CascadingSelectionGraph:
        return self._graph

    @property
    def index(self) -> GeographyIndex:
        return self._index

    @property
    def postal_code(self) -> str:
        return self._graph.derived_value

    @property
    def postal_code_is_auto(self) -> bool:
        return self._graph.is_auto_filled

    def picker(self, level: int | str) -> EntityPicker:
        return self._pickers[self._graph.level_index(level)]

    def load(self, address: Mapping[str, Any]) -> None:
        raw = address or {}
        target = self._target()
        values = {level: _clean_key(raw.get(level)) for level in self._graph.levels}
        if values.get(LEVEL_COUNTRY):
            values[LEVEL_COUNTRY] = str(values[LEVEL_COUNTRY]).upper()
        self._graph.load(values, derived_value=str(raw.get(target) or ""))

        country = self._graph.value(LEVEL_COUNTRY)
        if country is not None:
            name = self._index.country_name(str(country))
            if name:
                self.picker(LEVEL_COUNTRY).set_value(country, label=name)
        for picker in self._pickers:
            picker.sync_display()
        picker_debug("address.load", levels=len([value for value in values.values() if value]))
        self.address_changed.emit(self.address())

    def address(self) -> dict[str, Any]:
        values: dict[str, Any] = dict(self._graph.values())
        values[self._target()] = self._graph.derived_value
        return values

    def edit_postal_code(self, text: str) -> None:
        self._graph.edit_derived(text)
        self.address_changed.emit(self.address())

    def postal_code_hint(self) -> AutoFillHint:
        return self._graph.current_hint()

    def dispose(self) -> None:
        for picker in self._pickers:
            picker.dispose()

    def _target(self) -> str:
        rule = self._graph.derived_rule
        return rule.target if rule is not None else DEFAULT_POSTAL_CODE_TARGET

    def _scope_for(self, position: int) -> str:
        level = self._graph.levels[position]
        if position == 0:
            return level
        return f"{level}:" + "/".join(self._graph.path(position - 1))

    def _on_user_change(self, value: EntityId | None) -> None:
        self.address_changed.emit(self.address())

    def _on_level_change(self, level: str, value: EntityId | None) -> None:
        picker_debug("address.level", level=level, value=value)

    def _on_auto_fill(self, target: str, value: str) -> None:
        picker_debug("address.auto_fill", target=target, value=value)
        self.postal_code_auto_filled.emit(value)

    def _on_auto_fill_cleared(self, target: str) -> None:
        picker_debug("address.auto_fill.cleared", target=target)
        self.postal_code_cleared.emit()


def _clean_key(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
