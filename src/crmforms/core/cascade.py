from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from functools import partial
from typing import Callable, Mapping, Sequence

from crmforms.core.geography import GEOGRAPHY_LEVELS, GeographyIndex
from crmforms.core.models import Candidate, EntityId, normalize_query_key
from crmforms.core.selection import SelectionSynchronizer


ORIGIN_UNSET = "unset"
ORIGIN_AUTO = "auto"
ORIGIN_MANUAL = "manual"
ORIGIN_EXTERNAL = "external"
DERIVED_ORIGINS: tuple[str, ...] = (ORIGIN_UNSET, ORIGIN_AUTO, ORIGIN_MANUAL, ORIGIN_EXTERNAL)

DEFAULT_POSTAL_CODE_TARGET = "postal_code"

OptionsProvider = Callable[[int, tuple[str, ...]], Sequence[str]]
LevelChangeCallback = Callable[[str, EntityId | None], None]
AutoFillCallback = Callable[[str, str], None]


@dataclass(frozen=True, slots=True)
class DerivedFieldRule:
    """Derives a sibling field from the chain once ``source_level`` is set."""

    target: str
    source_level: int
    resolve: Callable[[tuple[str, ...]], str]
    alternatives: Callable[[tuple[str, ...]], Sequence[str]] | None = None


@dataclass(slots=True)
class DerivedFieldState:
    target: str
    value: str = ""
    origin: str = ORIGIN_UNSET
    source_path: tuple[str, ...] = ()

    @property
    def auto_filled(self) -> bool:
        return self.origin == ORIGIN_AUTO

    @property
    def eligible_for_auto_fill(self) -> bool:
        return self.origin in {ORIGIN_UNSET, ORIGIN_AUTO}


@dataclass(frozen=True, slots=True)
class AutoFillHint:
    available: bool = False
    value: str = ""
    alternatives: tuple[str, ...] = ()


class CascadingSelectionGraph:
    """Chain of dependent selection fields with an optional derived field.

    Changing a level resets every deeper level. When the derived rule's
    source level receives a value, the derived field is auto-filled unless
    the user has typed into it.
    """

    def __init__(
        self,
        levels: Sequence[str],
        *,
        options: OptionsProvider | None = None,
        derived: DerivedFieldRule | None = None,
        on_change: LevelChangeCallback | None = None,
        on_auto_fill: AutoFillCallback | None = None,
        on_auto_fill_cleared: Callable[[str], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        names = tuple(str(level or "").strip() for level in levels)
        if not names or any(not name for name in names):
            raise ValueError("A cascade needs at least one named level.")
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate cascade levels: {names!r}")
        if derived is not None and not 0 <= derived.source_level < len(names):
            raise ValueError(f"Derived source level {derived.source_level} is outside the cascade.")

        self._levels = names
        self._options = options
        self._derived = derived
        self._on_change = on_change
        self._on_auto_fill = on_auto_fill
        self._on_auto_fill_cleared = on_auto_fill_cleared
        self._logger = logger or logging.getLogger("crmforms.cascade")
        self._fields = tuple(
            SelectionSynchronizer(
                name=name,
                on_value_change=partial(self._on_level_value_change, index),
                logger=self._logger,
            )
            for index, name in enumerate(names)
        )
        self._derived_state = DerivedFieldState(target=derived.target) if derived is not None else None

    @classmethod
    def for_geography(
        cls,
        index: GeographyIndex,
        *,
        target: str = DEFAULT_POSTAL_CODE_TARGET,
        on_change: LevelChangeCallback | None = None,
        on_auto_fill: AutoFillCallback | None = None,
        on_auto_fill_cleared: Callable[[str], None] | None = None,
    ) -> "CascadingSelectionGraph":
        def _options(level: int, path: tuple[str, ...]) -> Sequence[str]:
            if level == 0:
                return index.countries()
            if level == 1:
                return index.states_of(path[0])
            return index.cities_of(path[0], path[1])

        rule = DerivedFieldRule(
            target=target,
            source_level=len(GEOGRAPHY_LEVELS) - 1,
            resolve=lambda path: index.primary_postal_code_of(*path),
            alternatives=lambda path: index.postal_codes_of(*path),
        )
        return cls(
            GEOGRAPHY_LEVELS,
            options=_options,
            derived=rule,
            on_change=on_change,
            on_auto_fill=on_auto_fill,
            on_auto_fill_cleared=on_auto_fill_cleared,
        )

    @property
    def levels(self) -> tuple[str, ...]:
        return self._levels

    @property
    def derived_rule(self) -> DerivedFieldRule | None:
        return self._derived

    @property
    def derived_state(self) -> DerivedFieldState | None:
        if self._derived_state is None:
            return None
        return replace(self._derived_state)

    @property
    def derived_value(self) -> str:
        return self._derived_state.value if self._derived_state is not None else ""

    @property
    def is_auto_filled(self) -> bool:
        return self._derived_state is not None and self._derived_state.auto_filled

    def level_index(self, level: int | str) -> int:
        if isinstance(level, int):
            if 0 <= level < len(self._levels):
                return level
            raise KeyError(f"Unknown cascade level: {level!r}")
        try:
            return self._levels.index(str(level))
        except ValueError:
            raise KeyError(f"Unknown cascade level: {level!r}") from None

    def field(self, level: int | str) -> SelectionSynchronizer:
        return self._fields[self.level_index(level)]

    def value(self, level: int | str) -> EntityId | None:
        return self.field(level).value

    def values(self) -> dict[str, EntityId | None]:
        return {name: field.value for name, field in zip(self._levels, self._fields)}

    def path(self, upto: int | str | None = None) -> tuple[str, ...]:
        last = len(self._levels) - 1 if upto is None else self.level_index(upto)
        keys: list[str] = []
        for field in self._fields[: last + 1]:
            if field.value is None:
                break
            keys.append(str(field.value))
        return tuple(keys)

    def is_enabled(self, level: int | str) -> bool:
        index = self.level_index(level)
        return all(field.value is not None for field in self._fields[:index])

    def options(self, level: int | str, term: str = "") -> tuple[Candidate, ...]:
        index = self.level_index(level)
        if self._options is None or not self.is_enabled(index):
            return ()
        names = self._options(index, self.path(index - 1) if index > 0 else ())
        needle = normalize_query_key(term)
        return tuple(
            Candidate(id=name, label=name)
            for name in names
            if not needle or needle in name.casefold()
        )

    def set_level(self, level: int | str, value: Candidate | EntityId | None) -> None:
        index = self.level_index(level)
        field = self._fields[index]
        if value is None:
            field.clear()
            return
        if not self.is_enabled(index):
            parent = self._levels[index - 1]
            raise ValueError(f"Cannot set {self._levels[index]!r} before {parent!r}.")
        candidate = value if isinstance(value, Candidate) else Candidate(id=value, label=str(value))
        field.pick(candidate)

    def type_text(self, level: int | str, text: str) -> None:
        self.field(level).type_text(text)

    def blur(self, level: int | str) -> None:
        self.field(level).blur()

    def load(self, values: Mapping[str, EntityId | None], derived_value: str | None = None) -> None:
        parent_set = True
        for name, field in zip(self._levels, self._fields):
            raw = values.get(name) if parent_set else None
            if raw is None or raw == "":
                field.set_external_value(None)
                parent_set = False
                continue
            field.set_external_value(raw, label=str(raw))

        state = self._derived_state
        if state is not None and derived_value is not None:
            text = str(derived_value).strip()
            state.value = text
            state.origin = ORIGIN_EXTERNAL if text else ORIGIN_UNSET
            state.source_path = ()

    def edit_derived(self, text: str) -> None:
        state = self._derived_state
        if state is None:
            return
        value = "" if text is None else str(text)
        state.value = value
        state.origin = ORIGIN_MANUAL if value.strip() else ORIGIN_UNSET
        state.source_path = ()

    def hint_for(self, path: Sequence[str]) -> AutoFillHint:
        rule = self._derived
        keys = tuple(str(key) for key in path)
        if rule is None or len(keys) <= rule.source_level or not all(keys[: rule.source_level + 1]):
            return AutoFillHint()
        source_path = keys[: rule.source_level + 1]
        value = rule.resolve(source_path)
        alternatives = tuple(rule.alternatives(source_path)) if rule.alternatives is not None else ()
        return AutoFillHint(available=bool(value), value=value, alternatives=alternatives)

    def current_hint(self) -> AutoFillHint:
        return self.hint_for(self.path())

    def _on_level_value_change(self, index: int, value: EntityId | None) -> None:
        self._emit_change(index, value)
        for deeper in range(index + 1, len(self._fields)):
            field = self._fields[deeper]
            had_value = field.value is not None
            field.reset()
            if had_value:
                self._emit_change(deeper, None)
        self._update_derived(index, value)

    def _update_derived(self, index: int, value: EntityId | None) -> None:
        rule = self._derived
        state = self._derived_state
        if rule is None or state is None or index > rule.source_level:
            return
        if index < rule.source_level or value is None:
            self._invalidate_derived()
            return

        source_path = self.path(rule.source_level)
        derived = rule.resolve(source_path) if len(source_path) == rule.source_level + 1 else ""
        if not derived:
            self._invalidate_derived()
            return
        if not state.eligible_for_auto_fill:
            self._logger.debug("Keeping %s=%r (%s)", state.target, state.value, state.origin)
            return

        state.value = derived
        state.origin = ORIGIN_AUTO
        state.source_path = source_path
        if self._on_auto_fill is not None:
            self._on_auto_fill(state.target, derived)

    def _invalidate_derived(self) -> None:
        state = self._derived_state
        if state is None or state.origin != ORIGIN_AUTO:
            return
        state.value = ""
        state.origin = ORIGIN_UNSET
        state.source_path = ()
        if self._on_auto_fill_cleared is not None:
            self._on_auto_fill_cleared(state.target)

    def _emit_change(self, index: int, value: EntityId | None) -> None:
        if self._on_change is not None:
            self._on_change(self._levels[index], value)
