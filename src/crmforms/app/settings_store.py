from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping


_APP_SETTINGS_DIRNAME = "crmforms"
_SETTINGS_PATH_ENV = "CRMFORMS_SETTINGS_PATH"


def _resolve_settings_path() -> Path:
    env = os.environ
    override = str(env.get(_SETTINGS_PATH_ENV, "") or "").strip()
    if override:
        return Path(override).expanduser()
    if os.name == "nt":
        appdata = str(env.get("APPDATA", "") or "").strip()
        if appdata:
            return Path(appdata) / _APP_SETTINGS_DIRNAME / "config" / "settings.json"
        localappdata = str(env.get("LOCALAPPDATA", "") or "").strip()
        if localappdata:
            return Path(localappdata) / _APP_SETTINGS_DIRNAME / "config" / "settings.json"
    else:
        xdg_config_home = str(env.get("XDG_CONFIG_HOME", "") or "").strip()
        if xdg_config_home:
            return Path(xdg_config_home) / _APP_SETTINGS_DIRNAME / "settings.json"
    return Path.home() / ".config" / _APP_SETTINGS_DIRNAME / "settings.json"


_PICKERS_KEY = "pickers"
_DEBOUNCE_MS_KEY = "debounceMs"
_MIN_QUERY_LENGTH_KEY = "minQueryLength"
_MAX_SUGGESTIONS_KEY = "maxSuggestions"
_AUTOCOMPLETE_TTL_MS_KEY = "autocompleteTtlMs"
_ENTITY_TTL_MS_KEY = "entityTtlMs"
_CACHE_MAX_ENTRIES_KEY = "cacheMaxEntries"

TTL_CLASS_ENTITY = "entity"
TTL_CLASS_AUTOCOMPLETE = "autocomplete"
TTL_CLASSES: tuple[str, ...] = (TTL_CLASS_ENTITY, TTL_CLASS_AUTOCOMPLETE)

PICKER_KIND_DEFAULT = "default"
PICKER_KIND_COMPANIES = "companies"
PICKER_KIND_CONTACTS = "contacts"
PICKER_KIND_GEOGRAPHY = "geography"

DEFAULT_DEBOUNCE_MS = 300
DEFAULT_MIN_QUERY_LENGTH = 2
DEFAULT_MAX_SUGGESTIONS = 10
DEFAULT_AUTOCOMPLETE_TTL_MS = 2 * 60 * 1000
DEFAULT_ENTITY_TTL_MS = 5 * 60 * 1000
DEFAULT_CACHE_MAX_ENTRIES = 256
_MAX_DEBOUNCE_MS = 5_000
_MAX_SUGGESTIONS_LIMIT = 200


@dataclass(frozen=True, slots=True)
class PickerSettings:
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    min_query_length: int = DEFAULT_MIN_QUERY_LENGTH
    max_suggestions: int = DEFAULT_MAX_SUGGESTIONS
    autocomplete_ttl_ms: int = DEFAULT_AUTOCOMPLETE_TTL_MS
    entity_ttl_ms: int = DEFAULT_ENTITY_TTL_MS
    cache_max_entries: int = DEFAULT_CACHE_MAX_ENTRIES

    def ttl_ms_for(self, ttl_class: str) -> int:
        normalized = str(ttl_class or "").strip().casefold()
        if normalized == TTL_CLASS_ENTITY:
            return self.entity_ttl_ms
        if normalized == TTL_CLASS_AUTOCOMPLETE:
            return self.autocomplete_ttl_ms
        raise ValueError(f"Unknown cache TTL class: {ttl_class!r}")

    def to_mapping(self) -> dict[str, int]:
        return {
            _DEBOUNCE_MS_KEY: self.debounce_ms,
            _MIN_QUERY_LENGTH_KEY: self.min_query_length,
            _MAX_SUGGESTIONS_KEY: self.max_suggestions,
            _AUTOCOMPLETE_TTL_MS_KEY: self.autocomplete_ttl_ms,
            _ENTITY_TTL_MS_KEY: self.entity_ttl_ms,
            _CACHE_MAX_ENTRIES_KEY: self.cache_max_entries,
        }


_KIND_DEFAULTS: dict[str, PickerSettings] = {
    PICKER_KIND_DEFAULT: PickerSettings(),
    PICKER_KIND_COMPANIES: PickerSettings(),
    PICKER_KIND_CONTACTS: PickerSettings(),
    PICKER_KIND_GEOGRAPHY: PickerSettings(debounce_ms=150, min_query_length=0, max_suggestions=50),
}

_SETTINGS_PATH = _resolve_settings_path()


def settings_path() -> Path:
    return _SETTINGS_PATH


def default_picker_settings(kind: str = PICKER_KIND_DEFAULT) -> PickerSettings:
    return _KIND_DEFAULTS.get(_normalize_kind(kind), _KIND_DEFAULTS[PICKER_KIND_DEFAULT])


def load_settings(path: Path | None = None) -> dict[str, Any]:
    target = Path(path) if path is not None else settings_path()
    if not target.exists():
        return {}
    try:
        raw = target.read_text(encoding="utf-8")
        data = json.loads(raw)
    except Exception:
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def save_settings(settings: dict[str, Any], path: Path | None = None) -> None:
    target = Path(path) if path is not None else settings_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(settings, indent=2), encoding="utf-8")


def normalize_picker_settings(
    value: PickerSettings | Mapping[str, Any] | None,
    *,
    default: PickerSettings | None = None,
) -> PickerSettings:
    fallback = default or PickerSettings()
    if isinstance(value, PickerSettings):
        value = value.to_mapping()
    if not isinstance(value, Mapping):
        return fallback

    return PickerSettings(
        debounce_ms=_bounded_int(value.get(_DEBOUNCE_MS_KEY), fallback.debounce_ms, minimum=0, maximum=_MAX_DEBOUNCE_MS),
        min_query_length=_bounded_int(value.get(_MIN_QUERY_LENGTH_KEY), fallback.min_query_length, minimum=0),
        max_suggestions=_bounded_int(
            value.get(_MAX_SUGGESTIONS_KEY),
            fallback.max_suggestions,
            minimum=1,
            maximum=_MAX_SUGGESTIONS_LIMIT,
        ),
        autocomplete_ttl_ms=_bounded_int(value.get(_AUTOCOMPLETE_TTL_MS_KEY), fallback.autocomplete_ttl_ms, minimum=0),
        entity_ttl_ms=_bounded_int(value.get(_ENTITY_TTL_MS_KEY), fallback.entity_ttl_ms, minimum=0),
        cache_max_entries=_bounded_int(value.get(_CACHE_MAX_ENTRIES_KEY), fallback.cache_max_entries, minimum=1),
    )


def load_picker_settings(kind: str = PICKER_KIND_DEFAULT, path: Path | None = None) -> PickerSettings:
    fallback = default_picker_settings(kind)
    settings = load_settings(path)
    pickers = settings.get(_PICKERS_KEY)
    if not isinstance(pickers, dict):
        return fallback
    shared = pickers.get(PICKER_KIND_DEFAULT)
    if isinstance(shared, dict) and _normalize_kind(kind) != PICKER_KIND_DEFAULT:
        fallback = normalize_picker_settings(shared, default=fallback)
    return normalize_picker_settings(pickers.get(_normalize_kind(kind)), default=fallback)


def save_picker_settings(
    kind: str,
    value: PickerSettings | Mapping[str, Any],
    path: Path | None = None,
) -> PickerSettings:
    normalized = normalize_picker_settings(value, default=default_picker_settings(kind))
    settings = load_settings(path)
    pickers = settings.get(_PICKERS_KEY)
    if not isinstance(pickers, dict):
        pickers = {}
    pickers[_normalize_kind(kind)] = normalized.to_mapping()
    settings[_PICKERS_KEY] = pickers
    save_settings(settings, path)
    return normalized


def with_overrides(settings: PickerSettings, **overrides: int) -> PickerSettings:
    return normalize_picker_settings(replace(settings, **overrides), default=settings)


def _normalize_kind(kind: str) -> str:
    return str(kind or "").strip().casefold() or PICKER_KIND_DEFAULT


def _bounded_int(value: Any, default: int, *, minimum: int, maximum: int | None = None) -> int:
    if isinstance(value, bool) or value is None:
        return default
    try:
        parsed = int(value)
    except Exception:
        return default
    if parsed < minimum:
        return default
    if maximum is not None and parsed > maximum:
        return maximum
    return parsed
