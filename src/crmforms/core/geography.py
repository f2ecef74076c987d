from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any


LEVEL_COUNTRY = "country"
LEVEL_STATE = "state"
LEVEL_CITY = "city"
GEOGRAPHY_LEVELS: tuple[str, ...] = (LEVEL_COUNTRY, LEVEL_STATE, LEVEL_CITY)

_DEFAULT_DATA_PATH = Path(__file__).resolve().with_name("geography_data.json")
_EMPTY_CHILDREN: Mapping[str, "GeographyNode"] = MappingProxyType({})


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def _as_code_list(value: Any) -> tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        candidates = value
    elif value is None or value == "":
        candidates = []
    else:
        candidates = [value]
    codes: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        code = _as_text(candidate)
        if not code or code in seen:
            continue
        seen.add(code)
        codes.append(code)
    return tuple(codes)


def _country_key(value: Any) -> str:
    return _as_text(value).upper()


@dataclass(frozen=True, slots=True)
class GeographyNode:
    level: str
    key: str
    name: str = ""
    children: Mapping[str, "GeographyNode"] = field(default_factory=lambda: _EMPTY_CHILDREN)
    postal_codes: tuple[str, ...] = ()
    explicit_primary_postal_code: str = ""

    @property
    def primary_postal_code(self) -> str:
        if self.explicit_primary_postal_code:
            return self.explicit_primary_postal_code
        if self.postal_codes:
            return self.postal_codes[0]
        return ""

    @property
    def display_name(self) -> str:
        return self.name or self.key


@dataclass(frozen=True, slots=True)
class LocationInfo:
    country: str = ""
    state: str = ""
    city: str = ""
    postal_codes: tuple[str, ...] = ()
    primary_postal_code: str = ""

    @property
    def has_postal_codes(self) -> bool:
        return bool(self.postal_codes)


class GeographyIndex:
    """Read-only country -> state -> city -> postal code lookup.

    Keys are matched exactly except country codes, which are upper-cased.
    Unknown keys at any level produce empty results.
    """

    def __init__(self, countries: Mapping[str, GeographyNode]) -> None:
        self._countries: Mapping[str, GeographyNode] = MappingProxyType(dict(countries))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GeographyIndex":
        if not isinstance(data, Mapping):
            raise ValueError("Geography data must be a mapping of country codes.")
        countries: dict[str, GeographyNode] = {}
        for raw_code, raw_country in data.items():
            code = _country_key(raw_code)
            if not code or not isinstance(raw_country, Mapping):
                continue
            countries[code] = _build_country(code, raw_country)
        return cls(countries)

    def countries(self) -> tuple[str, ...]:
        return tuple(self._countries.keys())

    def country_name(self, country: str) -> str:
        node = self._countries.get(_country_key(country))
        return node.name if node is not None else ""

    def has_data(self, country: str) -> bool:
        return _country_key(country) in self._countries

    def node(self, country: str, state: str | None = None, city: str | None = None) -> GeographyNode | None:
        current = self._countries.get(_country_key(country))
        for key in (state, city):
            if current is None or key is None:
                return current
            current = current.children.get(key)
        return current

    def states_of(self, country: str) -> tuple[str, ...]:
        node = self.node(country)
        return tuple(node.children.keys()) if node is not None else ()

    def cities_of(self, country: str, state: str) -> tuple[str, ...]:
        node = self.node(country, state)
        if node is None or node.level != LEVEL_STATE:
            return ()
        return tuple(node.children.keys())

    def postal_codes_of(self, country: str, state: str, city: str) -> tuple[str, ...]:
        node = self.node(country, state, city)
        if node is None or node.level != LEVEL_CITY:
            return ()
        return node.postal_codes

    def primary_postal_code_of(self, country: str, state: str, city: str) -> str:
        node = self.node(country, state, city)
        if node is None or node.level != LEVEL_CITY:
            return ""
        return node.primary_postal_code

    def has_postal_codes(self, country: str, state: str, city: str) -> bool:
        return bool(self.postal_codes_of(country, state, city))

    def search_states(self, country: str, term: str = "") -> tuple[str, ...]:
        return _filter_names(self.states_of(country), term)

    def search_cities(self, country: str, state: str, term: str = "") -> tuple[str, ...]:
        return _filter_names(self.cities_of(country, state), term)

    def location_info(self, country: str, state: str, city: str) -> LocationInfo:
        country_node = self.node(country)
        state_node = self.node(country, state)
        city_node = self.node(country, state, city)
        if city_node is not None and city_node.level != LEVEL_CITY:
            city_node = None
        return LocationInfo(
            country=country_node.name if country_node is not None else "",
            state=state_node.display_name if state_node is not None and state_node.level == LEVEL_STATE else "",
            city=city_node.display_name if city_node is not None else "",
            postal_codes=city_node.postal_codes if city_node is not None else (),
            primary_postal_code=city_node.primary_postal_code if city_node is not None else "",
        )


def _filter_names(names: tuple[str, ...], term: str) -> tuple[str, ...]:
    needle = " ".join(_as_text(term).split()).casefold()
    if not needle:
        return names
    return tuple(name for name in names if needle in name.casefold())


def _build_country(code: str, raw: Mapping[str, Any]) -> GeographyNode:
    states: dict[str, GeographyNode] = {}
    raw_states = raw.get("states")
    if isinstance(raw_states, Mapping):
        for raw_state_key, raw_state in raw_states.items():
            state_key = _as_text(raw_state_key)
            if not state_key or not isinstance(raw_state, Mapping):
                continue
            states[state_key] = _build_state(state_key, raw_state)
    return GeographyNode(
        level=LEVEL_COUNTRY,
        key=code,
        name=_as_text(raw.get("name")) or code,
        children=MappingProxyType(states),
    )


def _build_state(key: str, raw: Mapping[str, Any]) -> GeographyNode:
    cities: dict[str, GeographyNode] = {}
    raw_cities = raw.get("cities")
    if isinstance(raw_cities, Mapping):
        for raw_city_key, raw_city in raw_cities.items():
            city_key = _as_text(raw_city_key)
            if not city_key or not isinstance(raw_city, Mapping):
                continue
            cities[city_key] = GeographyNode(
                level=LEVEL_CITY,
                key=city_key,
                name=_as_text(raw_city.get("name")) or city_key,
                postal_codes=_as_code_list(raw_city.get("postal_codes")),
                explicit_primary_postal_code=_as_text(raw_city.get("primary_postal_code")),
            )
    return GeographyNode(
        level=LEVEL_STATE,
        key=key,
        name=_as_text(raw.get("name")) or key,
        children=MappingProxyType(cities),
    )


def default_geography_path() -> Path:
    return _DEFAULT_DATA_PATH


def load_geography_index(path: str | Path | None = None) -> GeographyIndex:
    source = Path(path) if path is not None else _DEFAULT_DATA_PATH
    data = json.loads(source.read_text(encoding="utf-8"))
    return GeographyIndex.from_mapping(data)
