from __future__ import annotations

import pytest

from crmforms.core.cascade import (
    ORIGIN_AUTO,
    ORIGIN_EXTERNAL,
    ORIGIN_MANUAL,
    ORIGIN_UNSET,
    CascadingSelectionGraph,
    DerivedFieldRule,
)
from crmforms.core.geography import GeographyIndex
from crmforms.core.models import Candidate
from crmforms.core.selection import SELECTION_EMPTY


class Recorder:
    def __init__(self):
        self.changes = []
        self.auto_fills = []
        self.cleared = []

    def graph(self, index):
        return CascadingSelectionGraph.for_geography(
            index,
            on_change=lambda level, value: self.changes.append((level, value)),
            on_auto_fill=lambda target, value: self.auto_fills.append((target, value)),
            on_auto_fill_cleared=self.cleared.append,
        )


@pytest.fixture
def recorder():
    return Recorder()


def select_cali(graph):
    graph.set_level("country", "CO")
    graph.set_level("state", "Valle del Cauca")
    graph.set_level("city", "Cali")


class TestAutoFill:
    """Selecting a city fills its primary postal code."""

    def test_cali_fills_760001_once(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)

        assert recorder.auto_fills == [("postal_code", "760001")]
        assert graph.derived_value == "760001"
        assert graph.is_auto_filled

    def test_changing_city_refills(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        graph.set_level("city", "Palmira")

        assert recorder.auto_fills == [("postal_code", "760001"), ("postal_code", "763533")]
        assert graph.derived_state.source_path == ("CO", "Valle del Cauca", "Palmira")

    def test_manual_value_is_never_overwritten(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.edit_derived("760099")
        select_cali(graph)
        graph.set_level("city", "Palmira")

        assert recorder.auto_fills == []
        assert graph.derived_value == "760099"
        assert graph.derived_state.origin == ORIGIN_MANUAL

    def test_clearing_manual_value_reenables_auto_fill(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.edit_derived("760099")
        graph.edit_derived("  ")
        select_cali(graph)

        assert recorder.auto_fills == [("postal_code", "760001")]

    def test_city_without_postal_codes(self, recorder):
        index = GeographyIndex.from_mapping(
            {"CO": {"states": {"Valle del Cauca": {"cities": {"Dagua": {"postal_codes": []}}}}}}
        )
        graph = recorder.graph(index)
        graph.set_level("country", "CO")
        graph.set_level("state", "Valle del Cauca")
        graph.set_level("city", "Dagua")

        assert recorder.auto_fills == []
        assert graph.derived_value == ""
        assert not graph.current_hint().available


class TestResets:
    """Changing a parent resets every descendant."""

    def test_state_change_resets_city_and_invalidates_postal_code(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        recorder.changes.clear()

        graph.set_level("state", "Cundinamarca")

        assert graph.value("city") is None
        assert graph.field("city").state == SELECTION_EMPTY
        assert recorder.changes == [("state", "Cundinamarca"), ("city", None)]
        assert graph.derived_value == ""
        assert graph.derived_state.origin == ORIGIN_UNSET
        assert recorder.cleared == ["postal_code"]

    def test_country_change_resets_state_and_city(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        recorder.changes.clear()

        graph.set_level("country", Candidate(id="US", label="United States"))

        assert recorder.changes == [("country", "US"), ("state", None), ("city", None)]
        assert graph.values() == {"country": "US", "state": None, "city": None}

    def test_unset_descendants_are_not_reported(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.set_level("country", "CO")
        graph.set_level("country", "ES")

        assert recorder.changes == [("country", "CO"), ("country", "ES")]

    def test_erasing_city_text_invalidates_auto_fill(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        graph.type_text("city", "")

        assert graph.value("city") is None
        assert graph.derived_value == ""
        assert recorder.cleared == ["postal_code"]

    def test_manual_value_survives_resets(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        graph.edit_derived("760050")
        graph.set_level("state", "Cundinamarca")

        assert graph.derived_value == "760050"
        assert recorder.cleared == []

    def test_descendant_queries_are_discarded(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)
        graph.type_text("city", "Pal")
        query = graph.field("city").begin_query("Pal")

        graph.set_level("state", "Cundinamarca")

        assert not graph.field("city").is_current(query)


class TestValidation:
    def test_setting_child_before_parent_raises(self, geography, recorder):
        graph = recorder.graph(geography)
        with pytest.raises(ValueError):
            graph.set_level("state", "Valle del Cauca")

    def test_unknown_level_raises(self, geography, recorder):
        graph = recorder.graph(geography)
        with pytest.raises(KeyError):
            graph.set_level("province", "X")

    def test_rejects_duplicate_levels(self):
        with pytest.raises(ValueError):
            CascadingSelectionGraph(["a", "a"])

    def test_rejects_out_of_range_source(self):
        rule = DerivedFieldRule(target="x", source_level=3, resolve=lambda path: "")
        with pytest.raises(ValueError):
            CascadingSelectionGraph(["a", "b"], derived=rule)


class TestOptionsAndLoad:
    def test_options_follow_parent_selection(self, geography, recorder):
        graph = recorder.graph(geography)

        assert graph.options("state") == ()
        graph.set_level("country", "CO")
        labels = [candidate.label for candidate in graph.options("state", "cund")]

        assert labels == ["Cundinamarca"]
        assert graph.is_enabled("state")
        assert not graph.is_enabled("city")

    def test_hint_lists_alternatives(self, geography, recorder):
        graph = recorder.graph(geography)
        hint = graph.hint_for(("CO", "Valle del Cauca", "Cali"))

        assert hint.available
        assert hint.value == "760001"
        assert "760050" in hint.alternatives
        assert not graph.hint_for(("CO", "Valle del Cauca")).available

    def test_load_does_not_auto_fill_or_report(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.load({"country": "CO", "state": "Valle del Cauca", "city": "Cali"}, derived_value="760020")

        assert recorder.changes == []
        assert recorder.auto_fills == []
        assert graph.derived_value == "760020"
        assert graph.derived_state.origin == ORIGIN_EXTERNAL
        assert graph.path() == ("CO", "Valle del Cauca", "Cali")

    def test_loaded_postal_code_is_kept_on_city_change(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.load({"country": "CO", "state": "Valle del Cauca", "city": "Cali"}, derived_value="760020")
        graph.set_level("city", "Palmira")

        assert graph.derived_value == "760020"
        assert recorder.auto_fills == []

    def test_load_stops_at_first_missing_level(self, geography, recorder):
        graph = recorder.graph(geography)
        graph.load({"country": "CO", "state": None, "city": "Cali"})

        assert graph.values() == {"country": "CO", "state": None, "city": None}

    def test_auto_origin_after_selection(self, geography, recorder):
        graph = recorder.graph(geography)
        select_cali(graph)

        assert graph.derived_state.origin == ORIGIN_AUTO
