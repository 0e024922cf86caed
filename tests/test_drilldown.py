"""Tests for drillmap.drilldown: selection transitions, filtering, go-back and hover text."""

from __future__ import annotations

import asyncio

import pytest

from conftest import PlanarBounds, RecordingTarget, RecordingVisibility
from drillmap.drilldown import (
    DrillDownStateMachine,
    InvalidTransitionError,
    display_name,
    label_text,
    visible_levels,
)
from drillmap.models import AdministrativeLevel, Feature, LayerSet, ViewportTransform


PROVINCE = AdministrativeLevel.PROVINCE
DISTRICT = AdministrativeLevel.DISTRICT
COMMUNE = AdministrativeLevel.COMMUNE


@pytest.fixture
def target():
    return RecordingTarget()


@pytest.fixture
def visibility():
    return RecordingVisibility()


@pytest.fixture
def machine(layers, target, visibility):
    return DrillDownStateMachine(
        layers,
        width=800,
        height=600,
        bounds_provider=PlanarBounds(),
        render_target=target,
        visibility=visibility,
        settle_delay_s=0.0,
    )


def _codes(collection, key):
    return sorted(feature.code(key) for feature in collection.features)


class TestInitialState:
    def test_starts_at_province_with_nothing_selected(self, machine, visibility):
        assert machine.level is PROVINCE
        assert machine.selection.is_initial
        assert machine.info_text == "Hover over a province"
        assert visibility.shown() == {PROVINCE}

    def test_rejects_empty_viewport(self, layers):
        with pytest.raises(ValueError):
            DrillDownStateMachine(layers, width=0, height=600, bounds_provider=PlanarBounds())


class TestSelectProvince:
    def test_advances_to_district_with_matching_subset(self, machine, layers, target, visibility):
        province = layers.province.features[0]
        subset = machine.select_province(province)

        assert machine.level is DISTRICT
        assert _codes(subset, "DIS_CODE") == ["101", "102", "103"]
        assert machine.selection.visible_district_subset is subset
        assert machine.selection.selected_province is province
        assert machine.selection.province_name == "Banteay Meanchey"
        assert machine.selection.selected_district is None
        assert machine.selection.visible_commune_subset is None
        assert target.transforms == [machine.selection.province_transform]
        assert not machine.selection.province_transform.is_identity
        assert visibility.shown() == {DISTRICT}

    def test_numeric_and_string_codes_compare_equal(self, machine, layers):
        # Province 1 has an int code, its districts carry the string "1".
        assert len(machine.select_province(layers.province.features[0])) == 3

    def test_string_province_code_matches_int_district_codes(self, machine, layers):
        subset = machine.select_province(layers.province.features[1])
        assert _codes(subset, "DIS_CODE") == ["201", "202", "203"]

    def test_province_without_children_gets_empty_subset(self, machine, layers):
        subset = machine.select_province(layers.province.features[2])
        assert subset is not None
        assert len(subset) == 0
        assert machine.level is DISTRICT

    def test_name_fallback_chain(self, machine, layers):
        machine.select_province(layers.province.features[1])
        assert machine.selection.province_name == "Battambang"

    def test_transform_scale_within_policy(self, machine, layers):
        machine.select_province(layers.province.features[0])
        assert 1.5 <= machine.selection.province_transform.k <= 12.0

    def test_reselect_at_district_replaces_selection(self, machine, layers):
        machine.select_province(layers.province.features[0])
        subset = machine.select_province(layers.province.features[1])
        assert machine.selection.selected_province is layers.province.features[1]
        assert _codes(subset, "DIS_CODE") == ["201", "202", "203"]
        assert machine.level is DISTRICT

    def test_not_allowed_from_commune(self, machine, layers):
        machine.select_province(layers.province.features[0])
        machine.select_district(layers.district.features[0])
        with pytest.raises(InvalidTransitionError):
            machine.select_province(layers.province.features[1])

    def test_missing_district_layer_yields_none(self, layers, caplog):
        machine = DrillDownStateMachine(
            LayerSet(province=layers.province),
            width=800,
            height=600,
            bounds_provider=PlanarBounds(),
        )
        with caplog.at_level("WARNING", logger="drillmap.drilldown"):
            subset = machine.select_province(layers.province.features[0])
        assert subset is None
        assert machine.level is DISTRICT
        assert "No district layer loaded" in caplog.text


class TestSelectDistrict:
    def test_advances_to_commune_with_matching_subset(self, machine, layers, target, visibility):
        machine.select_province(layers.province.features[0])
        district = machine.selection.visible_district_subset.features[0]
        subset = machine.select_district(district)

        assert machine.level is COMMUNE
        assert _codes(subset, "COM_CODE") == ["10101", "10102", "10103"]
        assert machine.selection.selected_district is district
        assert machine.selection.district_name == "District 101"
        assert target.transforms[-1] == machine.selection.district_transform
        assert 2.5 <= machine.selection.district_transform.k <= 12.0
        assert visibility.shown() == {DISTRICT, COMMUNE}

    def test_float_parent_code_matches(self, machine, layers):
        machine.select_province(layers.province.features[0])
        district = machine.selection.visible_district_subset.features[2]
        assert _codes(machine.select_district(district), "COM_CODE") == ["10301", "10302", "10303"]

    def test_not_allowed_from_province(self, machine, layers):
        with pytest.raises(InvalidTransitionError):
            machine.select_district(layers.district.features[0])
        assert machine.selection.is_initial

    def test_not_allowed_twice(self, machine, layers):
        machine.select_province(layers.province.features[0])
        machine.select_district(layers.district.features[0])
        with pytest.raises(InvalidTransitionError):
            machine.select_district(layers.district.features[1])

    def test_unnamed_district_keeps_province_info_text(self, machine, layers):
        machine.select_province(layers.province.features[0])
        machine.select_district(Feature("Polygon", [[[103.1, 12.1], [103.2, 12.1], [103.2, 12.2], [103.1, 12.1]]], {"DIS_CODE": 999}))
        assert machine.selection.district_name == ""
        assert machine.info_text == "Banteay Meanchey"

    def test_communes_have_no_children(self, machine, layers):
        with pytest.raises(InvalidTransitionError, match="no child layer"):
            machine._children_of(layers.commune.features[0], COMMUNE)


class TestGoBack:
    def test_province_then_back_restores_initial_state(self, machine, layers, target, visibility):
        machine.select_province(layers.province.features[0])
        level = asyncio.run(machine.go_back())

        assert level is PROVINCE
        assert machine.selection.is_initial
        assert target.transforms[-1] == ViewportTransform.identity()
        assert machine.info_text == "Hover over a province"
        assert visibility.shown() == {PROVINCE}

    def test_commune_back_to_district_restores_province_view(self, machine, layers, target):
        machine.select_province(layers.province.features[0])
        province_transform = machine.selection.province_transform
        subset = machine.selection.visible_district_subset
        machine.select_district(subset.features[0])

        level = asyncio.run(machine.go_back())

        assert level is DISTRICT
        assert target.transforms[-1] == province_transform
        assert machine.selection.selected_district is None
        assert machine.selection.district_name == ""
        assert machine.selection.visible_commune_subset is None
        assert machine.selection.visible_district_subset is subset
        assert machine.info_text == "Banteay Meanchey"

    def test_back_at_province_is_noop(self, machine, target):
        assert asyncio.run(machine.go_back()) is PROVINCE
        assert target.transforms == []
        assert machine.selection.is_initial

    def test_district_back_waits_for_settle_delay(self, layers):
        machine = DrillDownStateMachine(
            layers, width=800, height=600, bounds_provider=PlanarBounds(), settle_delay_s=0.05
        )
        machine.select_province(layers.province.features[0])

        async def main():
            task = asyncio.create_task(machine.go_back())
            await asyncio.sleep(0)
            during = machine.level
            await task
            return during

        assert asyncio.run(main()) is DISTRICT
        assert machine.level is PROVINCE

    def test_selection_during_settle_delay_wins(self, layers):
        machine = DrillDownStateMachine(
            layers, width=800, height=600, bounds_provider=PlanarBounds(), settle_delay_s=0.05
        )
        machine.select_province(layers.province.features[0])

        async def main():
            task = asyncio.create_task(machine.go_back())
            await asyncio.sleep(0)
            machine.select_district(machine.selection.visible_district_subset.features[0])
            return await task

        assert asyncio.run(main()) is COMMUNE
        assert machine.selection.selected_district is not None

    def test_new_province_during_settle_delay_is_kept(self, layers):
        machine = DrillDownStateMachine(
            layers, width=800, height=600, bounds_provider=PlanarBounds(), settle_delay_s=0.05
        )
        first, second = layers.province.features[0], layers.province.features[1]
        machine.select_province(first)

        async def main():
            task = asyncio.create_task(machine.go_back())
            await asyncio.sleep(0)
            machine.select_province(second)
            return await task

        assert asyncio.run(main()) is DISTRICT
        assert machine.selection.selected_province is second
        assert machine.selection.visible_district_subset is not None
        assert machine.info_text == machine.selection.province_name

    def test_reset_returns_to_initial(self, machine, layers, target):
        machine.select_province(layers.province.features[0])
        machine.select_district(layers.district.features[0])
        machine.reset()
        assert machine.selection.is_initial
        assert target.transforms[-1].is_identity


class TestHover:
    def test_hover_shows_feature_name(self, machine, layers):
        assert machine.hover(layers.province.features[0]) == "Banteay Meanchey"
        assert machine.info_text == "Banteay Meanchey"

    def test_hover_without_name_keeps_level_default(self, machine):
        assert machine.hover(Feature("Point", [0, 0], {})) == "Hover over a province"

    def test_hover_end_restores_level_default(self, machine, layers):
        machine.hover(layers.province.features[1])
        assert machine.hover_end() == "Hover over a province"

        machine.select_province(layers.province.features[0])
        machine.hover(machine.selection.visible_district_subset.features[1])
        assert machine.info_text == "District 102"
        assert machine.hover_end() == "Banteay Meanchey"


class TestNames:
    def test_display_name_per_level(self, layers):
        assert display_name(layers.province.features[2], PROVINCE) == "Kampong Cham"
        assert display_name(Feature("Point", [0, 0], {}), PROVINCE) == "Unknown"
        assert display_name(layers.district.features[3], DISTRICT) == "D201"
        assert display_name(Feature("Point", [0, 0], {"DIS_NAME": ""}), DISTRICT) == ""

    def test_label_text_chain(self, layers):
        assert label_text(layers.province.features[0]) == "Banteay Meanchey"
        assert label_text(layers.district.features[0]) == "D101"
        assert label_text(layers.commune.features[0]) == "C10101"
        assert label_text(Feature("Point", [0, 0], {"name": "x"})) == "N/A"

    def test_visible_levels(self):
        assert visible_levels(PROVINCE) == {PROVINCE}
        assert visible_levels(DISTRICT) == {DISTRICT}
        assert visible_levels(COMMUNE) == {DISTRICT, COMMUNE}
