"""Pin the recompute pipeline and the Selection API (ConfigurationSession)."""

from unittest.mock import MagicMock

import pytest

from configurator.errors import CatalogUnavailable, UnknownProductLine
from configurator.logic.catalog import CatalogStore
from configurator.logic.filtering import compute_options, invalid_selections
from configurator.logic.session import (
    CATALOG_REFRESHED,
    OPTIONS_RECOMPUTED,
    RULES_EVALUATED,
    SELECTION_ADJUSTED,
    SELECTION_CHANGED,
    SKU_BUILT,
    ConfigurationSession,
    SessionManager,
    normalize_selection,
    recompute,
)

FULL_SKU = "DECO-C-D-2424-BK-27-V-AF+DM"


def _types(events):
    return [e.type for e in events]


# =============================================================================
# PIPELINE
# =============================================================================

class TestNormalizeSelection:
    def test_ids_are_stringified_and_empties_dropped(self, snapshot):
        normalized = normalize_selection(
            {"product_line": 1, "size": None, "frame_color": "", "accessories": 2, "mounting_option": []},
            snapshot,
        )
        assert normalized == {"product_line": "1", "accessories": ["2"]}


class TestRecompute:
    def test_pipeline_events_in_order(self, snapshot, settings):
        state, events = recompute({"product_line": 1, "mirror_style": 1}, snapshot, settings)
        assert _types(events) == [OPTIONS_RECOMPUTED, RULES_EVALUATED, SKU_BUILT]
        assert state.line_id == "1"
        assert state.options.available["sizes"] == {"5", "6"}
        assert state.sku.sku.startswith("DECO-C-")

    def test_no_product_line_means_nothing_to_compute(self, snapshot, settings):
        state, events = recompute({"mirror_style": "1"}, snapshot, settings)
        assert events == []
        assert state.options is None
        assert state.sku is None

    def test_input_selection_is_not_modified(self, snapshot, settings, full_deco_selection):
        selection = {**full_deco_selection, "mirror_style": "2"}
        recompute(selection, snapshot, settings)
        assert selection["size"] == "5"

    def test_unavailable_selection_is_adjusted(self, snapshot, settings, full_deco_selection):
        # Rectangle Direct offers no round sizes
        state, events = recompute({**full_deco_selection, "mirror_style": "2"}, snapshot, settings)
        adjusted = [e.payload for e in events if e.type == SELECTION_ADJUSTED]
        assert adjusted == [{"field": "size", "from": "5", "to": "1"}]
        assert state.selection["size"] == "1"
        assert state.sku.sku == "DECO-R-D-2430-BK-27-V-AF+DM"

    def test_rule_constraints_adjust_selection(self, snapshot, settings):
        selection = {
            "product_line": "2", "mirror_style": "2", "light_direction": "1", "size": "1",
            "frame_color": "1", "color_temperature": "1", "mounting_option": "1",
            "accessories": ["1", "3"],
        }
        state, events = recompute(selection, snapshot, settings)
        # No dimmer on Thin; night light pins 3000K
        assert state.selection["accessories"] == ["1"]
        assert state.selection["color_temperature"] == "2"
        assert {e.payload["field"] for e in events if e.type == SELECTION_ADJUSTED} == {
            "accessories", "color_temperature",
        }
        assert state.rules.matched_ids == [3, 4]
        assert state.sku.sku == "T23i-R-D-2430-BK-30-V-NL"

    def test_cross_dependent_attributes_settle(self, catalog_data, make_snapshot, settings):
        # Circle only comes Indirect, Rectangle only Direct
        catalog_data["products"] = [
            {"id": 301, "name": "Circle Indirect", "product_line": 1, "sku_code": "X-C-I",
             "mirror_style": 1, "light_direction": 2, "frame_thickness": 1},
            {"id": 302, "name": "Rectangle Direct", "product_line": 1, "sku_code": "X-R-D",
             "mirror_style": 2, "light_direction": 1, "frame_thickness": 1},
        ]
        catalog_data["products_options_overrides"] = []
        snapshot = make_snapshot(catalog_data)

        state, events = recompute(
            {"product_line": "1", "mirror_style": "1", "light_direction": "1"}, snapshot, settings,
        )
        adjusted = [e.payload for e in events if e.type == SELECTION_ADJUSTED]
        assert adjusted == [{"field": "mirror_style", "from": "1", "to": "2"}]
        assert state.selection["mirror_style"] == "2"
        assert state.selection["light_direction"] == "1"
        assert state.options.candidate_product_ids == ["302"]

        fresh = compute_options(state.selection, "1", snapshot, settings.trigger)
        assert invalid_selections(state.selection, fresh, snapshot) == {}
        assert state.options.available["mirror_styles"] == fresh.available["mirror_styles"]
        assert state.options.available["light_directions"] == fresh.available["light_directions"]

    def test_unsettled_field_is_cleared_and_state_recomputed(self, snapshot, settings,
                                                             full_deco_selection, monkeypatch):
        monkeypatch.setattr("configurator.logic.session.MAX_ADJUST_PASSES", 0)
        state, events = recompute({**full_deco_selection, "mirror_style": "2"}, snapshot, settings)
        adjusted = [e.payload for e in events if e.type == SELECTION_ADJUSTED]
        assert adjusted == [{"field": "size", "from": "5", "to": None}]
        assert "size" not in state.selection
        assert state.options.available["sizes"] == {"1", "2", "3", "4"}
        assert state.sku.sku == "DECO-R-D--BK-27-V-AF+DM"

    def test_product_override_reaches_sku(self, snapshot, settings, full_deco_selection):
        selection = {**full_deco_selection, "light_direction": "3", "frame_thickness": "2", "size": "6"}
        state, _ = recompute(selection, snapshot, settings)
        assert state.sku.sku == "DECO-W"
        assert state.sku.product_override

    def test_state_to_dict(self, snapshot, settings, full_deco_selection):
        state, _ = recompute(full_deco_selection, snapshot, settings)
        data = state.to_dict()
        assert data["sku"]["sku"] == FULL_SKU
        assert data["matched_rules"] == []
        assert data["options"]["available"]["sizes"] == ["5", "6"]
        assert data["catalog_as_of"] == snapshot.as_of.isoformat()


# =============================================================================
# SELECTION API
# =============================================================================

class TestConfigurationSession:
    def test_new_session_with_line(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        assert session.get("product_line") == "1"
        assert session.state.options is not None

    def test_new_session_with_unknown_line_raises(self, store, settings):
        with pytest.raises(UnknownProductLine):
            ConfigurationSession(store, settings, line_id=99)

    def test_set_and_get(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        state = session.set("mirror_style", 1)
        assert session.get("mirror_style") == "1"
        assert state.options.available["sizes"] == {"5", "6"}

    def test_set_none_clears_field(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        session.set("mirror_style", "1")
        session.set("mirror_style", None)
        assert session.get("mirror_style") is None
        assert len(session.state.options.available["sizes"]) == 9

    def test_switching_to_unknown_line_raises_and_keeps_state(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        with pytest.raises(UnknownProductLine):
            session.set("product_line", "99")
        assert session.get("product_line") == "1"

    def test_subscribe_and_unsubscribe(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        received = []
        unsubscribe = session.subscribe(received.append)

        session.set("mirror_style", "1")
        assert _types(received) == [SELECTION_CHANGED, OPTIONS_RECOMPUTED, RULES_EVALUATED, SKU_BUILT]
        assert received[0].payload == {"changes": {"mirror_style": "1"}}

        unsubscribe()
        session.set("mirror_style", "2")
        assert len(received) == 4

    def test_update_applies_all_changes_in_one_pass(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        received = []
        session.subscribe(received.append)
        session.update({"mirror_style": "1", "light_direction": "2"})
        assert _types(received).count(SKU_BUILT) == 1
        assert session.state.options.available["sizes"] == {"5"}

    def test_reset_keeps_product_line(self, store, settings, full_deco_selection):
        session = ConfigurationSession(store, settings, line_id=1)
        session.update(full_deco_selection)
        session.reset()
        assert session.selection == {"product_line": "1"}

    def test_reset_with_first_options(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        state = session.reset(use_first_options=True)
        # Circle + Direct only comes in round sizes: size 1 is adjusted to 24 Round
        assert session.selection == {
            "product_line": "1", "mirror_style": "1", "light_direction": "1",
            "size": "5", "frame_color": "1", "color_temperature": "1",
        }
        assert state.sku.sku == "DECO-C-D-2424-BK-27"
        assert state.sku.warnings == []

    def test_load_sku(self, store, settings, full_deco_selection):
        session = ConfigurationSession(store, settings)
        parsed, state = session.load_sku(FULL_SKU)
        assert parsed.confidence == "exact"
        assert session.selection == full_deco_selection
        assert state.sku.sku == FULL_SKU

    def test_load_degraded_sku_keeps_what_matched(self, store, settings):
        session = ConfigurationSession(store, settings)
        parsed, _ = session.load_sku("DECO-C-Q")
        assert parsed.confidence == "invalid"
        assert session.get("mirror_style") == "1"
        assert session.get("light_direction") is None


class TestCatalogRefresh:
    def test_refresh_installs_new_snapshot(self, store, settings):
        session = ConfigurationSession(store, settings, line_id=1)
        before = session.snapshot
        received = []
        session.subscribe(received.append)

        session.refresh_catalog()

        assert session.snapshot is not before
        assert received[0].type == CATALOG_REFRESHED
        assert received[0].payload["stale"] is False

    def test_failed_refresh_keeps_pinned_snapshot(self, snapshot, field_mapping, settings):
        source = MagicMock()
        source.get_product_lines.side_effect = CatalogUnavailable("catalog API down")
        store = CatalogStore(source, field_mapping)
        store.install(snapshot)
        try:
            session = ConfigurationSession(store, settings, line_id=1)
            received = []
            session.subscribe(received.append)

            state = session.refresh_catalog()

            assert session.snapshot is snapshot
            assert received[0].payload["stale"] is True
            assert "catalog API down" in received[0].payload["error"]
            assert state.options is not None
        finally:
            store.close()


# =============================================================================
# SESSION MANAGER
# =============================================================================

class TestSessionManager:
    def test_create_get_delete(self, store, settings):
        manager = SessionManager()
        session = manager.create_session(store, settings, line_id=1)
        assert manager.get_session(session.session_id) is session
        assert len(manager) == 1
        assert manager.delete_session(session.session_id)
        assert not manager.delete_session(session.session_id)
        assert manager.get_session(session.session_id) is None

    def test_cleanup_stale(self, store, settings):
        manager = SessionManager()
        old = manager.create_session(store, settings, line_id=1)
        fresh = manager.create_session(store, settings, line_id=2)
        old.last_activity = 0
        manager.cleanup_stale(max_age_seconds=60)
        assert manager.get_session(old.session_id) is None
        assert manager.get_session(fresh.session_id) is fresh
