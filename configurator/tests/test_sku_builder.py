"""Pin SKU assembly: segment order, override precedence, placeholders."""

import pytest

from configurator.errors import DiagnosticKind, MissingFieldOrder
from configurator.logic.catalog import SkuField
from configurator.logic.rules_engine import RuleOverrides, build_rule_context, evaluate
from configurator.logic.sku import (
    SOURCE_DEFAULT,
    SOURCE_OPTION,
    SOURCE_OVERRIDE,
    build_sku,
    validate_field_order,
)


def _build(selection, snapshot, overrides=None, **kwargs):
    return build_sku(selection, overrides, snapshot.sku_field_order, snapshot, **kwargs)


# =============================================================================
# BASIC ASSEMBLY
# =============================================================================

class TestAssembly:
    def test_full_selection(self, snapshot, full_deco_selection):
        result = _build(full_deco_selection, snapshot)
        assert result.sku == "DECO-C-D-2424-BK-27-V-AF+DM"
        assert all(s.source == SOURCE_OPTION for s in result.segments)
        assert result.warnings == []
        assert not result.product_override

    def test_segments_follow_field_order(self, snapshot, full_deco_selection):
        result = _build(full_deco_selection, snapshot)
        assert [s.collection for s in result.segments] == [
            "product_lines", "mirror_styles", "light_directions", "sizes",
            "frame_colors", "color_temperatures", "mounting_options", "accessories",
        ]
        assert [s.order for s in result.segments] == [1, 2, 3, 4, 5, 6, 7, 8]

    def test_disabled_field_never_appears(self, snapshot, full_deco_selection):
        selection = {**full_deco_selection, "frame_thickness": "1"}
        result = _build(selection, snapshot)
        assert "frame_thicknesses" not in [s.collection for s in result.segments]
        assert "TF" not in result.sku.split("-")

    def test_multi_select_uses_selection_order(self, snapshot, full_deco_selection):
        selection = {**full_deco_selection, "accessories": ["3", "1"]}
        assert _build(selection, snapshot).sku.endswith("-DM+NL")

    def test_optional_unselected_fields_are_omitted(self, snapshot, full_deco_selection):
        selection = dict(full_deco_selection)
        del selection["mounting_option"]
        selection["accessories"] = []
        result = _build(selection, snapshot)
        assert result.sku == "DECO-C-D-2424-BK-27"
        assert result.warnings == []

    def test_custom_delimiters(self, snapshot, full_deco_selection):
        result = _build(full_deco_selection, snapshot, delimiter=".", multi_separator="/")
        assert result.sku == "DECO.C.D.2424.BK.27.V.AF/DM"

    def test_field_order_is_sorted_by_position(self, snapshot):
        order = [SkuField("sizes", 2), SkuField("mirror_styles", 1)]
        result = build_sku({"mirror_style": "2", "size": "3"}, None, order, snapshot)
        assert result.sku == "R-3036"


# =============================================================================
# OVERRIDE PRECEDENCE
# =============================================================================

class TestOverridePrecedence:
    def test_product_override_replaces_whole_sku(self, snapshot, full_deco_selection):
        result = _build(full_deco_selection, snapshot, RuleOverrides(product_sku_override="DECO-W"))
        assert result.sku == "DECO-W"
        assert result.segments == []
        assert result.product_override

    def test_product_override_beats_everything(self, snapshot, full_deco_selection):
        overrides = RuleOverrides(
            product_sku_override="DECO-W",
            product_line_sku_override="T24",
            segment_overrides={"light_directions": "IN"},
        )
        assert _build(full_deco_selection, snapshot, overrides).sku == "DECO-W"

    def test_line_override_replaces_line_segment(self, snapshot, full_deco_selection):
        result = _build(full_deco_selection, snapshot, RuleOverrides(product_line_sku_override="T24"))
        assert result.sku == "T24-C-D-2424-BK-27-V-AF+DM"
        assert result.segments[0].source == SOURCE_OVERRIDE

    def test_segment_override_replaces_one_segment(self, snapshot, full_deco_selection):
        overrides = RuleOverrides(segment_overrides={"light_directions": "IN"})
        result = _build(full_deco_selection, snapshot, overrides)
        assert result.sku == "DECO-C-IN-2424-BK-27-V-AF+DM"
        assert [s.source for s in result.segments].count(SOURCE_OVERRIDE) == 1

    def test_segment_override_fills_unselected_field(self, snapshot, full_deco_selection):
        selection = dict(full_deco_selection)
        del selection["light_direction"]
        overrides = RuleOverrides(segment_overrides={"light_directions": "IN"})
        result = _build(selection, snapshot, overrides)
        assert result.sku == "DECO-C-IN-2424-BK-27-V-AF+DM"
        assert result.warnings == []

    def test_field_values_do_not_touch_the_sku(self, snapshot, full_deco_selection):
        overrides = RuleOverrides(field_values={"finish": "matte"})
        assert _build(full_deco_selection, snapshot, overrides).sku == "DECO-C-D-2424-BK-27-V-AF+DM"

    def test_seed_rules_end_to_end(self, snapshot, full_deco_selection):
        # Circle Both is the wide frame product; rule 1 replaces the SKU
        selection = {**full_deco_selection, "light_direction": "3", "frame_thickness": "2", "size": "6"}
        ctx = build_rule_context(selection, snapshot)
        overrides = evaluate(snapshot.rules, ctx, snapshot.field_mapping).overrides
        assert _build(selection, snapshot, overrides).sku == "DECO-W"

    def test_seed_indirect_rule_end_to_end(self, snapshot, full_deco_selection):
        selection = {**full_deco_selection, "light_direction": "2"}
        ctx = build_rule_context(selection, snapshot)
        overrides = evaluate(snapshot.rules, ctx, snapshot.field_mapping).overrides
        assert _build(selection, snapshot, overrides).sku == "DECO-C-IN-2424-BK-27-V-AF+DM"


# =============================================================================
# MISSING DATA
# =============================================================================

class TestMissingData:
    def test_required_field_gets_placeholder_and_warning(self, snapshot, full_deco_selection):
        selection = dict(full_deco_selection)
        del selection["size"]
        result = _build(selection, snapshot)
        assert result.sku == "DECO-C-D--BK-27-V-AF+DM"
        sizes = [s for s in result.segments if s.collection == "sizes"][0]
        assert sizes.source == SOURCE_DEFAULT
        assert sizes.code == ""
        assert [w.kind for w in result.warnings] == [DiagnosticKind.SKU_SEGMENT_MISSING]
        assert result.warnings[0].subject == "sizes"

    def test_unknown_option_id_counts_as_unselected(self, snapshot, full_deco_selection):
        selection = {**full_deco_selection, "frame_color": "99"}
        result = _build(selection, snapshot)
        assert result.sku == "DECO-C-D-2424--27-V-AF+DM"
        assert len(result.warnings) == 1

    def test_empty_selection_builds_placeholders(self, snapshot):
        result = _build({}, snapshot)
        # Six required segments, optional ones left out
        assert result.sku == "-----"
        assert len(result.warnings) == 6

    def test_no_enabled_field_order_raises(self, snapshot, full_deco_selection):
        with pytest.raises(MissingFieldOrder):
            build_sku(full_deco_selection, None, [], snapshot)
        with pytest.raises(MissingFieldOrder):
            build_sku(full_deco_selection, None, [SkuField("sizes", 1, enabled=False)], snapshot)

    def test_to_dict(self, snapshot, full_deco_selection):
        data = _build(full_deco_selection, snapshot).to_dict()
        assert data["sku"] == "DECO-C-D-2424-BK-27-V-AF+DM"
        assert data["segments"][0] == {
            "collection": "product_lines", "order": 1, "code": "DECO", "source": "option",
        }


# =============================================================================
# FIELD ORDER VALIDATION
# =============================================================================

class TestValidateFieldOrder:
    def test_seed_order_is_valid(self, snapshot):
        assert validate_field_order(snapshot.sku_field_order) == []

    def test_duplicate_position(self):
        errors = validate_field_order([SkuField("sizes", 1), SkuField("frame_colors", 1)])
        assert len(errors) == 1
        assert "Position 1" in errors[0]

    def test_duplicate_collection(self):
        errors = validate_field_order([SkuField("sizes", 1), SkuField("sizes", 2)])
        assert errors == ["Collection 'sizes' appears more than once"]

    def test_disabled_entries_are_ignored(self):
        assert validate_field_order([SkuField("sizes", 1), SkuField("frame_colors", 1, enabled=False)]) == []
