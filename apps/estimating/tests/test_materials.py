"""
Tests for line-item materialization, presets and templates.
"""
import pytest
from datetime import datetime

from ..services.materials import (
    DEFAULT_PACKAGING_RULES,
    LineCategory,
    LineItem,
    PackagingRule,
    TemplateLine,
    apply_preset,
    apply_template,
    load_packaging_rules,
    materialize_line_items,
)
from ..services.measurement import IncompleteMeasurementError, MeasurementSet


def _quantities(items):
    return {item.name: item.quantity for item in items}


class TestMaterializeLineItems:
    """Packaging rule quantities"""

    def test_reference_roof(self, reference_roof):
        quantities = _quantities(materialize_line_items(reference_roof))

        assert quantities["Architectural Shingles"] == 25
        assert quantities["Synthetic Underlayment"] == 3
        assert quantities["Ridge Cap"] == 17
        assert quantities["Starter Strip"] == 2
        assert quantities["Ice & Water Shield"] == 1
        assert quantities["Drip Edge"] == 18
        assert quantities["Shingle Installation"] == 25
        assert "Valley Material" not in quantities

    def test_valley_item_when_valleys_present(self, reference_roof):
        reference_roof.valley_ft = 60
        quantities = _quantities(materialize_line_items(reference_roof))
        assert quantities["Valley Material"] == 2
        # (60 + 0.25 * 120) / 65
        assert quantities["Ice & Water Shield"] == 2

    def test_repeat_run_is_identical(self, reference_roof):
        first = materialize_line_items(reference_roof)
        second = materialize_line_items(reference_roof)
        assert [i.dict() for i in first] == [i.dict() for i in second]

    def test_float_noise_does_not_round_up(self):
        m = MeasurementSet(total_squares=25.000000000001, perimeter_ft=10)
        assert _quantities(materialize_line_items(m))["Architectural Shingles"] == 25

    def test_minimum_units(self):
        m = MeasurementSet(total_squares=0.5)
        quantities = _quantities(materialize_line_items(m))
        assert quantities["Drip Edge"] == 1
        assert quantities["Ridge Cap"] == 1

    def test_labor_category(self, reference_roof):
        items = materialize_line_items(reference_roof)
        labor = [i for i in items if i.category == LineCategory.LABOR]
        assert [i.name for i in labor] == ["Shingle Installation"]

    def test_zero_area_raises(self):
        with pytest.raises(IncompleteMeasurementError):
            materialize_line_items(MeasurementSet(ridge_ft=40))

    def test_custom_rule_table(self, reference_roof):
        rules = [PackagingRule(key="nails", name="Coil Nails", unit_type="box",
                               inputs={"total_squares": 1.0}, coverage=8.0)]
        items = materialize_line_items(reference_roof, rules)
        assert _quantities(items) == {"Coil Nails": 4}


class TestPackagingRules:
    """Rule validation and YAML loading"""

    def test_unknown_input_field_rejected(self):
        with pytest.raises(ValueError):
            PackagingRule(key="x", name="X", unit_type="each", inputs={"pitch": 1.0}, coverage=1.0)

    def test_coverage_must_be_positive(self):
        with pytest.raises(ValueError):
            PackagingRule(key="x", name="X", unit_type="each", inputs={"total_squares": 1.0}, coverage=0)

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - key: shingles\n"
            "    name: Designer Shingles\n"
            "    unit_type: square\n"
            "    unit_cost: 210\n"
            "    inputs: {total_squares: 1.0}\n"
            "    coverage: 1\n"
        )
        rules = load_packaging_rules(str(path))
        assert len(rules) == 1
        assert rules[0].unit_cost == 210

    def test_empty_yaml_rejected(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text("rules: []\n")
        with pytest.raises(ValueError):
            load_packaging_rules(str(path))

    def test_default_table_order(self):
        assert [r.key for r in DEFAULT_PACKAGING_RULES][:3] == ["shingles", "underlayment", "ridge_cap"]


class TestLineItem:
    """LineItem model"""

    def test_negative_quantity_rejected(self):
        with pytest.raises(ValueError):
            LineItem(name="Bad", quantity=-1)

    def test_record_is_json_safe(self):
        record = LineItem(name="Boot", last_price_updated=datetime(2025, 7, 24)).to_record()
        assert record["last_price_updated"].startswith("2025-07-24")
        assert record["category"] == "material"


class TestPresets:
    """Formula presets"""

    def test_shingle_preset(self, reference_roof):
        item = apply_preset("Shingles (Squares)", reference_roof, unit_cost=150)
        assert item.quantity == 27.5
        assert item.unit_type == "SQ"

    def test_preset_lookup_is_case_insensitive(self, reference_roof):
        item = apply_preset("drip edge (lf)", reference_roof)
        assert item.quantity == 180

    def test_unknown_preset(self, reference_roof):
        with pytest.raises(KeyError):
            apply_preset("Gutters", reference_roof)


class TestTemplates:
    """Template application"""

    def test_formula_lines(self, reference_roof):
        lines = [
            TemplateLine(name="Shingles", quantity_formula="ceil({{ measure.surface_squares }} * 1.1)"),
            TemplateLine(name="Dumpster", category=LineCategory.EQUIPMENT),
        ]
        result = apply_template(lines, reference_roof)
        assert _quantities(result.line_items) == {"Shingles": 28, "Dumpster": 1}
        assert result.formula_errors == []

    def test_broken_formula_falls_back_to_one(self, reference_roof):
        lines = [TemplateLine(name="Broken", quantity_formula="{{ measure.ridge_lf }} +")]
        result = apply_template(lines, reference_roof)
        assert result.line_items[0].quantity == 1
        assert result.formula_errors[0]["line"] == "Broken"
        assert result.formula_errors[0]["error"] == "FormulaSyntaxError"

    def test_helper_failures_fall_back_to_one(self, reference_roof):
        lines = [
            TemplateLine(name="Single Max", quantity_formula="max({{ measure.ridge_lf }})"),
            TemplateLine(name="Huge Ceil", quantity_formula="ceil({{ measure.ridge_lf }} * 1e308)"),
            TemplateLine(name="Ridge Cap", quantity_formula="ceil({{ measure.ridge_lf }} / 20)"),
        ]
        result = apply_template(lines, reference_roof)
        assert _quantities(result.line_items) == {"Single Max": 1, "Huge Ceil": 1, "Ridge Cap": 2}
        assert [e["line"] for e in result.formula_errors] == ["Single Max", "Huge Ceil"]
        assert result.formula_errors[1]["error"] == "FormulaEvaluationError"
