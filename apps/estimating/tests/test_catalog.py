"""
Tests for the supplier price list and material calculator.
"""
from datetime import datetime

import pytest

from ..services.catalog import (
    BrandSelection,
    CatalogMeasurements,
    MaterialCalculator,
    PenetrationCounts,
    Pricelist,
    PricelistItem,
    get_pricelist,
    refresh_prices,
)
from ..services.materials import LineItem


@pytest.fixture
def catalog_measurements(reference_roof):
    return CatalogMeasurements.from_measurement_set(
        reference_roof, PenetrationCounts(pipe_vent=3, skylight=1)
    )


def _by_category(materials):
    return {m.category: m for m in materials}


class TestPricelist:
    """Bundled SRS price list"""

    def test_loads_bundled_list(self):
        pricelist = get_pricelist()
        assert pricelist.supplier == "SRS Distribution"
        assert len(pricelist.items) == 112

    def test_lookup_by_code_is_case_insensitive(self):
        item = get_pricelist().get("gaf-hdz")
        assert item.product == "GAF Timberline HDZ"
        assert get_pricelist().get("NOPE") is None

    def test_find_product_filters(self):
        pricelist = get_pricelist()
        assert pricelist.find_product("Hip & Ridge", "GAF").item_code == "GAF-SAR-HR"
        assert pricelist.find_product("Metal", name_contains="valley roll").item_code == "VALLEY-ROLL-26GA-16X50"
        assert pricelist.find_product("Shingles", "Nobody") is None

    def test_length_per_unit(self):
        assert get_pricelist().get("TAMKO-HR").length_per_unit == 33.3
        assert get_pricelist().get("GAF-HDZ").length_per_unit is None

    def test_available_brands(self):
        brands = get_pricelist().available_brands()
        assert "GAF" in brands["Shingles"]
        assert brands["Shingles"] == sorted(brands["Shingles"])


class TestMaterialCalculator:
    """Brand-aware takeoff"""

    def test_base_quantities(self, catalog_measurements):
        result = MaterialCalculator(catalog_measurements).calculate()
        base = _by_category(result.base_materials)

        assert base["Shingles"].quantity == 25
        assert base["Hip & Ridge"].quantity == 2
        assert base["Starter"].quantity == 2
        assert base["Underlayment"].quantity == 3
        assert base["Ice & Water"].quantity == 2
        assert base["Drip Edge"].quantity == 18
        assert "Valley" not in base
        assert result.total_base_cost == 3916.5

    def test_waste_only_on_waste_categories(self, catalog_measurements):
        result = MaterialCalculator(catalog_measurements, waste_percentage=10).calculate()
        adjusted = result.waste_adjusted_materials

        shingles = _by_category(adjusted)["Shingles"]
        assert shingles.quantity == 28
        flashings = [m for m in adjusted if m.category == "Flashing"]
        assert sorted(m.quantity for m in flashings) == [1, 3]

    def test_summary(self, catalog_measurements):
        summary = MaterialCalculator(catalog_measurements).calculate().summary
        assert summary.shingle_bundles == 84
        assert summary.drip_edge_sticks == 20
        assert summary.penetration_flashings == 4

    def test_zero_waste_defaults_to_ten(self, catalog_measurements):
        assert MaterialCalculator(catalog_measurements, waste_percentage=0).waste_percentage == 10.0

    def test_valley_rolls(self):
        m = CatalogMeasurements(total_squares=20, lf_valley=120)
        valley = _by_category(MaterialCalculator(m).calculate().base_materials)["Valley"]
        assert valley.quantity == 3
        assert valley.item_code == "VALLEY-ROLL-26GA-16X50"

    def test_brand_selection(self, catalog_measurements):
        brands = BrandSelection(shingles="Owens Corning", ridge_cap="Owens Corning")
        base = _by_category(MaterialCalculator(catalog_measurements, brands=brands).calculate().base_materials)
        assert base["Shingles"].item_code == "OC-OAKRIDGE"
        # 50 LF / 33 LF per bundle
        assert base["Hip & Ridge"].quantity == 2


class TestRefreshPrices:
    """Price refresh by SKU"""

    def test_matched_items_repriced(self):
        pricelist = Pricelist([
            PricelistItem(category="Shingles", brand="GAF", product="HDZ", item_code="GAF-HDZ",
                          unit_of_measure="SQ", unit_cost=130.0),
        ])
        stamp = datetime(2025, 8, 1)
        items = [
            LineItem(name="Shingles", sku="gaf-hdz", quantity=25, unit_cost=121.0),
            LineItem(name="Dumpster", quantity=1, unit_cost=450.0),
        ]
        result = refresh_prices(items, pricelist, now=stamp)

        assert result.updated == 1
        assert result.unmatched == 1
        assert result.line_items[0].unit_cost == 130.0
        assert result.line_items[0].last_price_updated == stamp
        assert result.line_items[1].unit_cost == 450.0
        assert result.line_items[1].last_price_updated is None
