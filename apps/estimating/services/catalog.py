"""
Supplier price list and brand-aware material calculator.
"""

import json
import math
import re
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..core.settings import settings
from .materials import LineItem
from .measurement import MeasurementSet

logger = get_logger(__name__)

DEFAULT_PRICELIST_PATH = Path(__file__).resolve().parent.parent / "data" / "srs_pricelist.json"

# Categories that take the waste factor; counted items (flashings, valley rolls) do not
WASTE_CATEGORIES = ("Shingles", "Underlayment", "Ice & Water", "Hip & Ridge", "Starter", "Drip Edge")

BUNDLES_PER_SQUARE = 3
SQUARES_PER_UNDERLAYMENT_ROLL = 10
SQUARES_PER_ICE_WATER_ROLL = 2
ICE_WATER_BAND_FT = 3
VALLEY_LF_PER_ROLL = 50
DRIP_EDGE_LF_PER_PIECE = 10
DEFAULT_RIDGE_LF_PER_BUNDLE = 33
DEFAULT_STARTER_LF_PER_BUNDLE = 105
SKYLIGHT_KIT_COST = 75.00
CHIMNEY_KIT_COST = 125.00


def _ceil(value: float) -> int:
    return math.ceil(round(value, 6))


class PricelistItem(BaseModel):
    category: str
    brand: str
    product: str
    item_code: str
    unit_of_measure: str
    unit_cost: float
    metadata: Dict[str, str] = {}

    @property
    def length_per_unit(self) -> Optional[float]:
        """Leading number of the length metadata, e.g. ``"33LF/BD"`` -> 33.0"""
        match = re.match(r"\s*([\d.]+)", self.metadata.get("length_per_unit", ""))
        return float(match.group(1)) if match else None


class Pricelist:
    """In-memory supplier price list."""

    def __init__(self, items: List[PricelistItem], supplier: str = "", effective_date: str = ""):
        self.items = items
        self.supplier = supplier
        self.effective_date = effective_date
        self._by_code = {item.item_code.upper(): item for item in items}

    def find_product(
        self,
        category: str,
        brand: Optional[str] = None,
        name_contains: Optional[str] = None,
    ) -> Optional[PricelistItem]:
        """First product in the category matching the optional brand and name filters."""
        products = [p for p in self.items if p.category == category]
        if brand:
            products = [p for p in products if p.brand == brand]
        if name_contains:
            needle = name_contains.lower()
            products = [p for p in products if needle in p.product.lower()]
        return products[0] if products else None

    def get(self, item_code: Optional[str]) -> Optional[PricelistItem]:
        if not item_code:
            return None
        return self._by_code.get(item_code.strip().upper())

    def available_brands(self) -> Dict[str, List[str]]:
        brands: Dict[str, set] = {}
        for item in self.items:
            brands.setdefault(item.category, set()).add(item.brand)
        return {category: sorted(names) for category, names in brands.items()}


def load_pricelist(path: Optional[str] = None) -> Pricelist:
    """Load a price list JSON file (``{"items": [...]}`` or a bare list)."""
    source = Path(path) if path else DEFAULT_PRICELIST_PATH
    with open(source, "r") as f:
        data = json.load(f)

    if isinstance(data, list):
        data = {"items": data}
    pricelist = Pricelist(
        [PricelistItem(**item) for item in data.get("items", [])],
        supplier=data.get("supplier", ""),
        effective_date=data.get("effective_date", ""),
    )
    logger.info("Loaded price list", path=str(source), items=len(pricelist.items))
    return pricelist


@lru_cache(maxsize=1)
def get_pricelist() -> Pricelist:
    return load_pricelist(settings.PRICELIST_PATH)


class PenetrationCounts(BaseModel):
    pipe_vent: int = Field(0, ge=0)
    skylight: int = Field(0, ge=0)
    chimney: int = Field(0, ge=0)
    hvac: int = Field(0, ge=0)


class CatalogMeasurements(BaseModel):
    total_squares: float = Field(0.0, ge=0)
    lf_ridge: float = Field(0.0, ge=0)
    lf_hip: float = Field(0.0, ge=0)
    lf_valley: float = Field(0.0, ge=0)
    lf_eave: float = Field(0.0, ge=0)
    lf_rake: float = Field(0.0, ge=0)
    penetration_counts: PenetrationCounts = PenetrationCounts()

    class Config:
        allow_inf_nan = False

    @classmethod
    def from_measurement_set(
        cls, measurements: MeasurementSet, penetrations: Optional[PenetrationCounts] = None
    ) -> "CatalogMeasurements":
        return cls(
            total_squares=measurements.total_squares,
            lf_ridge=measurements.ridge_ft,
            lf_hip=measurements.hip_ft,
            lf_valley=measurements.valley_ft,
            lf_eave=measurements.eave_ft,
            lf_rake=measurements.rake_ft,
            penetration_counts=penetrations or PenetrationCounts(),
        )


class BrandSelection(BaseModel):
    shingles: str = "GAF"
    ridge_cap: str = "GAF"
    starter: str = "GAF"
    underlayment: str = "Top Shield"
    ice_water: str = "GAF"


class MaterialQuantity(BaseModel):
    category: str
    product_name: str
    brand: str
    item_code: str
    quantity: int
    unit_of_measure: str
    unit_cost: float
    total_cost: float
    calculation_basis: str


class MaterialSummary(BaseModel):
    shingle_bundles: int = 0
    ridge_cap_bundles: int = 0
    underlayment_rolls: int = 0
    ice_water_rolls: int = 0
    starter_bundles: int = 0
    drip_edge_sticks: int = 0
    valley_rolls: int = 0
    penetration_flashings: int = 0


class MaterialCalculationResult(BaseModel):
    base_materials: List[MaterialQuantity]
    waste_adjusted_materials: List[MaterialQuantity]
    total_base_cost: float
    total_waste_adjusted_cost: float
    waste_percentage: float
    summary: MaterialSummary


class MaterialCalculator:
    """Brand-aware material takeoff against the supplier price list."""

    def __init__(
        self,
        measurements: CatalogMeasurements,
        waste_percentage: float = 10.0,
        brands: Optional[BrandSelection] = None,
        pricelist: Optional[Pricelist] = None,
    ):
        self.measurements = measurements
        # 0 means "not chosen"; the ordering form always defaults to 10%
        self.waste_percentage = waste_percentage or 10.0
        self.brands = brands or BrandSelection()
        self.pricelist = pricelist or get_pricelist()

    def calculate(self) -> MaterialCalculationResult:
        base = self._base_materials()
        adjusted = self._apply_waste(base)
        return MaterialCalculationResult(
            base_materials=base,
            waste_adjusted_materials=adjusted,
            total_base_cost=round(sum(m.total_cost for m in base), 2),
            total_waste_adjusted_cost=round(sum(m.total_cost for m in adjusted), 2),
            waste_percentage=self.waste_percentage,
            summary=self._summary(adjusted),
        )

    def _base_materials(self) -> List[MaterialQuantity]:
        materials: List[MaterialQuantity] = []
        for step in (
            self._shingles,
            self._ridge_cap,
            self._starter,
            self._underlayment,
            self._ice_water,
            self._valley,
            self._drip_edge,
        ):
            item = step()
            if item is not None:
                materials.append(item)
        materials.extend(self._flashings())
        return materials

    @staticmethod
    def _line(category: str, product: PricelistItem, quantity: int, unit: str, basis: str) -> MaterialQuantity:
        return MaterialQuantity(
            category=category,
            product_name=product.product,
            brand=product.brand,
            item_code=product.item_code,
            quantity=quantity,
            unit_of_measure=unit,
            unit_cost=product.unit_cost,
            total_cost=round(quantity * product.unit_cost, 2),
            calculation_basis=basis,
        )

    def _shingles(self) -> Optional[MaterialQuantity]:
        product = self.pricelist.find_product("Shingles", self.brands.shingles)
        if not product:
            return None
        squares = self.measurements.total_squares
        bundles = _ceil(squares * BUNDLES_PER_SQUARE)
        return self._line(
            "Shingles", product, _ceil(squares), "SQ",
            f"{squares:.2f} squares x {BUNDLES_PER_SQUARE} bundles/sq = {bundles} bundles",
        )

    def _ridge_cap(self) -> Optional[MaterialQuantity]:
        total = self.measurements.lf_ridge + self.measurements.lf_hip
        product = self.pricelist.find_product("Hip & Ridge", self.brands.ridge_cap)
        if not product or total == 0:
            return None
        per_bundle = product.length_per_unit or DEFAULT_RIDGE_LF_PER_BUNDLE
        bundles = _ceil(total / per_bundle)
        return self._line(
            "Hip & Ridge", product, bundles, "BD",
            f"{total:.0f} LF / {per_bundle:g} LF/bundle = {bundles} bundles",
        )

    def _starter(self) -> Optional[MaterialQuantity]:
        total = self.measurements.lf_eave + self.measurements.lf_rake
        product = self.pricelist.find_product("Starter", self.brands.starter)
        if not product or total == 0:
            return None
        per_bundle = product.length_per_unit or DEFAULT_STARTER_LF_PER_BUNDLE
        bundles = _ceil(total / per_bundle)
        return self._line(
            "Starter", product, bundles, "BD",
            f"{total:.0f} LF / {per_bundle:g} LF/bundle = {bundles} bundles",
        )

    def _underlayment(self) -> Optional[MaterialQuantity]:
        product = self.pricelist.find_product("Underlayment", self.brands.underlayment)
        if not product:
            return None
        squares = self.measurements.total_squares
        rolls = _ceil(squares / SQUARES_PER_UNDERLAYMENT_ROLL)
        return self._line(
            "Underlayment", product, rolls, "RL",
            f"{squares:.2f} squares / {SQUARES_PER_UNDERLAYMENT_ROLL} sq/roll = {rolls} rolls",
        )

    def _ice_water(self) -> Optional[MaterialQuantity]:
        m = self.measurements
        squares = (m.lf_eave * ICE_WATER_BAND_FT + m.lf_valley * ICE_WATER_BAND_FT) / 100
        product = self.pricelist.find_product("Ice & Water", self.brands.ice_water)
        if not product or squares == 0:
            return None
        rolls = _ceil(squares / SQUARES_PER_ICE_WATER_ROLL)
        return self._line(
            "Ice & Water", product, rolls, "RL",
            f"Eaves ({m.lf_eave:g}LF x 3') + Valleys ({m.lf_valley:g}LF x 3') = "
            f"{squares:.1f} sq / {SQUARES_PER_ICE_WATER_ROLL} sq/roll = {rolls} rolls",
        )

    def _valley(self) -> Optional[MaterialQuantity]:
        valley = self.measurements.lf_valley
        if valley == 0:
            return None
        product = self.pricelist.find_product("Metal", name_contains="Valley Roll")
        if not product:
            return None
        rolls = _ceil(valley / VALLEY_LF_PER_ROLL)
        return self._line(
            "Valley", product, rolls, "RL",
            f"{valley:.0f} LF / {VALLEY_LF_PER_ROLL} LF/roll = {rolls} rolls",
        )

    def _drip_edge(self) -> Optional[MaterialQuantity]:
        total = self.measurements.lf_eave + self.measurements.lf_rake
        product = self.pricelist.find_product("Metal", name_contains="Drip Edge")
        if not product or total == 0:
            return None
        sticks = _ceil(total / DRIP_EDGE_LF_PER_PIECE)
        return self._line(
            "Drip Edge", product, sticks, "PC",
            f"{total:.0f} LF / {DRIP_EDGE_LF_PER_PIECE} LF/piece = {sticks} pieces",
        )

    def _flashings(self) -> List[MaterialQuantity]:
        counts = self.measurements.penetration_counts
        materials = []

        if counts.pipe_vent > 0:
            product = self.pricelist.find_product("Ventilation", name_contains='Lead Boot 2"')
            if product:
                line = self._line("Flashing", product, counts.pipe_vent, "EA",
                                  f"{counts.pipe_vent} pipe vents")
                materials.append(line)

        for count, name, code, cost in (
            (counts.skylight, "Skylight Flashing Kit", "SKYLIGHT-KIT", SKYLIGHT_KIT_COST),
            (counts.chimney, "Chimney Flashing Kit", "CHIMNEY-KIT", CHIMNEY_KIT_COST),
        ):
            if count > 0:
                materials.append(MaterialQuantity(
                    category="Flashing",
                    product_name=name,
                    brand="Generic",
                    item_code=code,
                    quantity=count,
                    unit_of_measure="EA",
                    unit_cost=cost,
                    total_cost=round(count * cost, 2),
                    calculation_basis=f"{count} {name.split()[0].lower()}s",
                ))

        return materials

    def _apply_waste(self, materials: List[MaterialQuantity]) -> List[MaterialQuantity]:
        factor = 1 + self.waste_percentage / 100
        adjusted = []
        for material in materials:
            if material.category not in WASTE_CATEGORIES:
                adjusted.append(material)
                continue
            quantity = _ceil(material.quantity * factor)
            adjusted.append(material.copy(update={
                "quantity": quantity,
                "total_cost": round(quantity * material.unit_cost, 2),
                "calculation_basis": f"{material.calculation_basis} + {self.waste_percentage:g}% waste = {quantity}",
            }))
        return adjusted

    @staticmethod
    def _summary(materials: List[MaterialQuantity]) -> MaterialSummary:
        summary = MaterialSummary()
        for m in materials:
            if m.category == "Shingles":
                summary.shingle_bundles = m.quantity * BUNDLES_PER_SQUARE
            elif m.category == "Hip & Ridge":
                summary.ridge_cap_bundles = m.quantity
            elif m.category == "Underlayment":
                summary.underlayment_rolls = m.quantity
            elif m.category == "Ice & Water":
                summary.ice_water_rolls = m.quantity
            elif m.category == "Starter":
                summary.starter_bundles = m.quantity
            elif m.category == "Drip Edge":
                summary.drip_edge_sticks = m.quantity
            elif m.category == "Valley":
                summary.valley_rolls = m.quantity
            elif m.category == "Flashing":
                summary.penetration_flashings += m.quantity
        return summary


class PriceRefreshResult(BaseModel):
    line_items: List[LineItem]
    updated: int
    unmatched: int


def refresh_prices(
    line_items: List[LineItem],
    pricelist: Optional[Pricelist] = None,
    now: Optional[datetime] = None,
) -> PriceRefreshResult:
    """Re-price items whose SKU is on the price list; others pass through unchanged."""
    pricelist = pricelist or get_pricelist()
    stamp = now or datetime.utcnow()
    refreshed = []
    updated = 0
    unmatched = 0

    for item in line_items:
        product = pricelist.get(item.sku)
        if product is None:
            unmatched += 1
            refreshed.append(item)
            continue
        updated += 1
        refreshed.append(item.copy(update={
            "unit_cost": product.unit_cost,
            "last_price_updated": stamp,
        }))

    logger.info("Refreshed line item prices", updated=updated, unmatched=unmatched)
    return PriceRefreshResult(line_items=refreshed, updated=updated, unmatched=unmatched)
