"""
Line-item materialization for roofing estimates.

Measurements become purchasable quantities through packaging rules:
ceiling division over a coverage constant with a minimum order.
"""

import json
import math
from datetime import datetime
from functools import lru_cache
from typing import Dict, List, Optional, Any

import yaml
from pydantic import BaseModel, Field, validator
from enum import Enum

from ..core.logging import get_logger
from ..core.settings import settings
from .formula import evaluate_formula_safe
from .measurement import MeasurementSet, IncompleteMeasurementError, QUANTITY_FIELDS

logger = get_logger(__name__)


class LineCategory(str, Enum):
    MATERIAL = "material"
    LABOR = "labor"
    EQUIPMENT = "equipment"
    OTHER = "other"


class LineItem(BaseModel):
    category: LineCategory = LineCategory.MATERIAL
    name: str
    description: str = ""
    quantity: float = 0.0
    unit_cost: float = 0.0
    unit_type: str = "each"
    markup_percent: float = 0.0
    sku: Optional[str] = None
    last_price_updated: Optional[datetime] = None

    class Config:
        allow_inf_nan = False

    @validator("quantity", "unit_cost", "markup_percent")
    def non_negative(cls, v):
        if v < 0:
            raise ValueError("must be non-negative")
        return v

    def to_record(self) -> Dict[str, Any]:
        """JSON-safe dict for storage in a JSON column."""
        return json.loads(self.json())


class PackagingRule(BaseModel):
    """
    Converts weighted measurement fields into whole purchasable units.

    quantity = max(minimum_units, ceil(sum(field * weight) / coverage))
    """
    key: str
    name: str
    description: str = ""
    category: LineCategory = LineCategory.MATERIAL
    unit_type: str
    unit_cost: float = 0.0
    inputs: Dict[str, float]
    coverage: float = Field(..., gt=0)
    minimum_units: int = 1
    requires_positive: Optional[str] = None

    @validator("inputs")
    def known_fields(cls, v):
        unknown = [name for name in v if name not in QUANTITY_FIELDS]
        if unknown:
            raise ValueError(f"unknown measurement fields: {', '.join(unknown)}")
        return v

    def applies_to(self, measurements: MeasurementSet) -> bool:
        if not self.requires_positive:
            return True
        return getattr(measurements, self.requires_positive) > 0

    def quantity_for(self, measurements: MeasurementSet) -> int:
        base = sum(getattr(measurements, field) * weight for field, weight in self.inputs.items())
        # round() keeps 25.000000000001 from becoming 26
        units = math.ceil(round(base / self.coverage, 6))
        return max(self.minimum_units, units)


DEFAULT_PACKAGING_RULES = [
    PackagingRule(
        key="shingles", name="Architectural Shingles",
        description="Laminated asphalt shingles, priced per square",
        unit_type="square", unit_cost=150.0,
        inputs={"total_squares": 1.0}, coverage=1.0,
    ),
    PackagingRule(
        key="underlayment", name="Synthetic Underlayment",
        description="Synthetic underlayment, 10 squares per roll",
        unit_type="roll", unit_cost=67.0,
        inputs={"total_squares": 1.0}, coverage=10.0,
    ),
    PackagingRule(
        key="ridge_cap", name="Ridge Cap",
        description="Hip and ridge cap shingles over ridges and hips",
        unit_type="bundle", unit_cost=55.0,
        inputs={"ridge_ft": 1.0, "hip_ft": 1.0}, coverage=3.0,
    ),
    PackagingRule(
        key="starter", name="Starter Strip",
        description="Starter strip along eaves and rakes",
        unit_type="bundle", unit_cost=35.0,
        inputs={"eave_ft": 1.0, "rake_ft": 1.0}, coverage=100.0,
    ),
    PackagingRule(
        key="ice_water", name="Ice & Water Shield",
        description="Self-adhered membrane in valleys and along eaves",
        unit_type="roll", unit_cost=85.0,
        inputs={"valley_ft": 1.0, "eave_ft": 0.25}, coverage=65.0,
    ),
    PackagingRule(
        key="drip_edge", name="Drip Edge",
        description="Metal drip edge, 10 ft pieces",
        unit_type="piece", unit_cost=8.0,
        inputs={"perimeter_ft": 1.0}, coverage=10.0,
    ),
    PackagingRule(
        key="valley", name="Valley Material",
        description="Valley metal, 50 ft rolls",
        unit_type="roll", unit_cost=65.0,
        inputs={"valley_ft": 1.0}, coverage=50.0,
        requires_positive="valley_ft",
    ),
    PackagingRule(
        key="installation", name="Shingle Installation",
        description="Tear-off and installation labor per square",
        category=LineCategory.LABOR, unit_type="square", unit_cost=85.0,
        inputs={"total_squares": 1.0}, coverage=1.0,
    ),
]


def load_packaging_rules(path: str) -> List[PackagingRule]:
    """
    Load a packaging rule table from YAML.

    The file holds a top-level ``rules`` list; each entry uses the
    PackagingRule field names.
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("rules") if isinstance(data, dict) else data
    if not entries:
        raise ValueError(f"No packaging rules found in {path}")

    rules = [PackagingRule(**entry) for entry in entries]
    logger.info("Loaded packaging rules", path=path, count=len(rules))
    return rules


@lru_cache(maxsize=1)
def get_packaging_rules() -> List[PackagingRule]:
    """Configured rule table, falling back to the built-in defaults."""
    if settings.PACKAGING_RULES_PATH:
        return load_packaging_rules(settings.PACKAGING_RULES_PATH)
    return list(DEFAULT_PACKAGING_RULES)


def materialize_line_items(
    measurements: MeasurementSet,
    rules: Optional[List[PackagingRule]] = None,
) -> List[LineItem]:
    """
    Build the auto-populated line-item list for a measurement set.

    The result is a fresh list; callers replace their current items with it.

    Raises:
        IncompleteMeasurementError: when total squares is zero
    """
    if not measurements.is_complete:
        raise IncompleteMeasurementError(
            "Roof area is zero; cannot auto-populate line items until the roof is measured"
        )

    items = []
    for rule in rules if rules is not None else get_packaging_rules():
        if not rule.applies_to(measurements):
            continue
        items.append(LineItem(
            category=rule.category,
            name=rule.name,
            description=rule.description,
            quantity=rule.quantity_for(measurements),
            unit_cost=rule.unit_cost,
            unit_type=rule.unit_type,
        ))

    logger.info("Materialized line items", count=len(items),
                total_squares=measurements.total_squares)
    return items


class FormulaPreset(BaseModel):
    name: str
    formula: str
    unit_type: str


FORMULA_PRESETS = [
    FormulaPreset(name="Shingles (Squares)", formula="{{ measure.surface_squares }} * 1.10", unit_type="SQ"),
    FormulaPreset(name="Underlayment (SF)", formula="{{ measure.surface_area_sf }} * 1.05", unit_type="SF"),
    FormulaPreset(name="Ridge Cap (LF)", formula="{{ measure.ridge_lf }} * 1.00", unit_type="LF"),
    FormulaPreset(name="Valley Metal (LF)", formula="{{ measure.valley_lf }} * 1.00", unit_type="LF"),
    FormulaPreset(name="Starter Shingles (LF)", formula="{{ measure.perimeter_lf }} * 1.00", unit_type="LF"),
    FormulaPreset(name="Drip Edge (LF)", formula="{{ measure.rake_lf }} + {{ measure.eave_lf }}", unit_type="LF"),
]


def get_preset(name: str) -> FormulaPreset:
    for preset in FORMULA_PRESETS:
        if preset.name.lower() == name.lower():
            return preset
    raise KeyError(name)


def apply_preset(name: str, measurements: MeasurementSet, unit_cost: float = 0.0) -> LineItem:
    """Create a line item from a named preset; failed formulas yield quantity 0."""
    preset = get_preset(name)
    result = evaluate_formula_safe(preset.formula, measurements.as_measure_variables(), fallback=0.0)
    return LineItem(
        name=preset.name,
        quantity=round(max(result.value, 0.0), 2),
        unit_cost=unit_cost,
        unit_type=preset.unit_type,
    )


class TemplateLine(BaseModel):
    """One line of an estimate template with a quantity formula."""
    category: LineCategory = LineCategory.MATERIAL
    name: str
    description: str = ""
    quantity_formula: str = "1"
    unit_cost: float = 0.0
    unit_type: str = "each"
    markup_percent: float = 0.0
    sku: Optional[str] = None


class TemplateResult(BaseModel):
    line_items: List[LineItem]
    formula_errors: List[Dict[str, Any]] = []


def apply_template(lines: List[TemplateLine], measurements: MeasurementSet) -> TemplateResult:
    """
    Evaluate every template line against the measurements.

    Lines whose formula fails get quantity 1 and are reported in
    ``formula_errors`` so a broken template is visible.
    """
    variables = measurements.as_measure_variables()
    items = []
    errors = []
    for line in lines:
        result = evaluate_formula_safe(line.quantity_formula, variables, fallback=1.0)
        if result.error is not None:
            errors.append({"line": line.name, **result.error.to_dict()})
        items.append(LineItem(
            category=line.category,
            name=line.name,
            description=line.description,
            quantity=round(max(result.value, 0.0), 2),
            unit_cost=line.unit_cost,
            unit_type=line.unit_type,
            markup_percent=line.markup_percent,
            sku=line.sku,
        ))

    if errors:
        logger.warning("Template applied with formula errors", errors=len(errors))
    return TemplateResult(line_items=items, formula_errors=errors)
