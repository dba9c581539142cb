"""
Pricing service for roofing estimates.

The guaranteed-margin calculation runs in a hosted edge function. This
module builds its request, validates what the estimator filled in, and
reads the response back. Local totals are for display only; they never
back-solve a selling price.
"""

from typing import Dict, List, Optional, Any
from pydantic import BaseModel, Field

from ..core.logging import get_logger
from ..core.settings import settings
from ..integrations.supabase import SupabaseGateway, RemoteCallError
from .materials import LineItem, LineCategory
from .measurement import MeasurementSet

logger = get_logger(__name__)


class PricingValidationError(Exception):
    """Required estimate inputs are missing or invalid."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.message = message
        self.field = field


class PricingConfig(BaseModel):
    """Margin targets the pricing function must satisfy (percent)."""
    target_margin_percent: float = Field(default_factory=lambda: settings.DEFAULT_TARGET_MARGIN_PERCENT, ge=15, le=50)
    overhead_percent: float = Field(default_factory=lambda: settings.DEFAULT_OVERHEAD_PERCENT, ge=0, le=50)
    commission_percent: float = Field(default_factory=lambda: settings.DEFAULT_COMMISSION_PERCENT, ge=0, le=20)
    waste_factor_percent: float = Field(default_factory=lambda: settings.DEFAULT_WASTE_FACTOR_PERCENT, ge=0, le=30)
    contingency_percent: float = Field(default_factory=lambda: settings.DEFAULT_CONTINGENCY_PERCENT, ge=0, le=20)


class LinearMeasurements(BaseModel):
    perimeter: float = 0.0
    ridges: float = 0.0
    hips: float = 0.0
    valleys: float = 0.0
    eaves: float = 0.0
    rakes: float = 0.0


class PropertyDetails(BaseModel):
    roof_area_sq_ft: float = 0.0
    roof_type: str = "shingle"
    complexity_level: str = "moderate"
    roof_pitch: str = "4/12"
    customer_name: str = ""
    customer_address: str = ""
    linear_measurements: Optional[LinearMeasurements] = None

    @classmethod
    def from_measurements(
        cls,
        measurements: MeasurementSet,
        customer_name: str,
        customer_address: str = "",
        roof_type: str = "shingle",
    ) -> "PropertyDetails":
        return cls(
            roof_area_sq_ft=measurements.total_area_sqft,
            roof_type=roof_type,
            complexity_level=measurements.complexity.value,
            roof_pitch=measurements.pitch,
            customer_name=customer_name,
            customer_address=customer_address,
            linear_measurements=LinearMeasurements(
                perimeter=measurements.perimeter_ft,
                ridges=measurements.ridge_ft,
                hips=measurements.hip_ft,
                valleys=measurements.valley_ft,
                eaves=measurements.eave_ft,
                rakes=measurements.rake_ft,
            ),
        )


class PricingLineItem(BaseModel):
    """Line item as the pricing function expects it."""
    item_category: str
    item_name: str
    description: str = ""
    quantity: float
    unit_cost: float
    unit_type: str
    markup_percent: float = 0.0

    @classmethod
    def from_line_item(cls, item: LineItem) -> "PricingLineItem":
        return cls(
            item_category=item.category.value,
            item_name=item.name,
            description=item.description,
            quantity=item.quantity,
            unit_cost=item.unit_cost,
            unit_type=item.unit_type,
            markup_percent=item.markup_percent,
        )


class PricingRequest(BaseModel):
    pipeline_entry_id: str
    template_id: Optional[str] = None
    property_details: PropertyDetails
    line_items: List[PricingLineItem]
    sales_rep_id: Optional[str] = None
    target_margin_percent: float
    overhead_percent: float
    commission_percent: float
    waste_factor_percent: float
    contingency_percent: float


class CalculationResult(BaseModel):
    """Figures returned by the pricing function; unknown keys are kept."""
    material_cost: float = 0.0
    material_markup_percent: float = 0.0
    material_total: float = 0.0
    labor_hours: float = 0.0
    labor_rate_per_hour: float = 0.0
    labor_cost: float = 0.0
    labor_markup_percent: float = 0.0
    labor_total: float = 0.0
    subtotal: float = 0.0
    overhead_percent: float = 0.0
    overhead_amount: float = 0.0
    sales_rep_commission_percent: float = 0.0
    sales_rep_commission_amount: float = 0.0
    target_profit_percent: float = 0.0
    target_profit_amount: float = 0.0
    actual_profit_amount: float = 0.0
    actual_profit_percent: float = 0.0
    selling_price: float = 0.0
    price_per_sq_ft: float = 0.0
    permit_costs: float = 0.0
    waste_factor_percent: float = 0.0
    contingency_percent: float = 0.0
    line_items: List[Dict[str, Any]] = []

    class Config:
        extra = "allow"


class PricingResponse(BaseModel):
    success: bool = True
    estimate: Dict[str, Any] = {}
    calculations: CalculationResult


def build_pricing_request(
    pipeline_entry_id: str,
    property_details: PropertyDetails,
    line_items: List[LineItem],
    config: Optional[PricingConfig] = None,
    template_id: Optional[str] = None,
    sales_rep_id: Optional[str] = None,
) -> PricingRequest:
    """
    Validate estimator input and assemble the pricing request.

    Items with a blank name are dropped. Every remaining item must have a
    positive quantity.

    Raises:
        PricingValidationError: missing roof area, customer name, or items
    """
    if property_details.roof_area_sq_ft <= 0:
        raise PricingValidationError("Roof area must be greater than zero", "roof_area_sq_ft")
    if not property_details.customer_name.strip():
        raise PricingValidationError("Customer name is required", "customer_name")

    named = [item for item in line_items if item.name.strip()]
    if not named:
        raise PricingValidationError("At least one line item is required", "line_items")
    for item in named:
        if item.quantity <= 0:
            raise PricingValidationError(
                f"Quantity for '{item.name}' must be greater than zero", "line_items"
            )

    config = config or PricingConfig()
    return PricingRequest(
        pipeline_entry_id=pipeline_entry_id,
        template_id=template_id,
        property_details=property_details,
        line_items=[PricingLineItem.from_line_item(item) for item in named],
        sales_rep_id=sales_rep_id,
        **config.dict(),
    )


def line_item_totals(line_items: List[LineItem]) -> Dict[str, Any]:
    """Per-item extended cost and markup plus category sums."""
    rows = []
    totals = {category.value: 0.0 for category in LineCategory}

    for item in line_items:
        extended = item.quantity * item.unit_cost
        markup = extended * item.markup_percent / 100
        total = extended + markup
        totals[item.category.value] += total
        rows.append({
            **item.dict(),
            "extended_cost": round(extended, 2),
            "markup_amount": round(markup, 2),
            "total_price": round(total, 2),
        })

    return {
        "line_items": rows,
        "material_total": round(totals[LineCategory.MATERIAL.value], 2),
        "labor_total": round(totals[LineCategory.LABOR.value], 2),
        "equipment_total": round(totals[LineCategory.EQUIPMENT.value], 2),
        "other_total": round(totals[LineCategory.OTHER.value], 2),
        "grand_total": round(sum(totals.values()), 2),
    }


class PricingService:
    """Calls the hosted pricing calculator."""

    def __init__(self, gateway: SupabaseGateway):
        self.gateway = gateway

    async def calculate(self, request: PricingRequest) -> PricingResponse:
        logger.info("Requesting estimate calculation",
                    pipeline_entry_id=request.pipeline_entry_id,
                    line_items=len(request.line_items))

        payload = await self.gateway.invoke_function(
            settings.PRICING_FUNCTION_NAME, request.dict(exclude_none=True)
        )

        if not payload.get("success", True) or "calculations" not in payload:
            message = payload.get("message") or "Pricing calculation returned no results"
            logger.error("Pricing calculation unsuccessful", message=message)
            raise RemoteCallError(message, settings.PRICING_FUNCTION_NAME)

        response = PricingResponse(**payload)
        logger.info("Estimate calculated",
                    selling_price=response.calculations.selling_price,
                    actual_profit_percent=response.calculations.actual_profit_percent)
        return response
