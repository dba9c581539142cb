"""
Estimating API.

Measurement normalization, quantity formulas, line-item auto-population,
supplier material takeoffs, the hosted pricing calculator, the estimate
session workflow and saved estimates.
"""

from typing import List, Dict, Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field

from ..core.database import get_db
from ..core.logging import get_logger
from ..core.settings import settings
from ..integrations.supabase import SupabaseGateway, RemoteCallError, get_gateway
from ..services.catalog import (
    BrandSelection, CatalogMeasurements, MaterialCalculator, refresh_prices,
)
from ..services.estimates import (
    EstimateNotFoundError, get_estimate, list_estimates, save_estimate,
    update_line_items, update_status,
)
from ..services.formula import FormulaError, evaluate_formula
from ..services.materials import (
    FORMULA_PRESETS, LineItem, TemplateLine, apply_preset, apply_template,
    materialize_line_items,
)
from ..services.measurement import (
    IncompleteMeasurementError, MeasurementSet, MeasurementSource,
    normalize_solar, resolve_measurements,
)
from ..services.pricing import (
    PricingConfig, PricingService, PricingValidationError, PropertyDetails,
    build_pricing_request, line_item_totals,
)
from ..services.workflow import (
    EstimateSession, InvalidTransitionError, Operation, SessionNotFoundError,
    SessionStore, StaleOperationError, get_session_store,
)

logger = get_logger(__name__)
router = APIRouter()


# Request models

class MeasurementInput(BaseModel):
    """MeasurementSet fields as sent by clients."""
    total_area_sqft: float = Field(0.0, ge=0)
    total_squares: float = Field(0.0, ge=0)
    perimeter_ft: float = Field(0.0, ge=0)
    ridge_ft: float = Field(0.0, ge=0)
    hip_ft: float = Field(0.0, ge=0)
    valley_ft: float = Field(0.0, ge=0)
    eave_ft: float = Field(0.0, ge=0)
    rake_ft: float = Field(0.0, ge=0)
    pitch: str = "4/12"
    waste_percent: float = Field(0.0, ge=0)
    complexity: str = "moderate"

    class Config:
        allow_inf_nan = False

    def to_measurement_set(self) -> MeasurementSet:
        return MeasurementSet.from_dict(self.dict())


class NormalizeRequest(BaseModel):
    verified_measurement: Optional[Dict[str, Any]] = None
    pipeline_metadata: Optional[Dict[str, Any]] = None
    satellite: Optional[Dict[str, Any]] = None
    manual_entry: Optional[Dict[str, Any]] = None


class SolarRequest(BaseModel):
    address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    waste_percent: float = Field(0.0, ge=0)

    class Config:
        allow_inf_nan = False


class FormulaRequest(BaseModel):
    formula: str
    variables: Dict[str, float] = {}
    measurements: Optional[MeasurementInput] = None


class MeasurementsBody(BaseModel):
    measurements: MeasurementInput


class PresetRequest(BaseModel):
    measurements: MeasurementInput
    unit_cost: float = Field(0.0, ge=0)


class TemplateRequest(BaseModel):
    measurements: MeasurementInput
    lines: List[TemplateLine]


class LineItemsBody(BaseModel):
    line_items: List[LineItem]


class MaterialCalculationRequest(BaseModel):
    measurements: CatalogMeasurements
    waste_percentage: float = Field(10.0, ge=0, le=50)
    brands: BrandSelection = BrandSelection()


class CalculateRequest(BaseModel):
    pipeline_entry_id: str
    property_details: PropertyDetails
    line_items: List[LineItem]
    config: Optional[PricingConfig] = None
    template_id: Optional[str] = None
    sales_rep_id: Optional[str] = None


class SessionCreateRequest(BaseModel):
    pipeline_entry_id: str
    customer_name: str = ""
    customer_address: str = ""


class SessionMeasurementRequest(NormalizeRequest):
    # Pull the verified row and pipeline cache from Supabase first
    fetch_remote: bool = False
    property_id: Optional[str] = None


class SessionPopulateRequest(BaseModel):
    confirm_replace: bool = False


class SessionTemplateRequest(BaseModel):
    lines: List[TemplateLine]
    confirm_replace: bool = False


class SessionCalculateRequest(BaseModel):
    config: Optional[PricingConfig] = None
    template_id: Optional[str] = None
    sales_rep_id: Optional[str] = None
    roof_type: str = "shingle"


class StatusUpdateRequest(BaseModel):
    status: str


# Helpers

def _unprocessable(message: str, **extra) -> HTTPException:
    return HTTPException(422, {"message": message, **extra})


def _get_session(store: SessionStore, session_id: str) -> EstimateSession:
    try:
        return store.get(session_id)
    except SessionNotFoundError:
        raise HTTPException(404, "Session not found")


async def _fetch_remote_sources(
    gateway: SupabaseGateway, pipeline_entry_id: str, property_id: Optional[str]
) -> Dict[str, Any]:
    verified = await gateway.fetch_active_measurement(property_id or pipeline_entry_id)
    entry = await gateway.fetch_pipeline_entry(pipeline_entry_id)
    return {
        "verified_row": verified,
        "pipeline_metadata": (entry or {}).get("metadata"),
    }


# Measurements

@router.post("/measurements/normalize", response_model=Dict[str, Any])
async def normalize_measurements(request: NormalizeRequest):
    """Normalize whichever measurement sources the client has, by precedence."""
    try:
        measurements, source = resolve_measurements(
            verified_row=request.verified_measurement,
            pipeline_metadata=request.pipeline_metadata,
            satellite=request.satellite,
            manual_entry=request.manual_entry,
        )
    except IncompleteMeasurementError as e:
        raise _unprocessable(str(e))

    return {"measurements": measurements.to_dict(), "source": source.value}


@router.get("/measurements/{pipeline_entry_id}", response_model=Dict[str, Any])
async def get_measurements(
    pipeline_entry_id: str,
    property_id: Optional[str] = None,
    roof_area_sq_ft: Optional[float] = Query(None, ge=0),
    roof_pitch: Optional[str] = None,
    waste_percent: float = Query(0.0, ge=0),
    gateway: SupabaseGateway = Depends(get_gateway),
):
    """Resolve measurements: active verified row, then pipeline cache, then manual area."""
    try:
        sources = await _fetch_remote_sources(gateway, pipeline_entry_id, property_id)
    except RemoteCallError as e:
        raise HTTPException(502, e.message)

    manual = None
    if roof_area_sq_ft:
        manual = {"roof_area_sq_ft": roof_area_sq_ft, "roof_pitch": roof_pitch,
                  "waste_percent": waste_percent}

    try:
        measurements, source = resolve_measurements(manual_entry=manual, **sources)
    except IncompleteMeasurementError as e:
        raise _unprocessable(str(e))

    return {
        "pipeline_entry_id": pipeline_entry_id,
        "measurements": measurements.to_dict(),
        "source": source.value,
    }


@router.post("/measurements/{pipeline_entry_id}/solar", response_model=Dict[str, Any])
async def pull_solar_measurements(
    pipeline_entry_id: str,
    request: SolarRequest,
    gateway: SupabaseGateway = Depends(get_gateway),
):
    """Run the solar measurement function and normalize its result."""
    body = {"pipeline_entry_id": pipeline_entry_id, **request.dict(exclude={"waste_percent"}, exclude_none=True)}
    try:
        payload = await gateway.invoke_function(settings.SOLAR_FUNCTION_NAME, body)
    except RemoteCallError as e:
        raise HTTPException(502, e.message)

    raw = payload.get("measurements") or payload
    measurements = normalize_solar(raw, waste_percent=request.waste_percent)
    return {
        "pipeline_entry_id": pipeline_entry_id,
        "measurements": measurements.to_dict(),
        "source": MeasurementSource.SOLAR.value,
        "raw": raw,
    }


# Formulas

@router.post("/formulas/evaluate", response_model=Dict[str, Any])
async def evaluate(request: FormulaRequest):
    variables = dict(request.variables)
    if request.measurements:
        variables = {**request.measurements.to_measurement_set().as_measure_variables(), **variables}
    try:
        value = evaluate_formula(request.formula, variables)
    except FormulaError as e:
        raise HTTPException(422, e.to_dict())
    return {"formula": request.formula, "value": value}


@router.get("/formulas/presets", response_model=List[Dict[str, Any]])
async def list_presets():
    return [preset.dict() for preset in FORMULA_PRESETS]


@router.post("/formulas/presets/{name}", response_model=Dict[str, Any])
async def use_preset(name: str, request: PresetRequest):
    try:
        item = apply_preset(name, request.measurements.to_measurement_set(), request.unit_cost)
    except KeyError:
        raise HTTPException(404, f"Unknown preset '{name}'")
    return {"line_item": item.dict()}


# Line items

@router.post("/line-items/auto-populate", response_model=Dict[str, Any])
async def auto_populate(request: MeasurementsBody):
    """Materialize packaged line items from measurements."""
    try:
        items = materialize_line_items(request.measurements.to_measurement_set())
    except IncompleteMeasurementError as e:
        raise _unprocessable(str(e))
    return {"line_items": [item.dict() for item in items]}


@router.post("/line-items/template", response_model=Dict[str, Any])
async def template_line_items(request: TemplateRequest):
    result = apply_template(request.lines, request.measurements.to_measurement_set())
    return result.dict()


@router.post("/line-items/totals", response_model=Dict[str, Any])
async def totals(request: LineItemsBody):
    return line_item_totals(request.line_items)


@router.post("/line-items/refresh-prices", response_model=Dict[str, Any])
async def refresh_line_item_prices(request: LineItemsBody):
    return refresh_prices(request.line_items).dict()


@router.post("/materials/calculate", response_model=Dict[str, Any])
async def calculate_materials(request: MaterialCalculationRequest):
    """Brand-aware material takeoff from the supplier price list."""
    calculator = MaterialCalculator(
        request.measurements,
        waste_percentage=request.waste_percentage,
        brands=request.brands,
    )
    return calculator.calculate().dict()


# Pricing

async def _run_pricing(request: CalculateRequest, gateway: SupabaseGateway):
    try:
        pricing_request = build_pricing_request(
            request.pipeline_entry_id,
            request.property_details,
            request.line_items,
            request.config,
            template_id=request.template_id,
            sales_rep_id=request.sales_rep_id,
        )
    except PricingValidationError as e:
        raise _unprocessable(e.message, field=e.field)

    try:
        response = await PricingService(gateway).calculate(pricing_request)
    except RemoteCallError as e:
        raise HTTPException(502, e.message)
    return pricing_request, response


@router.post("/calculate", response_model=Dict[str, Any])
async def calculate(request: CalculateRequest, gateway: SupabaseGateway = Depends(get_gateway)):
    """Run the pricing calculator without saving."""
    _, response = await _run_pricing(request, gateway)
    return response.dict()


# Sessions

@router.post("/sessions", response_model=Dict[str, Any], status_code=201)
async def create_session(
    request: SessionCreateRequest,
    store: SessionStore = Depends(get_session_store),
):
    session = store.create(request.pipeline_entry_id, request.customer_name, request.customer_address)
    return session.to_dict()


@router.get("/sessions/{session_id}", response_model=Dict[str, Any])
async def get_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    return _get_session(store, session_id).to_dict()


@router.delete("/sessions/{session_id}", status_code=204)
async def delete_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    try:
        store.delete(session_id)
    except SessionNotFoundError:
        raise HTTPException(404, "Session not found")


@router.post("/sessions/{session_id}/measurement", response_model=Dict[str, Any])
async def measure_session(
    session_id: str,
    request: SessionMeasurementRequest,
    store: SessionStore = Depends(get_session_store),
    gateway: SupabaseGateway = Depends(get_gateway),
):
    """Load measurements into a session (re-measure returns it to Measured)."""
    session = _get_session(store, session_id)
    token = session.begin(Operation.MEASURE)
    try:
        sources = {
            "verified_row": request.verified_measurement,
            "pipeline_metadata": request.pipeline_metadata,
        }
        if request.fetch_remote:
            try:
                sources = await _fetch_remote_sources(gateway, session.pipeline_entry_id, request.property_id)
            except RemoteCallError as e:
                raise HTTPException(502, e.message)

        try:
            measurements, source = resolve_measurements(
                satellite=request.satellite, manual_entry=request.manual_entry, **sources
            )
            session.apply_measurement(token, measurements, source)
        except IncompleteMeasurementError as e:
            raise _unprocessable(str(e))
        except StaleOperationError as e:
            raise HTTPException(409, str(e))
        except InvalidTransitionError as e:
            raise HTTPException(409, e.message)
    finally:
        # No-op once the token was applied or superseded
        session.abandon(token)

    return session.to_dict()


@router.post("/sessions/{session_id}/auto-populate", response_model=Dict[str, Any])
async def populate_session(
    session_id: str,
    request: SessionPopulateRequest,
    store: SessionStore = Depends(get_session_store),
):
    """Replace the session's line items with materialized quantities."""
    session = _get_session(store, session_id)
    try:
        if session.measurements is None:
            raise IncompleteMeasurementError("Measure the roof before populating line items")
        items = materialize_line_items(session.measurements)
        session.replace_line_items(items, confirm_replace=request.confirm_replace)
    except IncompleteMeasurementError as e:
        raise _unprocessable(str(e))
    except InvalidTransitionError as e:
        raise HTTPException(409, e.message)
    return session.to_dict()


@router.post("/sessions/{session_id}/template", response_model=Dict[str, Any])
async def apply_session_template(
    session_id: str,
    request: SessionTemplateRequest,
    store: SessionStore = Depends(get_session_store),
):
    session = _get_session(store, session_id)
    try:
        if session.measurements is None:
            raise IncompleteMeasurementError("Measure the roof before applying a template")
        result = apply_template(request.lines, session.measurements)
        session.replace_line_items(result.line_items, confirm_replace=request.confirm_replace)
    except IncompleteMeasurementError as e:
        raise _unprocessable(str(e))
    except InvalidTransitionError as e:
        raise HTTPException(409, e.message)
    return {**session.to_dict(), "formula_errors": result.formula_errors}


@router.put("/sessions/{session_id}/line-items", response_model=Dict[str, Any])
async def edit_session_line_items(
    session_id: str,
    request: LineItemsBody,
    store: SessionStore = Depends(get_session_store),
):
    session = _get_session(store, session_id)
    try:
        session.edit_line_items(request.line_items)
    except InvalidTransitionError as e:
        raise HTTPException(409, e.message)
    return session.to_dict()


@router.post("/sessions/{session_id}/calculate", response_model=Dict[str, Any])
async def calculate_session(
    session_id: str,
    request: SessionCalculateRequest,
    store: SessionStore = Depends(get_session_store),
    gateway: SupabaseGateway = Depends(get_gateway),
):
    """Price the session's line items; results that arrive stale are rejected."""
    session = _get_session(store, session_id)
    if session.measurements is None:
        raise _unprocessable("Measure the roof before calculating")

    token = session.begin(Operation.CALCULATE)
    try:
        details = PropertyDetails.from_measurements(
            session.measurements, session.customer_name, session.customer_address, request.roof_type
        )
        pricing_request, response = await _run_pricing(
            CalculateRequest(
                pipeline_entry_id=session.pipeline_entry_id,
                property_details=details,
                line_items=session.line_items,
                config=request.config,
                template_id=request.template_id,
                sales_rep_id=request.sales_rep_id,
            ),
            gateway,
        )

        try:
            session.apply_calculation(token, pricing_request, response)
        except StaleOperationError as e:
            raise HTTPException(409, str(e))
        except InvalidTransitionError as e:
            raise HTTPException(409, e.message)
    finally:
        session.abandon(token)
    return session.to_dict()


@router.post("/sessions/{session_id}/save", response_model=Dict[str, Any])
async def save_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    db: Session = Depends(get_db),
):
    session = _get_session(store, session_id)
    if session.pricing is None or session.pricing_request is None:
        raise HTTPException(409, "Calculate before saving")

    try:
        record = save_estimate(
            db, session.pricing_request, session.pricing, estimate_id=session.estimate_id
        )
    except EstimateNotFoundError:
        raise HTTPException(404, "Estimate not found")

    try:
        session.mark_saved(record.id)
    except InvalidTransitionError as e:
        raise HTTPException(409, e.message)
    return {"session": session.to_dict(), "estimate": record.to_dict()}


# Saved estimates

@router.post("/estimates", response_model=Dict[str, Any], status_code=201)
async def create_estimate(
    request: CalculateRequest,
    gateway: SupabaseGateway = Depends(get_gateway),
    db: Session = Depends(get_db),
):
    """Calculate and persist an estimate."""
    pricing_request, response = await _run_pricing(request, gateway)
    record = save_estimate(db, pricing_request, response)
    return record.to_dict()


@router.get("/estimates", response_model=Dict[str, Any])
async def get_estimates(
    pipeline_entry_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    records = list_estimates(db, pipeline_entry_id, limit)
    return {"estimates": [r.to_dict() for r in records], "total": len(records)}


@router.get("/estimates/{estimate_id}", response_model=Dict[str, Any])
async def get_estimate_detail(estimate_id: str, db: Session = Depends(get_db)):
    try:
        return get_estimate(db, estimate_id).to_dict()
    except EstimateNotFoundError:
        raise HTTPException(404, "Estimate not found")


@router.put("/estimates/{estimate_id}/line-items", response_model=Dict[str, Any])
async def put_estimate_line_items(
    estimate_id: str,
    request: LineItemsBody,
    db: Session = Depends(get_db),
):
    try:
        return update_line_items(db, estimate_id, request.line_items).to_dict()
    except EstimateNotFoundError:
        raise HTTPException(404, "Estimate not found")


@router.patch("/estimates/{estimate_id}/status", response_model=Dict[str, Any])
async def patch_estimate_status(
    estimate_id: str,
    request: StatusUpdateRequest,
    db: Session = Depends(get_db),
):
    try:
        return update_status(db, estimate_id, request.status).to_dict()
    except EstimateNotFoundError:
        raise HTTPException(404, "Estimate not found")
    except ValueError as e:
        raise HTTPException(422, str(e))
