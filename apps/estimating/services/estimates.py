"""
Persistence for calculated estimates.
"""

from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.logging import get_logger
from ..db.models import EstimateRecord
from .materials import LineItem
from .pricing import PricingRequest, PricingResponse, line_item_totals

logger = get_logger(__name__)

ESTIMATE_STATUSES = ("draft", "sent", "approved", "rejected")


class EstimateNotFoundError(Exception):
    pass


def _number(n: int) -> str:
    return f"EST-{n:05d}"


def _number_taken(db: Session, number: str) -> bool:
    return db.query(EstimateRecord.id).filter(EstimateRecord.estimate_number == number).first() is not None


def next_estimate_number(db: Session) -> str:
    """Sequential EST-##### number, skipping any already in use."""
    n = db.query(EstimateRecord).count() + 1
    while _number_taken(db, _number(n)):
        n += 1
    return _number(n)


def save_estimate(
    db: Session,
    request: PricingRequest,
    response: PricingResponse,
    estimate_id: Optional[str] = None,
) -> EstimateRecord:
    """
    Persist a pricing response with its request context.

    With ``estimate_id`` the existing record is overwritten and keeps its
    estimate number.
    """
    calc = response.calculations
    details = request.property_details

    if estimate_id:
        record = get_estimate(db, estimate_id)
    else:
        number = response.estimate.get("estimate_number")
        if not number or _number_taken(db, number):
            number = next_estimate_number(db)
        record = EstimateRecord(estimate_number=number, status="draft")
        db.add(record)

    line_items = calc.line_items or [item.dict() for item in request.line_items]

    fields = dict(
        pipeline_entry_id=request.pipeline_entry_id,
        template_id=request.template_id,
        sales_rep_id=request.sales_rep_id,
        customer_name=details.customer_name,
        customer_address=details.customer_address,
        roof_area_sq_ft=details.roof_area_sq_ft,
        roof_pitch=details.roof_pitch,
        complexity_level=details.complexity_level,
        material_cost=calc.material_cost,
        material_total=calc.material_total,
        labor_hours=calc.labor_hours,
        labor_cost=calc.labor_cost,
        labor_total=calc.labor_total,
        subtotal=calc.subtotal,
        overhead_percent=calc.overhead_percent or request.overhead_percent,
        overhead_amount=calc.overhead_amount,
        sales_rep_commission_percent=calc.sales_rep_commission_percent or request.commission_percent,
        sales_rep_commission_amount=calc.sales_rep_commission_amount,
        target_profit_percent=calc.target_profit_percent or request.target_margin_percent,
        target_profit_amount=calc.target_profit_amount,
        actual_profit_amount=calc.actual_profit_amount,
        actual_profit_percent=calc.actual_profit_percent,
        selling_price=calc.selling_price,
        price_per_sq_ft=calc.price_per_sq_ft,
        permit_costs=calc.permit_costs,
        waste_factor_percent=calc.waste_factor_percent or request.waste_factor_percent,
        contingency_percent=calc.contingency_percent or request.contingency_percent,
        line_items=line_items,
    )
    for name, value in fields.items():
        setattr(record, name, value)

    db.commit()
    db.refresh(record)

    logger.info("Estimate saved", estimate_number=record.estimate_number,
                selling_price=record.selling_price)
    return record


def get_estimate(db: Session, estimate_id: str) -> EstimateRecord:
    record = db.query(EstimateRecord).filter(EstimateRecord.id == estimate_id).first()
    if record is None:
        raise EstimateNotFoundError(f"Estimate {estimate_id} not found")
    return record


def list_estimates(db: Session, pipeline_entry_id: Optional[str] = None, limit: int = 50) -> List[EstimateRecord]:
    """Newest first, optionally for a single pipeline entry."""
    query = db.query(EstimateRecord)
    if pipeline_entry_id:
        query = query.filter(EstimateRecord.pipeline_entry_id == pipeline_entry_id)
    return query.order_by(EstimateRecord.created_at.desc()).limit(limit).all()


def update_line_items(db: Session, estimate_id: str, line_items: List[LineItem]) -> EstimateRecord:
    """
    Replace the stored line items and refresh the local category totals.

    The selling price is left as calculated; re-run the pricing function
    to re-solve it.
    """
    record = get_estimate(db, estimate_id)
    totals = line_item_totals(line_items)

    record.line_items = [item.to_record() for item in line_items]
    record.material_total = totals["material_total"]
    record.labor_total = totals["labor_total"]

    db.commit()
    db.refresh(record)
    logger.info("Estimate line items updated", estimate_number=record.estimate_number,
                count=len(line_items))
    return record


def update_status(db: Session, estimate_id: str, status: str) -> EstimateRecord:
    if status not in ESTIMATE_STATUSES:
        raise ValueError(f"Unknown status '{status}'")
    record = get_estimate(db, estimate_id)
    record.status = status
    db.commit()
    db.refresh(record)
    return record
