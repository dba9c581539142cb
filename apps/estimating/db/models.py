"""
SQLAlchemy ORM models for the estimating service.

Estimates mirror the pricing-function response plus the denormalized
line-item array, keyed by a human-readable EST-##### number.
"""

from datetime import datetime
import uuid

from sqlalchemy import Column, String, DateTime, JSON, Float, Index, Text

from ..core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class EstimateRecord(Base):
    """
    Saved roofing estimate.
    """
    __tablename__ = "enhanced_estimates"

    id = Column(String(36), primary_key=True, default=_new_id)
    estimate_number = Column(String(20), unique=True, nullable=False)
    pipeline_entry_id = Column(String(64), nullable=True, index=True)
    template_id = Column(String(64), nullable=True)
    sales_rep_id = Column(String(64), nullable=True)

    # Property
    customer_name = Column(String(200), nullable=False)
    customer_address = Column(Text, default="")
    roof_area_sq_ft = Column(Float, default=0.0)
    roof_pitch = Column(String(10), default="4/12")
    complexity_level = Column(String(20), default="moderate")

    # Material and labor
    material_cost = Column(Float, default=0.0)
    material_total = Column(Float, default=0.0)
    labor_hours = Column(Float, default=0.0)
    labor_cost = Column(Float, default=0.0)
    labor_total = Column(Float, default=0.0)
    subtotal = Column(Float, default=0.0)

    # Margin figures from the pricing function
    overhead_percent = Column(Float, default=0.0)
    overhead_amount = Column(Float, default=0.0)
    sales_rep_commission_percent = Column(Float, default=0.0)
    sales_rep_commission_amount = Column(Float, default=0.0)
    target_profit_percent = Column(Float, default=0.0)
    target_profit_amount = Column(Float, default=0.0)
    actual_profit_amount = Column(Float, default=0.0)
    actual_profit_percent = Column(Float, default=0.0)
    selling_price = Column(Float, default=0.0)
    price_per_sq_ft = Column(Float, default=0.0)
    permit_costs = Column(Float, default=0.0)
    waste_factor_percent = Column(Float, default=10.0)
    contingency_percent = Column(Float, default=5.0)

    line_items = Column(JSON, nullable=False, default=list)
    status = Column(String(20), default="draft")  # draft, sent, approved, rejected

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_estimate_pipeline_created", "pipeline_entry_id", "created_at"),
    )

    def to_dict(self):
        """Serialize the record for API responses."""
        return {
            "id": self.id,
            "estimate_number": self.estimate_number,
            "pipeline_entry_id": self.pipeline_entry_id,
            "template_id": self.template_id,
            "sales_rep_id": self.sales_rep_id,
            "customer_name": self.customer_name,
            "customer_address": self.customer_address,
            "roof_area_sq_ft": self.roof_area_sq_ft,
            "roof_pitch": self.roof_pitch,
            "complexity_level": self.complexity_level,
            "material_cost": self.material_cost,
            "material_total": self.material_total,
            "labor_hours": self.labor_hours,
            "labor_cost": self.labor_cost,
            "labor_total": self.labor_total,
            "subtotal": self.subtotal,
            "overhead_percent": self.overhead_percent,
            "overhead_amount": self.overhead_amount,
            "sales_rep_commission_percent": self.sales_rep_commission_percent,
            "sales_rep_commission_amount": self.sales_rep_commission_amount,
            "target_profit_percent": self.target_profit_percent,
            "target_profit_amount": self.target_profit_amount,
            "actual_profit_amount": self.actual_profit_amount,
            "actual_profit_percent": self.actual_profit_percent,
            "selling_price": self.selling_price,
            "price_per_sq_ft": self.price_per_sq_ft,
            "permit_costs": self.permit_costs,
            "waste_factor_percent": self.waste_factor_percent,
            "contingency_percent": self.contingency_percent,
            "line_items": self.line_items or [],
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
