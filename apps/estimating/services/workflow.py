"""
Estimate session workflow.

A session walks Unmeasured -> Measured -> Populated -> Calculated -> Saved.
Asynchronous operations (measurement pulls, pricing calls) take a token
when they start; a result whose token is no longer current is rejected
instead of overwriting newer state.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

from ..core.logging import get_logger
from .materials import LineItem
from .measurement import MeasurementSet, MeasurementSource, IncompleteMeasurementError
from .pricing import PricingRequest, PricingResponse

logger = get_logger(__name__)


class EstimateStage(str, Enum):
    UNMEASURED = "unmeasured"
    MEASURED = "measured"
    POPULATED = "populated"
    CALCULATED = "calculated"
    SAVED = "saved"


TRANSITIONS = {
    EstimateStage.UNMEASURED: {EstimateStage.MEASURED},
    EstimateStage.MEASURED: {EstimateStage.MEASURED, EstimateStage.POPULATED},
    EstimateStage.POPULATED: {EstimateStage.MEASURED, EstimateStage.POPULATED, EstimateStage.CALCULATED},
    EstimateStage.CALCULATED: {
        EstimateStage.MEASURED, EstimateStage.POPULATED,
        EstimateStage.CALCULATED, EstimateStage.SAVED,
    },
    # Saved estimates stay editable; re-measuring a saved estimate is not allowed
    EstimateStage.SAVED: {EstimateStage.POPULATED, EstimateStage.SAVED},
}


class InvalidTransitionError(Exception):
    """The requested action is not allowed in the session's current stage."""

    def __init__(self, current: EstimateStage, target: EstimateStage, message: str = ""):
        self.current = current
        self.target = target
        self.message = message or f"Cannot move from {current.value} to {target.value}"
        super().__init__(self.message)


class ReplaceConfirmationRequired(InvalidTransitionError):
    """Replacing existing line items needs explicit intent."""


class StaleOperationError(Exception):
    """An operation finished after newer state superseded it."""


class SessionNotFoundError(Exception):
    pass


class Operation(str, Enum):
    MEASURE = "measure"
    CALCULATE = "calculate"


@dataclass(frozen=True)
class OperationToken:
    operation: Operation
    sequence: int
    generation: int


@dataclass
class EstimateSession:
    """Working state for one estimate being built."""
    pipeline_entry_id: str
    customer_name: str = ""
    customer_address: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stage: EstimateStage = EstimateStage.UNMEASURED
    measurements: Optional[MeasurementSet] = None
    measurement_source: Optional[MeasurementSource] = None
    line_items: List[LineItem] = field(default_factory=list)
    pricing: Optional[PricingResponse] = None
    pricing_request: Optional[PricingRequest] = None
    estimate_id: Optional[str] = None
    generation: int = 0
    sequence: int = 0
    pending: Dict[Operation, OperationToken] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def _move(self, target: EstimateStage) -> None:
        if target not in TRANSITIONS[self.stage]:
            raise InvalidTransitionError(self.stage, target)
        logger.debug("Session stage change", session_id=self.id,
                     from_stage=self.stage.value, to_stage=target.value)
        self.stage = target
        self.generation += 1
        self.updated_at = datetime.utcnow()

    def begin(self, operation: Operation) -> OperationToken:
        """Start an async operation; any earlier token for it becomes stale."""
        self.sequence += 1
        token = OperationToken(operation, self.sequence, self.generation)
        self.pending[operation] = token
        return token

    def _finish(self, token: OperationToken) -> None:
        current = self.pending.get(token.operation)
        if current != token:
            raise StaleOperationError(
                f"{token.operation.value} result superseded by a newer request"
            )
        if token.generation != self.generation:
            del self.pending[token.operation]
            raise StaleOperationError(
                f"Session changed while {token.operation.value} was in flight"
            )
        del self.pending[token.operation]

    def abandon(self, token: OperationToken) -> None:
        """Drop a failed operation; a newer token for the same operation is kept."""
        if self.pending.get(token.operation) == token:
            del self.pending[token.operation]

    def apply_measurement(
        self,
        token: OperationToken,
        measurements: MeasurementSet,
        source: MeasurementSource,
    ) -> None:
        if self.stage == EstimateStage.SAVED:
            raise InvalidTransitionError(
                self.stage, EstimateStage.MEASURED, "Saved estimates cannot be re-measured"
            )
        # Only a newer measure request supersedes this one
        if self.pending.get(token.operation) != token:
            raise StaleOperationError("measure result superseded by a newer request")
        del self.pending[token.operation]
        self._move(EstimateStage.MEASURED)
        self.measurements = measurements
        self.measurement_source = source
        self.pricing = None
        self.pricing_request = None

    def replace_line_items(self, items: List[LineItem], confirm_replace: bool = False) -> None:
        """Destructive replacement (auto-populate, template)."""
        if self.measurements is None or not self.measurements.is_complete:
            raise IncompleteMeasurementError("Measure the roof before populating line items")
        if self.line_items and not confirm_replace:
            raise ReplaceConfirmationRequired(
                self.stage, EstimateStage.POPULATED,
                f"Replacing {len(self.line_items)} existing line items requires confirm_replace",
            )
        self._move(EstimateStage.POPULATED)
        self.line_items = list(items)
        self.pricing = None
        self.pricing_request = None

    def edit_line_items(self, items: List[LineItem]) -> None:
        """Manual edits; invalidates any previous calculation."""
        if self.stage == EstimateStage.UNMEASURED:
            raise InvalidTransitionError(self.stage, EstimateStage.POPULATED)
        self._move(EstimateStage.POPULATED)
        self.line_items = list(items)
        self.pricing = None
        self.pricing_request = None

    def apply_calculation(
        self, token: OperationToken, request: PricingRequest, response: PricingResponse
    ) -> None:
        self._finish(token)
        self._move(EstimateStage.CALCULATED)
        self.pricing_request = request
        self.pricing = response

    def mark_saved(self, estimate_id: str) -> None:
        if self.pricing is None:
            raise InvalidTransitionError(self.stage, EstimateStage.SAVED, "Calculate before saving")
        self._move(EstimateStage.SAVED)
        self.estimate_id = estimate_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline_entry_id": self.pipeline_entry_id,
            "customer_name": self.customer_name,
            "customer_address": self.customer_address,
            "stage": self.stage.value,
            "measurements": self.measurements.to_dict() if self.measurements else None,
            "measurement_source": self.measurement_source.value if self.measurement_source else None,
            "line_items": [item.dict() for item in self.line_items],
            "pricing": self.pricing.dict() if self.pricing else None,
            "estimate_id": self.estimate_id,
            "pending_operations": sorted(op.value for op in self.pending),
            "updated_at": self.updated_at.isoformat(),
        }


class SessionStore:
    """Process-local registry of estimate sessions."""

    def __init__(self):
        self._sessions: Dict[str, EstimateSession] = {}
        self._lock = threading.Lock()

    def create(self, pipeline_entry_id: str, customer_name: str = "",
               customer_address: str = "") -> EstimateSession:
        session = EstimateSession(
            pipeline_entry_id=pipeline_entry_id,
            customer_name=customer_name,
            customer_address=customer_address,
        )
        with self._lock:
            self._sessions[session.id] = session
        logger.info("Estimate session created", session_id=session.id,
                    pipeline_entry_id=pipeline_entry_id)
        return session

    def get(self, session_id: str) -> EstimateSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def delete(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise SessionNotFoundError(f"Session {session_id} not found")

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()


session_store = SessionStore()


def get_session_store() -> SessionStore:
    return session_store
