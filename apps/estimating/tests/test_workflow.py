"""
Tests for the estimate session workflow.
"""
import pytest

from ..services.materials import LineItem, materialize_line_items
from ..services.measurement import IncompleteMeasurementError, MeasurementSet, MeasurementSource
from ..services.pricing import PricingResponse, PropertyDetails, build_pricing_request
from ..services.workflow import (
    EstimateSession,
    EstimateStage,
    InvalidTransitionError,
    Operation,
    ReplaceConfirmationRequired,
    SessionNotFoundError,
    SessionStore,
    StaleOperationError,
)
from .conftest import PRICING_PAYLOAD


def _measure(session, measurements):
    token = session.begin(Operation.MEASURE)
    session.apply_measurement(token, measurements, MeasurementSource.MANUAL)


def _calculate(session):
    token = session.begin(Operation.CALCULATE)
    details = PropertyDetails.from_measurements(session.measurements, "Jane Homeowner")
    request = build_pricing_request(session.pipeline_entry_id, details, session.line_items)
    session.apply_calculation(token, request, PricingResponse(**PRICING_PAYLOAD))


@pytest.fixture
def populated(reference_roof):
    session = EstimateSession(pipeline_entry_id="pe-1", customer_name="Jane Homeowner")
    _measure(session, reference_roof)
    session.replace_line_items(materialize_line_items(reference_roof))
    return session


class TestTransitions:
    """Stage progression"""

    def test_happy_path(self, populated):
        assert populated.stage == EstimateStage.POPULATED
        _calculate(populated)
        assert populated.stage == EstimateStage.CALCULATED
        populated.mark_saved("est-1")
        assert populated.stage == EstimateStage.SAVED
        assert populated.estimate_id == "est-1"

    def test_populate_requires_measurements(self):
        session = EstimateSession(pipeline_entry_id="pe-1")
        with pytest.raises(IncompleteMeasurementError):
            session.replace_line_items([LineItem(name="Shingles", quantity=1)])
        assert session.stage == EstimateStage.UNMEASURED

    def test_edit_before_measure_rejected(self):
        session = EstimateSession(pipeline_entry_id="pe-1")
        with pytest.raises(InvalidTransitionError):
            session.edit_line_items([LineItem(name="Shingles", quantity=1)])

    def test_save_requires_calculation(self, populated):
        with pytest.raises(InvalidTransitionError):
            populated.mark_saved("est-1")

    def test_edit_clears_pricing(self, populated):
        _calculate(populated)
        populated.edit_line_items(populated.line_items[:1])
        assert populated.stage == EstimateStage.POPULATED
        assert populated.pricing is None
        assert populated.pricing_request is None

    def test_remeasure_returns_to_measured(self, populated, reference_roof):
        _calculate(populated)
        _measure(populated, reference_roof)
        assert populated.stage == EstimateStage.MEASURED
        assert populated.pricing is None

    def test_saved_cannot_be_remeasured(self, populated, reference_roof):
        _calculate(populated)
        populated.mark_saved("est-1")
        with pytest.raises(InvalidTransitionError):
            _measure(populated, reference_roof)

    def test_saved_estimate_stays_editable(self, populated):
        _calculate(populated)
        populated.mark_saved("est-1")
        populated.edit_line_items(populated.line_items)
        assert populated.stage == EstimateStage.POPULATED
        assert populated.estimate_id == "est-1"


class TestReplaceConfirmation:
    """Destructive replacement needs explicit intent"""

    def test_second_populate_requires_confirmation(self, populated, reference_roof):
        edited = populated.line_items[:2]
        populated.edit_line_items(edited)

        with pytest.raises(ReplaceConfirmationRequired):
            populated.replace_line_items(materialize_line_items(reference_roof))
        assert len(populated.line_items) == 2

        populated.replace_line_items(materialize_line_items(reference_roof), confirm_replace=True)
        assert len(populated.line_items) == 7


class TestStaleOperations:
    """Late async results are rejected"""

    def test_superseded_measurement(self, reference_roof):
        session = EstimateSession(pipeline_entry_id="pe-1")
        first = session.begin(Operation.MEASURE)
        second = session.begin(Operation.MEASURE)

        session.apply_measurement(second, reference_roof, MeasurementSource.SATELLITE)
        with pytest.raises(StaleOperationError):
            session.apply_measurement(first, MeasurementSet(total_squares=5), MeasurementSource.MANUAL)
        assert session.measurements.total_squares == 25

    def test_calculation_after_edit_is_stale(self, populated):
        token = populated.begin(Operation.CALCULATE)
        details = PropertyDetails.from_measurements(populated.measurements, "Jane Homeowner")
        request = build_pricing_request("pe-1", details, populated.line_items)

        populated.edit_line_items(populated.line_items[:1])

        with pytest.raises(StaleOperationError):
            populated.apply_calculation(token, request, PricingResponse(**PRICING_PAYLOAD))
        assert populated.stage == EstimateStage.POPULATED
        assert populated.pricing is None
        assert populated.pending == {}

    def test_abandon_clears_pending(self):
        session = EstimateSession(pipeline_entry_id="pe-1")
        token = session.begin(Operation.MEASURE)

        session.abandon(token)

        assert session.pending == {}
        assert session.to_dict()["pending_operations"] == []

    def test_abandon_keeps_newer_request(self, reference_roof):
        session = EstimateSession(pipeline_entry_id="pe-1")
        first = session.begin(Operation.MEASURE)
        second = session.begin(Operation.MEASURE)

        session.abandon(first)

        assert session.pending == {Operation.MEASURE: second}
        session.apply_measurement(second, reference_roof, MeasurementSource.SATELLITE)
        assert session.stage == EstimateStage.MEASURED


class TestSessionStore:
    """In-process registry"""

    def test_create_get_delete(self):
        store = SessionStore()
        session = store.create("pe-1", "Jane Homeowner")
        assert store.get(session.id) is session

        store.delete(session.id)
        with pytest.raises(SessionNotFoundError):
            store.get(session.id)

    def test_to_dict(self, populated):
        data = populated.to_dict()
        assert data["stage"] == "populated"
        assert data["measurement_source"] == "manual"
        assert len(data["line_items"]) == 7
