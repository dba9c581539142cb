"""
Pytest configuration and fixtures for estimating tests.
"""
import os
import pytest
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from fastapi.testclient import TestClient
from typing import Generator

# Override settings for tests before the app is imported
os.environ["DATABASE_URL"] = "sqlite:///./test_estimating.db"
os.environ["ENVIRONMENT"] = "testing"

# Import models to ensure they're registered with Base.metadata
from ..db import models as db_models  # noqa: F401

from ..main import app
from ..core.database import Base, get_db
from ..integrations.supabase import SupabaseGateway, get_gateway
from ..services.measurement import MeasurementSet
from ..services.workflow import SessionStore, get_session_store


# Create test database engine
TEST_DATABASE_URL = "sqlite:///./test_estimating.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


PRICING_PAYLOAD = {
    "success": True,
    "estimate": {"id": "remote-1", "estimate_number": "EST-00042"},
    "calculations": {
        "material_cost": 5000.0,
        "material_markup_percent": 0.0,
        "material_total": 5000.0,
        "labor_hours": 40.0,
        "labor_rate_per_hour": 50.0,
        "labor_cost": 2000.0,
        "labor_markup_percent": 0.0,
        "labor_total": 2000.0,
        "subtotal": 7000.0,
        "overhead_percent": 15.0,
        "overhead_amount": 2100.0,
        "sales_rep_commission_percent": 5.0,
        "sales_rep_commission_amount": 700.0,
        "target_profit_percent": 30.0,
        "target_profit_amount": 4200.0,
        "actual_profit_amount": 4200.0,
        "actual_profit_percent": 30.0,
        "selling_price": 14000.0,
        "price_per_sq_ft": 5.6,
        "permit_costs": 0.0,
        "waste_factor_percent": 10.0,
        "contingency_percent": 5.0,
        "line_items": [],
    },
}


@pytest.fixture
def reference_roof() -> MeasurementSet:
    """The reference roof: 25 squares, no valleys."""
    return MeasurementSet(
        total_area_sqft=2500,
        total_squares=25,
        perimeter_ft=180,
        ridge_ft=40,
        hip_ft=10,
        valley_ft=0,
        eave_ft=120,
        rake_ft=60,
        pitch="6/12",
        waste_percent=10,
    )


@pytest.fixture(scope="function")
def test_db():
    """Create test database session."""
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        # Clean up tables after each test
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway() -> MagicMock:
    """Supabase gateway double; tests adjust the return values."""
    mock = MagicMock(spec=SupabaseGateway)
    mock.fetch_active_measurement = AsyncMock(return_value=None)
    mock.fetch_pipeline_entry = AsyncMock(return_value=None)
    mock.invoke_function = AsyncMock(return_value=PRICING_PAYLOAD)
    return mock


@pytest.fixture(scope="function")
def client(test_db: Session, gateway: MagicMock) -> Generator:
    """Create test client with database, gateway and session store overrides."""
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    store = SessionStore()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_session_store] = lambda: store

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


API = "/api/v1/estimating"
