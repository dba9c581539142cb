"""
Database configuration and session management for the estimating service.
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import NullPool

from .settings import settings
from .logging import get_logger

logger = get_logger(__name__)

# Create database engine
if settings.database_url.startswith("sqlite"):
    # SQLite specific settings
    engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False},
        poolclass=NullPool
    )
else:
    # PostgreSQL settings
    pool_size = getattr(settings, 'DB_POOL_SIZE', 10)
    max_overflow = getattr(settings, 'DB_MAX_OVERFLOW', 20)
    pool_timeout = getattr(settings, 'DB_POOL_TIMEOUT', 30)

    engine = create_engine(
        settings.database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_pre_ping=True  # Verify connections before using
    )

# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)

# Base class for models
Base = declarative_base()


def get_db() -> Session:
    """
    Dependency to get database session.

    Usage:
        @router.get("/estimates")
        def list_estimates(db: Session = Depends(get_db)):
            return db.query(EstimateRecord).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_database():
    """Create tables for every registered model."""
    # Import models so they register with Base
    from ..db.models import EstimateRecord  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables initialized")
