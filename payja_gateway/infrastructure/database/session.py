"""Database session management with connection pooling"""

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from payja_gateway.config import settings

# Pool sized for USSD bursts; recycle hourly to avoid stale connections
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,  # Verify connections before using
    pool_size=10,
    max_overflow=10,
    pool_recycle=3600,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Session:
    """Dependency injection for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create missing tables; deployments without migrations rely on this at startup"""
    from payja_gateway.infrastructure.database.models import Base

    Base.metadata.create_all(bind=engine)
