"""Engine and session factory for the webhook bookkeeping database"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.models.base import Base


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Notifications are handled on threadpool workers
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600, "pool_size": 10, "max_overflow": 20}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

# The pipeline and the cleanup task open one session per unit of work
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """Create any missing tables; migrations own schema changes in production"""
    import app.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
