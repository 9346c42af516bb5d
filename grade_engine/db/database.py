from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from grade_engine.core.config import settings


def build_engine(url: str, **kwargs):
    """Create an engine with a bounded wait on locked rows/files."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.database_timeout_seconds,
        }
    return create_engine(url, connect_args=connect_args, **kwargs)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
