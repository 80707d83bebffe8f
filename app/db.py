from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings


class Base(DeclarativeBase):
    pass


_engine = None


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
    }


def get_engine():
    global _engine
    if _engine is None:
        _engine = create_engine(settings.database_url, **_engine_options(settings.database_url))
    return _engine


SessionLocal = sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


def get_db():
    """Database session dependency for FastAPI routes.

    Yields a session bound to the shared engine and closes it once the
    request finishes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
