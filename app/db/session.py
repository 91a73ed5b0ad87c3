from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from app.core.config import settings
from app.db.base import Base


def _connect_args(url: str) -> dict:
    if url.startswith("postgresql://"):
        return {"connect_timeout": 30}
    if url.startswith("sqlite"):
        # Celery worker threads and request handlers share the file
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args(settings.DATABASE_URL),
)


# Create session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)


def get_db():
    """Dependency for FastAPI to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database - create tables.
    If DB is temporarily unreachable, skip creation to allow API to start and healthcheck to pass; other endpoints will fail until DB returns.
    """
    import app.models  # noqa: F401  registers tables on Base.metadata
    try:
        Base.metadata.create_all(bind=engine)
    except Exception as e:
        # Log happens via caller; avoid crashing startup
        import logging
        logging.getLogger(__name__).warning("init_db_create_all_failed", extra={"error": str(e)})
