from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config.settings import get_settings

settings = get_settings()

SQLALCHEMY_DATABASE_URL = settings.database_url.strip()

if not SQLALCHEMY_DATABASE_URL.startswith("postgresql") and not settings.is_testing:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be a valid PostgreSQL connection string. "
        "SQLite is only accepted with ENVIRONMENT=testing."
    )


def build_engine(url: str) -> Engine:
    """Create an engine for PostgreSQL (pooled) or SQLite (tests)."""
    if url.startswith("postgresql"):
        return create_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
        )
    if url in ("", "sqlite://", "sqlite:///:memory:"):
        # One shared in-memory database for every session
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, connect_args={"check_same_thread": False})


engine = build_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def run_migrations(bind: Engine | None = None) -> None:
    """Bootstrap the database schema."""
    from bms_billing.core import models  # noqa: F401  (registers tables)

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Unit of work: commit on success, roll back on error, always close."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
