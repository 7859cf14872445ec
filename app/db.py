# app/db.py
from contextlib import contextmanager

from sqlalchemy import create_engine, text, JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool
from pgvector.sqlalchemy import Vector
from app.config import get_settings


settings = get_settings()

_engine_kwargs = {"echo": False, "future": True}
if settings.database_url.startswith("sqlite"):
    # In-memory SQLite needs a single shared connection across threads
    _engine_kwargs["connect_args"] = {"check_same_thread": False}
    _engine_kwargs["poolclass"] = StaticPool
else:
    _engine_kwargs["pool_pre_ping"] = True

# Synchronous engine is enough for now
engine = create_engine(settings.database_url, **_engine_kwargs)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)


class Base(DeclarativeBase):
    """
    Base class for ORM models.
    """
    pass


# Re-export Vector so models.py can import from app.db
VectorType = Vector

# JSONB on Postgres, plain JSON everywhere else (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def get_db():
    """
    FastAPI dependency yielding one session per request.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def db_session():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """
    Ensure pgvector extension and create all tables.
    Call this once at startup.
    """
    # Import models so every table is registered on Base.metadata
    import app.models  # noqa: F401

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector;"))
            conn.commit()

    Base.metadata.create_all(bind=engine)
