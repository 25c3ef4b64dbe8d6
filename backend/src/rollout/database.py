from contextlib import contextmanager
from typing import Iterator
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from rollout.models import metadata


DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite:///./rollout.db",
)

# tickers and workflow threads share the engine
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def init_db() -> None:
    """Create the release engine schema."""
    metadata.create_all(engine)


@contextmanager
def session_scope(session_factory=None) -> Iterator[Session]:
    """Yield a session that commits on success and rolls back on error."""

    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
