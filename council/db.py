from __future__ import annotations

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from council.models import Base

DATA_DIR = Path(__file__).parent / "data"

_SessionLocal: sessionmaker[Session] | None = None


def default_db_path() -> Path:
    env = os.environ.get("COUNCIL_DB_PATH")
    return Path(env) if env else DATA_DIR / "council.db"


def init_db(db_path: str | Path | None = None) -> None:
    """Create the proposal tables and bind the session factory to them."""
    global _SessionLocal
    path = Path(db_path) if db_path is not None else default_db_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    _SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_session() -> Session:
    if _SessionLocal is None:
        raise RuntimeError("init_db() has not been called")
    return _SessionLocal()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Session for the chain watcher and other non-request callers."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
