"""Database engine, sessions and the connectivity check used by /health."""

from __future__ import annotations

from functools import lru_cache
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from postflow.core.config import get_settings
from postflow.core.logger import get_logger


Base = declarative_base()

logger = get_logger("postflow.storage.db")


def build_engine(database_url: str) -> Engine:
    options: dict[str, object] = {"pool_pre_ping": True, "future": True}
    if database_url.startswith("sqlite"):
        # Request handlers and background workers share the file across threads.
        options["connect_args"] = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, **options)


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return build_engine(get_settings().database_url)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False, expire_on_commit=False)


def get_session() -> Generator[Session, None, None]:
    """FastAPI dependency yielding one session per request."""

    with get_session_factory()() as session:
        yield session


def check_database(engine: Optional[Engine] = None) -> Tuple[bool, Optional[str]]:
    target = engine if engine is not None else get_engine()
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("database_unreachable", error=str(exc))
        return False, str(exc)
    return True, None


def load_models() -> None:
    # Registers every mapped table on Base.metadata.
    import postflow.storage.models  # noqa: F401
