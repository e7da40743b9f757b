import logging
from collections.abc import Generator

from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine

from .settings import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))


def create_db_and_tables() -> None:
    # Import models so every table is registered on the metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(engine)
    logger.info("Database tables ensured")


def check_db_connection() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
