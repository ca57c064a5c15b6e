"""Database storage configuration."""

import os

from sqlalchemy import Engine
from sqlmodel import SQLModel, create_engine

from paperflow_shared.lazy_cache import lazy_singleton

_DEFAULT_DATABASE_URL = "sqlite:///./paperflow.db"


def create_db_engine(database_url: str) -> Engine:
    """Create an engine, allowing cross-thread use for SQLite.

    Pipeline runs execute on worker threads, so SQLite connections must not
    be pinned to the creating thread.
    """
    connect_args: dict = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(database_url, connect_args=connect_args, echo=False)


@lazy_singleton
def get_engine() -> Engine:
    """Return the process-wide engine for DATABASE_URL."""
    return create_db_engine(os.getenv("DATABASE_URL") or _DEFAULT_DATABASE_URL)


def create_db_and_tables(engine: Engine) -> None:
    """Create all database tables."""
    SQLModel.metadata.create_all(engine)
