"""Database engine initialization and connection management."""

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from .schema import Base, EngineMetadata

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"


def _sqlite_path(url: str) -> Path | None:
    prefix = "sqlite:///"
    if not url.startswith(prefix):
        return None
    path = url[len(prefix) :]
    if not path or path == ":memory:":
        return None
    return Path(path)


def init_database(
    url: str,
    lock_timeout_seconds: float = 15.0,
    echo: bool = False,
) -> sessionmaker[Session]:
    """Create tables if needed and return a session factory.

    Accepts a full SQLAlchemy URL or a bare SQLite file path.
    """
    if "://" not in url:
        url = f"sqlite:///{url}"

    connect_args: dict[str, Any] = {}
    sqlite_path = _sqlite_path(url)
    if url.startswith("sqlite"):
        # Sessions are shared across request threads; writers wait on the
        # file lock for at most lock_timeout_seconds.
        connect_args = {"check_same_thread": False, "timeout": lock_timeout_seconds}
        if sqlite_path is not None:
            sqlite_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=echo, connect_args=connect_args)
    Base.metadata.create_all(engine)

    session_maker = sessionmaker(bind=engine, expire_on_commit=False)

    with session_maker() as session:
        schema_version = session.get(EngineMetadata, "schema_version")
        if not schema_version:
            session.add(EngineMetadata(key="schema_version", value=SCHEMA_VERSION))
            session.commit()

    logger.info("Database ready at %s", engine.url.render_as_string(hide_password=True))
    return session_maker
