from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

from abjudge.db.schema import Base

logger = logging.getLogger(__name__)


def init_db(engine: Engine, reset: bool = False) -> list[str]:
    """
    Create the test/variant tables; drop them first when `reset`.

    DDL runs on a plain connection and is committed through the DBAPI
    connection, which DuckDB needs for drop/create to stick.
    Returns the table names present afterwards.
    """
    conn = engine.connect()
    try:
        if reset:
            logger.warning("dropping all abjudge tables")
            Base.metadata.drop_all(bind=conn)
        Base.metadata.create_all(bind=conn)

        raw = conn.connection
        if hasattr(raw, "commit"):
            raw.commit()
        return sorted(inspect(conn).get_table_names())
    finally:
        conn.close()


def ensure_db(engine: Engine) -> None:
    """Create missing tables without touching existing rows."""
    init_db(engine, reset=False)
