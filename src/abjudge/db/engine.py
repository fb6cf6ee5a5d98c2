from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from abjudge.config.settings import settings

DUCKDB_PREFIX = "duckdb:///"


@dataclass(frozen=True)
class DBPingResult:
    ok: bool
    detail: str


def resolve_db_url(db_url: Optional[str] = None) -> str:
    """Explicit argument, then DATABASE_URL, then ABJUDGE_DB_URL / default."""
    return db_url or os.getenv("DATABASE_URL") or settings.db_url


def _ensure_duckdb_dir(url: str) -> None:
    path = url[len(DUCKDB_PREFIX):].split("?", 1)[0]
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def build_engine(db_url: Optional[str] = None) -> Engine:
    """
    Build the SQLAlchemy Engine behind the test store.

    DuckDB file URLs get their parent directory created; Postgres gets
    pre-ping since cron passes hold connections across idle gaps.
    """
    url = resolve_db_url(db_url)
    if url.startswith("postgresql"):
        return create_engine(url, future=True, pool_pre_ping=True)
    if url.startswith(DUCKDB_PREFIX):
        _ensure_duckdb_dir(url)
    return create_engine(url, future=True)


def ping_db(engine: Engine) -> DBPingResult:
    """Connectivity check for /health. Never raises."""
    try:
        with engine.connect() as conn:
            conn.execute(text("select 1")).scalar_one()
        return DBPingResult(ok=True, detail="ok")
    except Exception as e:
        return DBPingResult(ok=False, detail=f"{type(e).__name__}: {e}")
