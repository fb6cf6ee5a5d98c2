"""Database session helpers."""

from __future__ import annotations

from typing import Optional

from abjudge.db.engine import build_engine
from abjudge.db.init_db import ensure_db
from abjudge.repos.ab_test_repo import SqlAbTestRepo


def get_store(db_url: Optional[str] = None) -> SqlAbTestRepo:
    """Build the SQL store bound to the project engine, creating missing tables."""
    engine = build_engine(db_url)
    ensure_db(engine)
    return SqlAbTestRepo(engine)
