"""Global test fixtures."""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from abjudge.db.engine import build_engine  # noqa: E402
from abjudge.db.init_db import init_db  # noqa: E402
from abjudge.repos.ab_test_repo import SqlAbTestRepo  # noqa: E402
from abjudge.repos.memory_repo import InMemoryAbTestRepo  # noqa: E402

T0 = datetime(2025, 3, 1, 12, 0, 0)


class FakeClock:
    """Callable clock; tests move it explicitly."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock) -> InMemoryAbTestRepo:
    return InMemoryAbTestRepo(now_fn=clock)


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"duckdb:///{tmp_path / 'abjudge_test.duckdb'}"


@pytest.fixture
def sql_store(db_url, clock) -> SqlAbTestRepo:
    engine = build_engine(db_url)
    init_db(engine)
    return SqlAbTestRepo(engine, now_fn=clock)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # Never touch the developer's data/abjudge.duckdb
    monkeypatch.setenv("DATABASE_URL", f"duckdb:///{tmp_path / 'default.duckdb'}")
    yield
