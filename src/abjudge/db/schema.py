# src/abjudge/db/schema.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from abjudge.timeutils import utcnow


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class AbTestRow(Base):
    """
    One row per A/B test.

    JSON-ish columns are stored as text so the same schema works on DuckDB,
    SQLite and Postgres.
    """
    __tablename__ = "ab_tests"

    test_id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)  # banner/carousel

    status: Mapped[str] = mapped_column(String, nullable=False)  # running/completed
    checked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    winner_variant_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    published_refs_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    notify_email: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    special_occasion: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Evaluation lease: owner token + expiry, both NULL when free
    lease_owner: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )


class VariantRow(Base):
    """
    Creative variants of a test.

    NOTE: no FK constraint (DuckDB has no ON DELETE CASCADE); the store deletes
    variants together with their test.
    """
    __tablename__ = "ab_test_variants"

    variant_id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    test_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # publish order within the test

    published_ref_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_refs_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    metrics_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        default=utcnow,
    )
