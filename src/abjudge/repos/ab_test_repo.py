"""A/B test + variant repository."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

import duckdb
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from abjudge.db.schema import AbTestRow, VariantRow
from abjudge.errors import AbTestNotFound, LeaseConflict, StoreUnavailable
from abjudge.models.domain import (
    AbTest,
    AbTestKind,
    AbTestStatus,
    ContentRef,
    EngagementMetrics,
    Variant,
    normalize_refs,
)
from abjudge.timeutils import utcnow

logger = logging.getLogger(__name__)


class AbTestStore(Protocol):
    """
    Persistence contract for tests and their variants.

    Every write to a test's status/checked/metrics goes through
    `commit_evaluation`, which only succeeds for the current lease owner and
    applies all of its changes in one transaction.
    """

    def create_test(
        self,
        project_id: str,
        kind: AbTestKind,
        scheduled_at: datetime | None = None,
        notify_email: str | None = None,
        special_occasion: str | None = None,
    ) -> AbTest: ...

    def get_test(self, test_id: str) -> AbTest | None: ...

    def list_tests(self, status: AbTestStatus | None = None) -> list[AbTest]: ...

    def delete_test(self, test_id: str) -> bool: ...

    def add_variant(
        self,
        test_id: str,
        published_ref: Sequence[str] | None,
        content_refs: Sequence[ContentRef] = (),
    ) -> Variant: ...

    def list_variants(self, test_id: str) -> list[Variant]: ...

    def select_due(self, now: datetime, limit: int | None = None) -> list[str]: ...

    def acquire_lease(self, test_id: str, owner: str, now: datetime, ttl: timedelta) -> bool: ...

    def release_lease(self, test_id: str, owner: str) -> None: ...

    def commit_evaluation(
        self,
        test_id: str,
        owner: str,
        metrics: Mapping[str, EngagementMetrics],
        completed_at: datetime | None,
        winner_variant_ids: Sequence[str] = (),
    ) -> None: ...


def _dump_refs(refs: tuple[str, ...] | None) -> str | None:
    if not refs:
        return None
    return json.dumps(list(refs))


def _to_test(row: AbTestRow) -> AbTest:
    return AbTest(
        test_id=row.test_id,
        project_id=row.project_id,
        kind=AbTestKind(row.kind),
        status=AbTestStatus(row.status),
        scheduled_at=row.scheduled_at,
        checked=bool(row.checked),
        completed_at=row.completed_at,
        winner_variant_ids=tuple(json.loads(row.winner_variant_ids_json or "[]")),
        published_refs=tuple(json.loads(row.published_refs_json or "[]")),
        notify_email=row.notify_email,
        special_occasion=row.special_occasion,
        created_at=row.created_at,
    )


def _is_write_conflict(exc: BaseException | None) -> bool:
    """DuckDB rejects the second of two concurrent UPDATEs on one row."""
    return isinstance(exc, OperationalError) and isinstance(exc.orig, duckdb.TransactionException)


def _to_variant(row: VariantRow) -> Variant:
    published_ref = json.loads(row.published_ref_json) if row.published_ref_json else None
    return Variant(
        variant_id=row.variant_id,
        test_id=row.test_id,
        published_ref=tuple(published_ref) if published_ref else None,
        content_refs=tuple(ContentRef.from_dict(c) for c in json.loads(row.content_refs_json or "[]")),
        metrics=EngagementMetrics.from_dict(json.loads(row.metrics_json)) if row.metrics_json else None,
        created_at=row.created_at,
    )


class SqlAbTestRepo:
    """
    SQLAlchemy-backed store (DuckDB by default).

    Each public method runs in its own transaction; database errors surface as
    StoreUnavailable and roll the transaction back.
    """

    def __init__(self, engine: Engine, now_fn=utcnow) -> None:
        self._engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)
        self._now_fn = now_fn

    @contextmanager
    def _tx(self) -> Iterator[Session]:
        try:
            with self._sessions.begin() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"{type(e).__name__}: {e}") from e

    def create_test(
        self,
        project_id: str,
        kind: AbTestKind,
        scheduled_at: datetime | None = None,
        notify_email: str | None = None,
        special_occasion: str | None = None,
    ) -> AbTest:
        now = self._now_fn()
        row = AbTestRow(
            test_id=str(uuid4()),
            project_id=project_id,
            kind=AbTestKind(kind).value,
            status=AbTestStatus.RUNNING.value,
            checked=False,
            scheduled_at=scheduled_at or now,
            completed_at=None,
            winner_variant_ids_json="[]",
            published_refs_json="[]",
            notify_email=notify_email,
            special_occasion=special_occasion,
            created_at=now,
        )
        with self._tx() as session:
            session.add(row)
            session.flush()
            return _to_test(row)

    def get_test(self, test_id: str) -> AbTest | None:
        with self._tx() as session:
            row = session.get(AbTestRow, test_id)
            return _to_test(row) if row is not None else None

    def list_tests(self, status: AbTestStatus | None = None) -> list[AbTest]:
        stmt = select(AbTestRow)
        if status is not None:
            stmt = stmt.where(AbTestRow.status == AbTestStatus(status).value)
        with self._tx() as session:
            rows = session.execute(stmt.order_by(AbTestRow.scheduled_at.desc())).scalars().all()
            return [_to_test(r) for r in rows]

    def delete_test(self, test_id: str) -> bool:
        with self._tx() as session:
            row = session.get(AbTestRow, test_id)
            if row is None:
                return False
            session.execute(delete(VariantRow).where(VariantRow.test_id == test_id))
            session.delete(row)
            return True

    def add_variant(
        self,
        test_id: str,
        published_ref: Sequence[str] | None,
        content_refs: Sequence[ContentRef] = (),
    ) -> Variant:
        published_ref = normalize_refs(published_ref)
        with self._tx() as session:
            test_row = session.get(AbTestRow, test_id)
            if test_row is None:
                raise AbTestNotFound(test_id)

            position = session.execute(
                select(func.count()).select_from(VariantRow).where(VariantRow.test_id == test_id)
            ).scalar_one()

            row = VariantRow(
                variant_id=str(uuid4()),
                test_id=test_id,
                position=int(position),
                published_ref_json=_dump_refs(published_ref),
                content_refs_json=json.dumps([c.to_dict() for c in content_refs]),
                metrics_json=None,
                created_at=self._now_fn(),
            )
            session.add(row)

            if published_ref:
                refs = json.loads(test_row.published_refs_json or "[]")
                refs.extend(r for r in published_ref if r not in refs)
                test_row.published_refs_json = json.dumps(refs)

            session.flush()
            return _to_variant(row)

    def list_variants(self, test_id: str) -> list[Variant]:
        with self._tx() as session:
            rows = session.execute(
                select(VariantRow)
                .where(VariantRow.test_id == test_id)
                .order_by(VariantRow.position)
            ).scalars().all()
            return [_to_variant(r) for r in rows]

    def select_due(self, now: datetime, limit: int | None = None) -> list[str]:
        stmt = (
            select(AbTestRow.test_id)
            .where(
                AbTestRow.status == AbTestStatus.RUNNING.value,
                AbTestRow.checked.is_(False),
                AbTestRow.scheduled_at <= now,
            )
            .order_by(AbTestRow.scheduled_at, AbTestRow.test_id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        with self._tx() as session:
            return list(session.execute(stmt).scalars().all())

    def acquire_lease(self, test_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        """
        Compare-and-set the lease.

        DuckDB rowcount is unreliable for UPDATE, so we read the owner back
        inside the same transaction instead of trusting rowcount. Losing a
        concurrent UPDATE on the row means another owner got there first.
        """
        stmt = (
            update(AbTestRow)
            .where(
                AbTestRow.test_id == test_id,
                AbTestRow.status == AbTestStatus.RUNNING.value,
                AbTestRow.checked.is_(False),
                or_(AbTestRow.lease_owner.is_(None), AbTestRow.lease_expires_at <= now),
            )
            .values(lease_owner=owner, lease_expires_at=now + ttl)
            .execution_options(synchronize_session=False)
        )
        try:
            with self._tx() as session:
                session.execute(stmt)
                current = session.execute(
                    select(AbTestRow.lease_owner).where(AbTestRow.test_id == test_id)
                ).scalar_one_or_none()
        except StoreUnavailable as e:
            if _is_write_conflict(e.__cause__):
                logger.debug("lease on test %s lost to a concurrent update", test_id)
                return False
            raise
        return current == owner

    def release_lease(self, test_id: str, owner: str) -> None:
        stmt = (
            update(AbTestRow)
            .where(AbTestRow.test_id == test_id, AbTestRow.lease_owner == owner)
            .values(lease_owner=None, lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        with self._tx() as session:
            session.execute(stmt)

    def commit_evaluation(
        self,
        test_id: str,
        owner: str,
        metrics: Mapping[str, EngagementMetrics],
        completed_at: datetime | None,
        winner_variant_ids: Sequence[str] = (),
    ) -> None:
        with self._tx() as session:
            row = session.get(AbTestRow, test_id)
            if row is None:
                raise AbTestNotFound(test_id)
            if row.lease_owner != owner:
                raise LeaseConflict(test_id)

            for variant_id, snapshot in metrics.items():
                variant = session.get(VariantRow, variant_id)
                if variant is None or variant.test_id != test_id:
                    raise ValueError(f"variant {variant_id} does not belong to test {test_id}")
                variant.metrics_json = json.dumps(snapshot.to_dict())

            if completed_at is not None:
                row.status = AbTestStatus.COMPLETED.value
                row.checked = True
                row.completed_at = completed_at
                row.winner_variant_ids_json = json.dumps(list(winner_variant_ids))

            row.lease_owner = None
            row.lease_expires_at = None
