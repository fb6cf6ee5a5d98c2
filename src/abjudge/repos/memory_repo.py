"""In-memory store with the same lease semantics as the SQL repo."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import uuid4

from abjudge.errors import AbTestNotFound, LeaseConflict
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


@dataclass
class _Lease:
    owner: str
    expires_at: datetime


class InMemoryAbTestRepo:
    """
    Thread-safe dict-backed store.

    Backs the engine in tests and in API dependency overrides. One lock
    guards everything, which is enough for single-row compare-and-set.
    """

    def __init__(self, now_fn=utcnow) -> None:
        self._now_fn = now_fn
        self._lock = threading.Lock()
        self._tests: dict[str, AbTest] = {}
        self._variants: dict[str, list[Variant]] = {}
        self._leases: dict[str, _Lease] = {}

    def create_test(
        self,
        project_id: str,
        kind: AbTestKind,
        scheduled_at: datetime | None = None,
        notify_email: str | None = None,
        special_occasion: str | None = None,
    ) -> AbTest:
        now = self._now_fn()
        test = AbTest(
            test_id=str(uuid4()),
            project_id=project_id,
            kind=AbTestKind(kind),
            status=AbTestStatus.RUNNING,
            scheduled_at=scheduled_at or now,
            notify_email=notify_email,
            special_occasion=special_occasion,
            created_at=now,
        )
        with self._lock:
            self._tests[test.test_id] = test
            self._variants[test.test_id] = []
        return test

    def get_test(self, test_id: str) -> AbTest | None:
        with self._lock:
            return self._tests.get(test_id)

    def list_tests(self, status: AbTestStatus | None = None) -> list[AbTest]:
        with self._lock:
            tests = list(self._tests.values())
        if status is not None:
            tests = [t for t in tests if t.status == AbTestStatus(status)]
        return sorted(tests, key=lambda t: t.scheduled_at, reverse=True)

    def delete_test(self, test_id: str) -> bool:
        with self._lock:
            if self._tests.pop(test_id, None) is None:
                return False
            self._variants.pop(test_id, None)
            self._leases.pop(test_id, None)
            return True

    def add_variant(
        self,
        test_id: str,
        published_ref: Sequence[str] | None,
        content_refs: Sequence[ContentRef] = (),
    ) -> Variant:
        published_ref = normalize_refs(published_ref)
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise AbTestNotFound(test_id)

            variant = Variant(
                variant_id=str(uuid4()),
                test_id=test_id,
                published_ref=published_ref,
                content_refs=tuple(content_refs),
                created_at=self._now_fn(),
            )
            self._variants[test_id].append(variant)

            if published_ref:
                refs = list(test.published_refs)
                refs.extend(r for r in published_ref if r not in refs)
                self._tests[test_id] = replace(test, published_refs=tuple(refs))
            return variant

    def list_variants(self, test_id: str) -> list[Variant]:
        with self._lock:
            return list(self._variants.get(test_id, []))

    def select_due(self, now: datetime, limit: int | None = None) -> list[str]:
        with self._lock:
            due = [t for t in self._tests.values() if t.is_due(now)]
        due.sort(key=lambda t: (t.scheduled_at, t.test_id))
        ids = [t.test_id for t in due]
        return ids[:limit] if limit is not None else ids

    def acquire_lease(self, test_id: str, owner: str, now: datetime, ttl: timedelta) -> bool:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None or test.status != AbTestStatus.RUNNING or test.checked:
                return False
            lease = self._leases.get(test_id)
            if lease is not None and lease.expires_at > now:
                return lease.owner == owner
            self._leases[test_id] = _Lease(owner=owner, expires_at=now + ttl)
            return True

    def release_lease(self, test_id: str, owner: str) -> None:
        with self._lock:
            lease = self._leases.get(test_id)
            if lease is not None and lease.owner == owner:
                del self._leases[test_id]

    def commit_evaluation(
        self,
        test_id: str,
        owner: str,
        metrics: Mapping[str, EngagementMetrics],
        completed_at: datetime | None,
        winner_variant_ids: Sequence[str] = (),
    ) -> None:
        with self._lock:
            test = self._tests.get(test_id)
            if test is None:
                raise AbTestNotFound(test_id)
            lease = self._leases.get(test_id)
            if lease is None or lease.owner != owner:
                raise LeaseConflict(test_id)

            variants = self._variants[test_id]
            known = {v.variant_id for v in variants}
            unknown = set(metrics) - known
            if unknown:
                raise ValueError(f"variants {sorted(unknown)} do not belong to test {test_id}")

            self._variants[test_id] = [
                replace(v, metrics=metrics[v.variant_id]) if v.variant_id in metrics else v
                for v in variants
            ]
            if completed_at is not None:
                self._tests[test_id] = replace(
                    test,
                    status=AbTestStatus.COMPLETED,
                    checked=True,
                    completed_at=completed_at,
                    winner_variant_ids=tuple(winner_variant_ids),
                )
            del self._leases[test_id]
