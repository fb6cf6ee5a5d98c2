"""Evaluation engine: score the variants of a due test and declare winners."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import timedelta
from uuid import uuid4

from abjudge.config.settings import settings
from abjudge.errors import (
    AbTestNotFound,
    InvalidTestState,
    LeaseConflict,
    MetricsUnavailable,
    PassCancelled,
    StoreUnavailable,
)
from abjudge.models.domain import (
    AbTest,
    AbTestCompleted,
    AbTestStatus,
    EngagementMetrics,
    EvaluationOutcome,
    EvaluationResult,
    VariantResult,
)
from abjudge.repos.ab_test_repo import AbTestStore
from abjudge.services.metrics_gateway import MetricsGateway
from abjudge.services.notifications import NotificationDispatcher, notify_completed
from abjudge.timeutils import utcnow

logger = logging.getLogger(__name__)


def select_winners(scores: Mapping[str, float]) -> tuple[str, ...]:
    """
    Every variant whose score equals the maximum wins (N-way ties included).

    Result order follows the mapping's order; the set itself does not depend on it.
    """
    if not scores:
        return ()
    best = max(scores.values())
    return tuple(variant_id for variant_id, score in scores.items() if score == best)


class EvaluationEngine:
    """
    Turns a due, unchecked, running test into a scored (usually completed) test.

    All writes for a test happen through `store.commit_evaluation` while this
    engine holds the test's lease. A lease that was acquired but not committed
    is released on the way out, including on cancellation and store errors.
    """

    def __init__(
        self,
        store: AbTestStore,
        gateway: MetricsGateway,
        dispatcher: NotificationDispatcher | None = None,
        timeout_s: float | None = None,
        lease_ttl: timedelta | None = None,
        max_fetch_workers: int = 4,
        now_fn=utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.timeout_s = timeout_s if timeout_s is not None else settings.metrics_timeout_s
        self.lease_ttl = lease_ttl or timedelta(seconds=settings.lease_ttl_s)
        self._now_fn = now_fn
        self._executor = ThreadPoolExecutor(
            max_workers=max_fetch_workers,
            thread_name_prefix="metrics-fetch",
        )

    def close(self) -> None:
        # Hung gateway calls are abandoned, not awaited.
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "EvaluationEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def load_evaluable(self, test_id: str) -> AbTest:
        test = self.store.get_test(test_id)
        if test is None:
            raise AbTestNotFound(test_id)
        if test.status != AbTestStatus.RUNNING or test.checked:
            raise InvalidTestState(test_id, f"status={test.status.value} checked={test.checked}")
        return test

    def evaluate(self, test_id: str, cancel: threading.Event | None = None) -> EvaluationResult:
        """
        Lease, score and transition one test.

        Raises AbTestNotFound, InvalidTestState, LeaseConflict, StoreUnavailable
        or PassCancelled; per-variant gateway failures never escape.
        """
        test = self.load_evaluable(test_id)
        owner = uuid4().hex
        if not self.store.acquire_lease(test_id, owner, self._now_fn(), self.lease_ttl):
            logger.debug("lease conflict on test %s", test_id)
            raise LeaseConflict(test_id)

        release = True
        try:
            result = self._evaluate_leased(test, owner, cancel)
            release = False
        except LeaseConflict:
            # Lease was taken over after expiry; nothing of ours to release.
            release = False
            raise
        finally:
            if release:
                self._release(test_id, owner)

        if result.outcome in (EvaluationOutcome.COMPLETED, EvaluationOutcome.NO_VARIANTS):
            notify_completed(
                self.dispatcher,
                AbTestCompleted(
                    test_id=test.test_id,
                    project_id=test.project_id,
                    winner_variant_ids=result.winner_variant_ids,
                    completed_at=result.completed_at,
                    notify_email=test.notify_email,
                    special_occasion=test.special_occasion,
                ),
            )
        return result

    def _release(self, test_id: str, owner: str) -> None:
        try:
            self.store.release_lease(test_id, owner)
        except StoreUnavailable:
            logger.warning("could not release lease on test %s; it frees itself at expiry", test_id, exc_info=True)

    def _fetch(self, published_ref: Sequence[str]) -> EngagementMetrics:
        future = self._executor.submit(self.gateway.fetch, published_ref)
        try:
            return future.result(timeout=self.timeout_s)
        except FuturesTimeout as e:
            future.cancel()
            raise MetricsUnavailable(published_ref, f"timed out after {self.timeout_s}s") from e

    def _evaluate_leased(self, test: AbTest, owner: str, cancel: threading.Event | None) -> EvaluationResult:
        variants = self.store.list_variants(test.test_id)
        publishable = [v for v in variants if v.is_publishable]
        unpublished = tuple(v.variant_id for v in variants if not v.is_publishable)

        fresh: dict[str, EngagementMetrics] = {}
        unscored: list[str] = []
        for variant in publishable:
            if cancel is not None and cancel.is_set():
                raise PassCancelled(f"cancelled while evaluating test {test.test_id}")
            try:
                fresh[variant.variant_id] = self._fetch(variant.published_ref)
            except MetricsUnavailable as e:
                logger.warning("variant %s of test %s unscored: %s", variant.variant_id, test.test_id, e)
                unscored.append(variant.variant_id)

        results = tuple(
            VariantResult(
                variant_id=v.variant_id,
                published_ref=v.published_ref,
                content_refs=v.content_refs,
                metrics=fresh.get(v.variant_id, v.metrics),
                scored_this_pass=v.variant_id in fresh,
            )
            for v in publishable
        )

        if publishable and not fresh:
            # Nothing scored: stay running/unchecked and retry next pass.
            self.store.commit_evaluation(test.test_id, owner, {}, completed_at=None)
            logger.info("test %s unscored this pass; will retry", test.test_id)
            return EvaluationResult(
                test_id=test.test_id,
                project_id=test.project_id,
                outcome=EvaluationOutcome.UNSCORED,
                status=AbTestStatus.RUNNING,
                unscored=tuple(unscored),
                results=results,
                unpublished=unpublished,
            )

        scores = {r.variant_id: r.metrics.engagement_score for r in results if r.metrics is not None}
        winner_ids = select_winners(scores)
        completed_at = self._now_fn()
        self.store.commit_evaluation(test.test_id, owner, fresh, completed_at, winner_ids)

        outcome = EvaluationOutcome.COMPLETED if publishable else EvaluationOutcome.NO_VARIANTS
        logger.info("test %s %s, winners=%s", test.test_id, outcome.value, list(winner_ids))
        return EvaluationResult(
            test_id=test.test_id,
            project_id=test.project_id,
            outcome=outcome,
            status=AbTestStatus.COMPLETED,
            winners=tuple(r for r in results if r.variant_id in winner_ids),
            unscored=tuple(unscored),
            results=results,
            completed_at=completed_at,
            unpublished=unpublished,
        )
