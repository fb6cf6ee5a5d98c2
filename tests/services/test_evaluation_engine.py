from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from abjudge.errors import (
    AbTestNotFound,
    InvalidTestState,
    LeaseConflict,
    MetricsUnavailable,
    PassCancelled,
)
from abjudge.models.domain import AbTestKind, AbTestStatus, EngagementMetrics, EvaluationOutcome
from abjudge.services.evaluation_engine import EvaluationEngine, select_winners
from abjudge.services.metrics_gateway import StubMetricsGateway
from abjudge.services.notifications import RecordingDispatcher


def _engine(store, gateway, clock, **kwargs) -> EvaluationEngine:
    kwargs.setdefault("timeout_s", 2.0)
    kwargs.setdefault("lease_ttl", timedelta(minutes=5))
    return EvaluationEngine(store, gateway, now_fn=clock, **kwargs)


def _test_with_variants(store, clock, *refs):
    test = store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock() - timedelta(hours=1))
    variants = [store.add_variant(test.test_id, ref) for ref in refs]
    return test, variants


class _BlockingGateway:
    """Blocks inside fetch until released; `entered` fires once a fetch starts."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch(self, published_ref):
        self.entered.set()
        self.release.wait(timeout=5)
        return EngagementMetrics(likes=1, comments=0, shares=0, reach=0, engagement_score=1.0)


class _CancellingGateway:
    """Sets the pass's cancel flag during the first fetch."""

    def __init__(self, cancel: threading.Event) -> None:
        self.cancel = cancel

    def fetch(self, published_ref):
        self.cancel.set()
        return EngagementMetrics(likes=1, comments=0, shares=0, reach=0, engagement_score=1.0)


def test_select_winners_includes_ties():
    assert select_winners({}) == ()
    assert select_winners({"a": 1.0, "b": 3.0, "c": 2.0}) == ("b",)
    assert set(select_winners({"a": 5.0, "b": 5.0, "c": 5.0})) == {"a", "b", "c"}
    assert set(select_winners({"a": 0.0, "b": 0.0})) == {"a", "b"}


def test_single_winner_completes_test(memory_store, clock):
    test, (v1, v2) = _test_with_variants(memory_store, clock, "p1", "p2")
    gateway = StubMetricsGateway(counts={"p1": {"likes": 10}, "p2": {"likes": 4, "comments": 1}})
    dispatcher = RecordingDispatcher()

    with _engine(memory_store, gateway, clock, dispatcher=dispatcher) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.COMPLETED
    assert result.status == AbTestStatus.COMPLETED
    assert result.winner_variant_ids == (v1.variant_id,)
    assert result.completed_at == clock()
    assert all(r.scored_this_pass for r in result.results)

    stored = memory_store.get_test(test.test_id)
    assert stored.status == AbTestStatus.COMPLETED
    assert stored.checked is True
    assert stored.completed_at == clock()
    assert stored.winner_variant_ids == (v1.variant_id,)
    scores = {v.variant_id: v.metrics.engagement_score for v in memory_store.list_variants(test.test_id)}
    assert scores == {v1.variant_id: 10.0, v2.variant_id: 6.0}

    assert [e.test_id for e in dispatcher.completed] == [test.test_id]
    assert dispatcher.completed[0].winner_variant_ids == (v1.variant_id,)


def test_tied_variants_are_all_winners(memory_store, clock):
    test, variants = _test_with_variants(memory_store, clock, "p1", "p2", "p3")
    gateway = StubMetricsGateway(
        counts={"p1": {"shares": 2}, "p2": {"likes": 6}, "p3": {"likes": 1}},
    )

    with _engine(memory_store, gateway, clock) as engine:
        result = engine.evaluate(test.test_id)

    assert set(result.winner_variant_ids) == {variants[0].variant_id, variants[1].variant_id}
    assert set(memory_store.get_test(test.test_id).winner_variant_ids) == set(result.winner_variant_ids)


def test_all_fetches_failing_leaves_test_running_for_retry(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1", "p2")
    gateway = StubMetricsGateway(failing=frozenset({"p1", "p2"}))
    dispatcher = RecordingDispatcher()

    with _engine(memory_store, gateway, clock, dispatcher=dispatcher) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.UNSCORED
    assert result.status == AbTestStatus.RUNNING
    assert result.will_retry is True
    assert len(result.unscored) == 2
    assert result.winners == ()

    stored = memory_store.get_test(test.test_id)
    assert stored.status == AbTestStatus.RUNNING
    assert stored.checked is False
    assert stored.completed_at is None
    assert dispatcher.completed == []
    # lease was released, the next pass can pick it up immediately
    assert memory_store.select_due(clock()) == [test.test_id]
    assert memory_store.acquire_lease(test.test_id, "next-pass", clock(), timedelta(minutes=1))


def test_partial_failure_completes_with_scored_variants(memory_store, clock):
    test, (v1, v2) = _test_with_variants(memory_store, clock, "p1", "p2")
    gateway = StubMetricsGateway(counts={"p2": {"likes": 1}}, failing=frozenset({"p1"}))

    with _engine(memory_store, gateway, clock) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.COMPLETED
    assert result.winner_variant_ids == (v2.variant_id,)
    assert result.unscored == (v1.variant_id,)


def test_prior_metrics_compete_when_refetch_fails(memory_store, clock):
    test, (v1, v2) = _test_with_variants(memory_store, clock, "p1", "p2")
    prior = EngagementMetrics(likes=50, comments=0, shares=0, reach=0, engagement_score=50.0)
    assert memory_store.acquire_lease(test.test_id, "earlier", clock(), timedelta(minutes=1))
    memory_store.commit_evaluation(test.test_id, "earlier", {v1.variant_id: prior}, completed_at=None)

    gateway = StubMetricsGateway(counts={"p2": {"likes": 5}}, failing=frozenset({"p1"}))
    with _engine(memory_store, gateway, clock) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.COMPLETED
    assert result.winner_variant_ids == (v1.variant_id,)
    by_id = {r.variant_id: r for r in result.results}
    assert by_id[v1.variant_id].scored_this_pass is False
    assert by_id[v1.variant_id].metrics == prior
    assert by_id[v2.variant_id].scored_this_pass is True
    # prior snapshot is not overwritten by a failed fetch
    stored = {v.variant_id: v.metrics for v in memory_store.list_variants(test.test_id)}
    assert stored[v1.variant_id] == prior


def test_test_without_variants_completes_with_no_winners(memory_store, clock):
    test = memory_store.create_test("proj", AbTestKind.CAROUSEL, scheduled_at=clock())
    dispatcher = RecordingDispatcher()

    with _engine(memory_store, StubMetricsGateway(), clock, dispatcher=dispatcher) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.NO_VARIANTS
    assert result.status == AbTestStatus.COMPLETED
    assert result.winners == ()
    stored = memory_store.get_test(test.test_id)
    assert stored.status == AbTestStatus.COMPLETED
    assert stored.winner_variant_ids == ()
    assert len(dispatcher.completed) == 1


def test_unpublished_variants_are_ignored(memory_store, clock):
    test, (draft, live) = _test_with_variants(memory_store, clock, None, "p1")

    with _engine(memory_store, StubMetricsGateway(counts={"p1": {"likes": 1}}), clock) as engine:
        result = engine.evaluate(test.test_id)

    assert result.unpublished == (draft.variant_id,)
    assert [r.variant_id for r in result.results] == [live.variant_id]
    assert result.winner_variant_ids == (live.variant_id,)


def test_only_unpublished_variants_is_no_variants(memory_store, clock):
    test, (draft,) = _test_with_variants(memory_store, clock, None)

    with _engine(memory_store, StubMetricsGateway(), clock) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.NO_VARIANTS
    assert result.unpublished == (draft.variant_id,)


def test_missing_and_completed_tests_are_rejected(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1")
    with _engine(memory_store, StubMetricsGateway(), clock) as engine:
        with pytest.raises(AbTestNotFound):
            engine.evaluate("nope")

        engine.evaluate(test.test_id)
        with pytest.raises(InvalidTestState):
            engine.evaluate(test.test_id)


def test_held_lease_raises_conflict_and_leaves_test_untouched(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1")
    assert memory_store.acquire_lease(test.test_id, "someone-else", clock(), timedelta(minutes=5))

    with _engine(memory_store, StubMetricsGateway(), clock) as engine:
        with pytest.raises(LeaseConflict):
            engine.evaluate(test.test_id)

    stored = memory_store.get_test(test.test_id)
    assert stored.status == AbTestStatus.RUNNING
    assert all(v.metrics is None for v in memory_store.list_variants(test.test_id))


def test_expired_lease_is_taken_over(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1")
    assert memory_store.acquire_lease(test.test_id, "crashed-worker", clock(), timedelta(minutes=5))
    clock.advance(minutes=6)

    with _engine(memory_store, StubMetricsGateway(), clock) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.COMPLETED


def test_concurrent_evaluations_complete_once(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1")
    gateway = _BlockingGateway()
    dispatcher = RecordingDispatcher()
    outcome = {}

    engine = _engine(memory_store, gateway, clock, dispatcher=dispatcher)
    try:
        worker = threading.Thread(target=lambda: outcome.setdefault("first", engine.evaluate(test.test_id)))
        worker.start()
        assert gateway.entered.wait(timeout=5)

        with pytest.raises(LeaseConflict):
            engine.evaluate(test.test_id)

        gateway.release.set()
        worker.join(timeout=5)
    finally:
        gateway.release.set()
        engine.close()

    assert outcome["first"].outcome == EvaluationOutcome.COMPLETED
    assert len(dispatcher.completed) == 1


def test_concurrent_evaluations_on_duckdb_complete_once(sql_store, clock):
    test, _ = _test_with_variants(sql_store, clock, "p1")
    gateway = _BlockingGateway()
    dispatcher = RecordingDispatcher()
    outcome = {}

    engine = _engine(sql_store, gateway, clock, dispatcher=dispatcher)
    try:
        worker = threading.Thread(target=lambda: outcome.setdefault("first", engine.evaluate(test.test_id)))
        worker.start()
        assert gateway.entered.wait(timeout=5)

        with pytest.raises(LeaseConflict):
            engine.evaluate(test.test_id)

        gateway.release.set()
        worker.join(timeout=5)
    finally:
        gateway.release.set()
        engine.close()

    assert outcome["first"].outcome == EvaluationOutcome.COMPLETED
    assert sql_store.get_test(test.test_id).status == AbTestStatus.COMPLETED
    assert len(dispatcher.completed) == 1


def test_cancellation_releases_lease_without_partial_writes(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1", "p2")
    cancel = threading.Event()

    with _engine(memory_store, _CancellingGateway(cancel), clock) as engine:
        with pytest.raises(PassCancelled):
            engine.evaluate(test.test_id, cancel=cancel)

    stored = memory_store.get_test(test.test_id)
    assert stored.status == AbTestStatus.RUNNING
    assert stored.checked is False
    assert all(v.metrics is None for v in memory_store.list_variants(test.test_id))
    assert memory_store.acquire_lease(test.test_id, "next-pass", clock(), timedelta(minutes=1))


def test_slow_gateway_times_out_per_variant(memory_store, clock):
    test, _ = _test_with_variants(memory_store, clock, "p1")
    gateway = _BlockingGateway()

    engine = _engine(memory_store, gateway, clock, timeout_s=0.05)
    try:
        result = engine.evaluate(test.test_id)
    finally:
        gateway.release.set()
        engine.close()

    assert result.outcome == EvaluationOutcome.UNSCORED
    assert memory_store.get_test(test.test_id).status == AbTestStatus.RUNNING


def test_failing_notifier_does_not_undo_completion(memory_store, clock):
    class Broken:
        def test_completed(self, event):
            raise RuntimeError("mailer down")

        def variant_published(self, event):
            raise RuntimeError("mailer down")

    test, _ = _test_with_variants(memory_store, clock, "p1")
    with _engine(memory_store, StubMetricsGateway(), clock, dispatcher=Broken()) as engine:
        result = engine.evaluate(test.test_id)

    assert result.outcome == EvaluationOutcome.COMPLETED
    assert memory_store.get_test(test.test_id).status == AbTestStatus.COMPLETED


def test_unexpected_gateway_error_releases_lease(memory_store, clock):
    class Exploding:
        def fetch(self, published_ref):
            raise KeyError("parser bug")

    test, _ = _test_with_variants(memory_store, clock, "p1")
    with _engine(memory_store, Exploding(), clock) as engine:
        with pytest.raises(KeyError):
            engine.evaluate(test.test_id)

    assert memory_store.acquire_lease(test.test_id, "next-pass", clock(), timedelta(minutes=1))


def test_metrics_unavailable_carries_reason():
    err = MetricsUnavailable(("p1", "p2"), "timed out")
    assert err.reason == "timed out"
    assert "p1" in str(err)
