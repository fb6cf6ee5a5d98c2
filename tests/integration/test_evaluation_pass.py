"""One scheduler pass end to end on DuckDB with a faked Graph API."""

import threading
from datetime import timedelta

import httpx

from abjudge.models.domain import AbTestKind, AbTestStatus, EvaluationOutcome
from abjudge.services.evaluation_engine import EvaluationEngine
from abjudge.services.metrics_gateway import EngagementPolicy, GraphMetricsGateway
from abjudge.services.notifications import RecordingDispatcher
from abjudge.services.publishing import register_variant
from abjudge.services.scheduler import Scheduler

LIKES = {"post-a": 12, "post-b": 30, "post-c1": 10, "post-c2": 10}


def _graph_client() -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")
        post_id = parts[1]
        if parts[-1] == "insights":
            return httpx.Response(403, json={"error": {"message": "missing permission"}})
        if post_id == "post-gone":
            return httpx.Response(404, json={"error": {"message": "Unsupported get request"}})
        return httpx.Response(
            200,
            json={
                "likes": {"summary": {"total_count": LIKES[post_id]}},
                "comments": {"summary": {"total_count": 0}},
            },
        )

    return httpx.Client(transport=httpx.MockTransport(handler))


def test_pass_completes_due_tests_and_retries_unscored(sql_store, clock):
    banner = sql_store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock() - timedelta(hours=1))
    a = register_variant(sql_store, banner.test_id, "post-a")
    b = register_variant(sql_store, banner.test_id, "post-b")

    # carousel variant published as two posts: 20 likes beats post-a but not post-b
    carousel = sql_store.create_test("proj", AbTestKind.CAROUSEL, scheduled_at=clock() - timedelta(hours=2))
    grouped = register_variant(sql_store, carousel.test_id, ["post-c1", "post-c2"])
    register_variant(sql_store, carousel.test_id, "post-a")

    broken = sql_store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock() - timedelta(minutes=5))
    register_variant(sql_store, broken.test_id, "post-gone")

    sql_store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock() + timedelta(days=1))

    gateway = GraphMetricsGateway(
        access_token="t",
        base_url="https://graph.test/v18.0",
        policy=EngagementPolicy(),
        client=_graph_client(),
        now_fn=clock,
    )
    dispatcher = RecordingDispatcher()
    with EvaluationEngine(sql_store, gateway, dispatcher=dispatcher, timeout_s=5.0, now_fn=clock) as engine:
        scheduler = Scheduler(sql_store, engine, check_delay=timedelta(0), max_tests=10, max_workers=1)
        results = {r.test_id: r for r in scheduler.run_pass(clock())}

    assert set(results) == {banner.test_id, carousel.test_id, broken.test_id}
    assert results[banner.test_id].winner_variant_ids == (b.variant_id,)
    assert results[carousel.test_id].winner_variant_ids == (grouped.variant_id,)
    assert results[broken.test_id].outcome == EvaluationOutcome.UNSCORED

    assert sql_store.get_test(banner.test_id).status == AbTestStatus.COMPLETED
    assert sql_store.get_test(broken.test_id).status == AbTestStatus.RUNNING
    assert sql_store.select_due(clock()) == [broken.test_id]
    assert {e.test_id for e in dispatcher.completed} == {banner.test_id, carousel.test_id}

    stored = {v.variant_id: v.metrics for v in sql_store.list_variants(banner.test_id)}
    assert stored[a.variant_id].likes == 12
    assert stored[b.variant_id].engagement_score == 30.0


def test_overlapping_passes_evaluate_each_test_once(sql_store, clock):
    tests = [
        sql_store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock() - timedelta(minutes=i + 1))
        for i in range(6)
    ]
    for test in tests:
        register_variant(sql_store, test.test_id, "post-a")
        register_variant(sql_store, test.test_id, "post-b")

    dispatcher = RecordingDispatcher()
    barrier = threading.Barrier(2)
    collected: list = []

    def one_pass() -> None:
        gateway = GraphMetricsGateway(
            access_token="t",
            base_url="https://graph.test/v18.0",
            policy=EngagementPolicy(),
            client=_graph_client(),
            now_fn=clock,
        )
        with EvaluationEngine(sql_store, gateway, dispatcher=dispatcher, timeout_s=5.0, now_fn=clock) as engine:
            scheduler = Scheduler(sql_store, engine, check_delay=timedelta(0), max_tests=10, max_workers=3)
            barrier.wait()
            collected.extend(scheduler.run_pass(clock()))

    runners = [threading.Thread(target=one_pass) for _ in range(2)]
    for r in runners:
        r.start()
    for r in runners:
        r.join(timeout=30)

    assert all(r.outcome == EvaluationOutcome.COMPLETED for r in collected)
    assert sorted(r.test_id for r in collected) == sorted(t.test_id for t in tests)
    assert sorted(e.test_id for e in dispatcher.completed) == sorted(t.test_id for t in tests)


def test_malformed_payload_only_unscores_its_variant(sql_store, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        post_id = request.url.path.strip("/").split("/")[1]
        if request.url.path.endswith("/insights"):
            return httpx.Response(200, json={"data": []})
        if post_id == "post-garbled":
            return httpx.Response(200, json={"id": post_id, "shares": 7})
        return httpx.Response(200, json={"likes": {"summary": {"total_count": 4}}})

    test = sql_store.create_test("proj", AbTestKind.BANNER, scheduled_at=clock())
    garbled = register_variant(sql_store, test.test_id, "post-garbled")
    good = register_variant(sql_store, test.test_id, "post-good")

    gateway = GraphMetricsGateway(
        access_token="t",
        base_url="https://graph.test/v18.0",
        policy=EngagementPolicy(),
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        now_fn=clock,
    )
    with EvaluationEngine(sql_store, gateway, timeout_s=5.0, now_fn=clock) as engine:
        (result,) = Scheduler(sql_store, engine, check_delay=timedelta(0), max_workers=1).run_pass(clock())

    assert result.outcome == EvaluationOutcome.COMPLETED
    assert result.winner_variant_ids == (good.variant_id,)
    assert result.unscored == (garbled.variant_id,)
    assert sql_store.get_test(test.test_id).status == AbTestStatus.COMPLETED
