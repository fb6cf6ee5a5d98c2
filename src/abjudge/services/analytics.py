"""Read-side views: running tests, completed results, performance analytics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from abjudge.models.domain import AbTest, AbTestStatus, Variant
from abjudge.repos.ab_test_repo import AbTestStore

TOP_PERFORMERS = 5


@dataclass(frozen=True)
class RunningTestSummary:
    test: AbTest
    variant_count: int


@dataclass(frozen=True)
class CompletedResult:
    test: AbTest
    variants: tuple[Variant, ...]

    @property
    def best_score(self) -> float:
        scores = [v.metrics.engagement_score for v in self.variants if v.metrics is not None]
        return max(scores) if scores else 0.0


@dataclass(frozen=True)
class TopPerformer:
    test_id: str
    project_id: str
    kind: str
    max_engagement: float
    completed_at: datetime | None


@dataclass(frozen=True)
class PerformanceSummary:
    total_tests: int
    running_tests: int
    completed_tests: int
    total_engagement: float
    total_reach: int
    total_likes: int
    total_comments: int
    total_shares: int
    average_engagement: float
    average_reach: float
    top_performers: list[TopPerformer] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "overview": {
                "total_tests": self.total_tests,
                "running_tests": self.running_tests,
                "completed_tests": self.completed_tests,
                "average_engagement": round(self.average_engagement, 2),
                "average_reach": round(self.average_reach),
            },
            "metrics": {
                "total_engagement": round(self.total_engagement, 2),
                "total_reach": self.total_reach,
                "total_likes": self.total_likes,
                "total_comments": self.total_comments,
                "total_shares": self.total_shares,
            },
            "top_performers": [
                {
                    "test_id": p.test_id,
                    "project_id": p.project_id,
                    "kind": p.kind,
                    "max_engagement": p.max_engagement,
                    "completed_at": p.completed_at.isoformat() if p.completed_at else None,
                }
                for p in self.top_performers
            ],
        }


def list_running_tests(store: AbTestStore) -> list[RunningTestSummary]:
    return [
        RunningTestSummary(test=t, variant_count=len(store.list_variants(t.test_id)))
        for t in store.list_tests(AbTestStatus.RUNNING)
    ]


def list_completed_results(store: AbTestStore) -> list[CompletedResult]:
    """Completed tests, newest completion first, with their variant metrics."""
    completed = store.list_tests(AbTestStatus.COMPLETED)
    completed.sort(key=lambda t: t.completed_at or datetime.min, reverse=True)
    return [CompletedResult(test=t, variants=tuple(store.list_variants(t.test_id))) for t in completed]


def performance_analytics(store: AbTestStore) -> PerformanceSummary:
    """
    Aggregate metrics over completed tests.

    Averages are per variant (every variant of a completed test counts, with
    missing metrics contributing zero).
    """
    all_tests = store.list_tests()
    results = list_completed_results(store)

    total_engagement = 0.0
    total_reach = total_likes = total_comments = total_shares = 0
    variant_count = 0
    for result in results:
        variant_count += len(result.variants)
        for v in result.variants:
            if v.metrics is None:
                continue
            total_engagement += v.metrics.engagement_score
            total_reach += v.metrics.reach
            total_likes += v.metrics.likes
            total_comments += v.metrics.comments
            total_shares += v.metrics.shares

    ranked = sorted(results, key=lambda r: r.best_score, reverse=True)[:TOP_PERFORMERS]

    return PerformanceSummary(
        total_tests=len(all_tests),
        running_tests=sum(1 for t in all_tests if t.status == AbTestStatus.RUNNING),
        completed_tests=len(results),
        total_engagement=total_engagement,
        total_reach=total_reach,
        total_likes=total_likes,
        total_comments=total_comments,
        total_shares=total_shares,
        average_engagement=total_engagement / variant_count if variant_count else 0.0,
        average_reach=total_reach / variant_count if variant_count else 0.0,
        top_performers=[
            TopPerformer(
                test_id=r.test.test_id,
                project_id=r.test.project_id,
                kind=r.test.kind.value,
                max_engagement=r.best_score,
                completed_at=r.test.completed_at,
            )
            for r in ranked
        ],
    )
