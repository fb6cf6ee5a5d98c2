"""Metrics gateway: engagement counters per published post."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx

from abjudge.config.settings import settings
from abjudge.errors import MetricsUnavailable
from abjudge.models.domain import EngagementMetrics, normalize_refs
from abjudge.timeutils import utcnow

logger = logging.getLogger(__name__)

POST_FIELDS = "likes.summary(true).limit(0),comments.summary(true).limit(0),shares"
REACH_METRIC = "post_impressions_unique"


@dataclass(frozen=True)
class EngagementPolicy:
    """
    Weighted sum of raw counters.

    Weights must be non-negative so the score is monotonic in every counter.
    One policy instance scores a whole pass.
    """

    like_weight: float = 1.0
    comment_weight: float = 2.0
    share_weight: float = 3.0
    reach_weight: float = 0.0

    def __post_init__(self) -> None:
        for name in ("like_weight", "comment_weight", "share_weight", "reach_weight"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_settings(cls) -> "EngagementPolicy":
        return cls(
            like_weight=settings.like_weight,
            comment_weight=settings.comment_weight,
            share_weight=settings.share_weight,
            reach_weight=settings.reach_weight,
        )

    def score(self, likes: int, comments: int, shares: int, reach: int) -> float:
        return (
            self.like_weight * likes
            + self.comment_weight * comments
            + self.share_weight * shares
            + self.reach_weight * reach
        )

    def build(
        self,
        likes: int,
        comments: int,
        shares: int,
        reach: int,
        fetched_at: datetime | None = None,
    ) -> EngagementMetrics:
        return EngagementMetrics(
            likes=likes,
            comments=comments,
            shares=shares,
            reach=reach,
            engagement_score=self.score(likes, comments, shares, reach),
            fetched_at=fetched_at,
        )


class MetricsGateway(Protocol):
    """Minimal interface the evaluation engine depends on."""

    def fetch(self, published_ref: str | Sequence[str]) -> EngagementMetrics:
        """Return metrics for one post (or a group of posts published together)."""
        raise NotImplementedError


def _summary_count(payload: dict[str, Any], key: str) -> int:
    """Graph edges look like {"likes": {"data": [], "summary": {"total_count": 12}}}."""
    edge = payload.get(key) or {}
    summary = edge.get("summary") or {}
    return int(summary.get("total_count") or 0)


class GraphMetricsGateway:
    """
    Facebook Graph API adapter.

    Design:
    - Sync client (simple for cron + tests)
    - Dependency injection via `client` makes it testable without real HTTP
    - grouped refs (a carousel published as several post ids) are summed
    """

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout_s: float | None = None,
        policy: EngagementPolicy | None = None,
        client: httpx.Client | None = None,
        now_fn=utcnow,
    ) -> None:
        self.access_token = access_token
        self.base_url = (base_url or settings.graph_api_base_url).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.metrics_timeout_s
        self.policy = policy or EngagementPolicy.from_settings()
        self._client = client
        self._now_fn = now_fn

    def fetch(self, published_ref: str | Sequence[str]) -> EngagementMetrics:
        post_ids = normalize_refs(published_ref)
        if not post_ids:
            raise MetricsUnavailable(published_ref, "empty published reference")

        close_client = False
        client = self._client
        if client is None:
            client = httpx.Client(timeout=self.timeout_s)
            close_client = True

        likes = comments = shares = reach = 0
        try:
            for post_id in post_ids:
                counts = self._fetch_post(client, post_id)
                likes += counts["likes"]
                comments += counts["comments"]
                shares += counts["shares"]
                reach += self._fetch_reach(client, post_id)
        finally:
            if close_client:
                client.close()

        return self.policy.build(likes, comments, shares, reach, fetched_at=self._now_fn())

    def _get(self, client: httpx.Client, path: str, params: dict[str, str]) -> httpx.Response:
        try:
            return client.get(
                f"{self.base_url}/{path}",
                params={**params, "access_token": self.access_token},
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as e:
            raise MetricsUnavailable(path, f"{type(e).__name__}: {e}") from e

    def _fetch_post(self, client: httpx.Client, post_id: str) -> dict[str, int]:
        r = self._get(client, post_id, {"fields": POST_FIELDS})
        try:
            r.raise_for_status()
            payload = r.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise MetricsUnavailable(post_id, f"{type(e).__name__}: {e}") from e

        if not isinstance(payload, dict) or "error" in payload:
            raise MetricsUnavailable(post_id, f"unexpected payload: {payload!r}")

        try:
            return {
                "likes": _summary_count(payload, "likes"),
                "comments": _summary_count(payload, "comments"),
                "shares": int((payload.get("shares") or {}).get("count") or 0),
            }
        except (AttributeError, TypeError, ValueError) as e:
            raise MetricsUnavailable(post_id, f"malformed counters: {type(e).__name__}: {e}") from e

    def _fetch_reach(self, client: httpx.Client, post_id: str) -> int:
        """
        Unique impressions from post insights.

        Pages without the insights permission answer 4xx; reach counts as 0
        there and the likes/comments/shares still score the post.
        """
        r = self._get(client, f"{post_id}/insights", {"metric": REACH_METRIC})
        if 400 <= r.status_code < 500:
            logger.debug("no insights for post %s (HTTP %s)", post_id, r.status_code)
            return 0
        try:
            r.raise_for_status()
            for metric in r.json().get("data") or []:
                if metric.get("name") == REACH_METRIC:
                    values = metric.get("values") or []
                    if values:
                        return int(values[-1].get("value") or 0)
        except (httpx.HTTPStatusError, AttributeError, TypeError, ValueError) as e:
            raise MetricsUnavailable(post_id, f"insights: {type(e).__name__}: {e}") from e
        return 0


@dataclass(frozen=True)
class StubMetricsGateway:
    """
    Deterministic stub for tests and local runs.

    Known refs return the configured counters, refs in `failing` raise
    MetricsUnavailable, anything else gets counters derived from a hash of
    the ref so repeated runs agree.
    """

    counts: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    failing: frozenset[str] = frozenset()
    policy: EngagementPolicy = field(default_factory=EngagementPolicy)

    def fetch(self, published_ref: str | Sequence[str]) -> EngagementMetrics:
        post_ids = normalize_refs(published_ref)
        if not post_ids:
            raise MetricsUnavailable(published_ref, "empty published reference")

        totals = {"likes": 0, "comments": 0, "shares": 0, "reach": 0}
        for post_id in post_ids:
            if post_id in self.failing:
                raise MetricsUnavailable(post_id, "stub configured to fail")
            known = self.counts.get(post_id)
            for key in totals:
                totals[key] += int(known.get(key, 0)) if known is not None else _hashed_count(post_id, key)

        return self.policy.build(**totals)


def _hashed_count(post_id: str, key: str) -> int:
    digest = hashlib.sha256(f"{post_id}:{key}".encode("utf-8")).hexdigest()
    return int(digest[:6], 16) % 500


def get_metrics_gateway() -> MetricsGateway:
    """Factory for metrics gateways based on settings."""
    provider = settings.metrics_provider.lower()
    policy = EngagementPolicy.from_settings()
    if provider == "stub":
        return StubMetricsGateway(policy=policy)
    if provider == "graph":
        if not settings.graph_access_token:
            raise RuntimeError("ABJUDGE_GRAPH_ACCESS_TOKEN is required for the graph provider.")
        return GraphMetricsGateway(access_token=settings.graph_access_token, policy=policy)
    raise ValueError(f"Unknown metrics provider: {settings.metrics_provider}")
