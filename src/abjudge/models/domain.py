from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AbTestStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"


class AbTestKind(str, Enum):
    BANNER = "banner"
    CAROUSEL = "carousel"


def normalize_refs(refs: str | Sequence[str] | None) -> tuple[str, ...] | None:
    """A bare post id and a one-element list mean the same thing."""
    if not refs:
        return None
    if isinstance(refs, str):
        return (refs,)
    return tuple(refs)


class EvaluationOutcome(str, Enum):
    """How one evaluation of one leased test ended."""

    COMPLETED = "completed"
    NO_VARIANTS = "no_variants"  # completed, nothing publishable to compare
    UNSCORED = "unscored"  # every gateway call failed, retried next pass
    STORE_ERROR = "store_error"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ContentRef:
    url: str
    caption: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "caption": self.caption}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentRef":
        return cls(url=data["url"], caption=data.get("caption"))


@dataclass(frozen=True)
class EngagementMetrics:
    """Raw counters for one published content unit plus the derived score."""

    likes: int
    comments: int
    shares: int
    reach: int
    engagement_score: float
    fetched_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "likes": self.likes,
            "comments": self.comments,
            "shares": self.shares,
            "reach": self.reach,
            "engagement_score": self.engagement_score,
            "fetched_at": self.fetched_at.isoformat() if self.fetched_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EngagementMetrics":
        fetched_at = data.get("fetched_at")
        return cls(
            likes=int(data.get("likes", 0)),
            comments=int(data.get("comments", 0)),
            shares=int(data.get("shares", 0)),
            reach=int(data.get("reach", 0)),
            engagement_score=float(data.get("engagement_score", 0.0)),
            fetched_at=datetime.fromisoformat(fetched_at) if fetched_at else None,
        )


@dataclass(frozen=True)
class Variant:
    variant_id: str
    test_id: str
    # One post id, or several when a batch was published as one post
    published_ref: tuple[str, ...] | None
    content_refs: tuple[ContentRef, ...] = ()
    metrics: EngagementMetrics | None = None
    created_at: datetime | None = None

    @property
    def is_publishable(self) -> bool:
        return bool(self.published_ref)


@dataclass(frozen=True)
class AbTest:
    test_id: str
    project_id: str
    kind: AbTestKind
    status: AbTestStatus
    scheduled_at: datetime
    checked: bool = False
    completed_at: datetime | None = None
    winner_variant_ids: tuple[str, ...] = ()
    published_refs: tuple[str, ...] = ()
    notify_email: str | None = None
    special_occasion: str | None = None
    created_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        """Selection predicate: running, unchecked and scheduled at or before `now`."""
        return (
            self.status == AbTestStatus.RUNNING
            and not self.checked
            and self.scheduled_at <= now
        )


@dataclass(frozen=True)
class VariantResult:
    """Audit row for one variant in one evaluation pass."""

    variant_id: str
    published_ref: tuple[str, ...] | None
    content_refs: tuple[ContentRef, ...]
    metrics: EngagementMetrics | None
    scored_this_pass: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "published_ref": list(self.published_ref) if self.published_ref else None,
            "content_refs": [c.to_dict() for c in self.content_refs],
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "scored_this_pass": self.scored_this_pass,
        }


@dataclass(frozen=True)
class EvaluationResult:
    test_id: str
    project_id: str | None  # unknown when the test could not be read
    outcome: EvaluationOutcome
    status: AbTestStatus
    winners: tuple[VariantResult, ...] = ()
    unscored: tuple[str, ...] = ()
    results: tuple[VariantResult, ...] = ()
    unpublished: tuple[str, ...] = ()  # variants ignored for lacking a published_ref
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def winner_variant_ids(self) -> tuple[str, ...]:
        return tuple(w.variant_id for w in self.winners)

    @property
    def will_retry(self) -> bool:
        return self.status == AbTestStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        return {
            "test_id": self.test_id,
            "project_id": self.project_id,
            "outcome": self.outcome.value,
            "status": self.status.value,
            "winners": [w.to_dict() for w in self.winners],
            "unscored": list(self.unscored),
            "results": [r.to_dict() for r in self.results],
            "unpublished": list(self.unpublished),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


@dataclass(frozen=True)
class AbTestCompleted:
    """Event handed to the notification dispatcher after a test completes."""

    test_id: str
    project_id: str
    winner_variant_ids: tuple[str, ...]
    completed_at: datetime
    notify_email: str | None = None
    special_occasion: str | None = None


@dataclass(frozen=True)
class VariantPublished:
    """Event for a creative published on a special-occasion test."""

    test_id: str
    project_id: str
    variant_id: str
    published_ref: tuple[str, ...]
    special_occasion: str
    content_refs: tuple[ContentRef, ...] = field(default_factory=tuple)
