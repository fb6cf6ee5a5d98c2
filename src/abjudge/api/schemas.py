"""API schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from abjudge.models.domain import AbTest, AbTestKind, Variant


class AbTestCreateRequest(BaseModel):
    project_id: str
    kind: AbTestKind = AbTestKind.BANNER
    scheduled_at: Optional[datetime] = None
    notify_email: Optional[str] = None
    special_occasion: Optional[str] = None


class ContentRefIn(BaseModel):
    url: str
    caption: Optional[str] = None


class VariantCreateRequest(BaseModel):
    # Several ids when a batch was published as one post
    published_ref: list[str] = Field(default_factory=list)
    content_refs: list[ContentRefIn] = Field(default_factory=list)


class MetricsOut(BaseModel):
    likes: int
    comments: int
    shares: int
    reach: int
    engagement_score: float
    fetched_at: Optional[datetime] = None


class ContentRefOut(BaseModel):
    url: str
    caption: Optional[str] = None


class VariantOut(BaseModel):
    variant_id: str
    published_ref: Optional[list[str]] = None
    content_refs: list[ContentRefOut] = Field(default_factory=list)
    metrics: Optional[MetricsOut] = None

    @classmethod
    def from_variant(cls, v: Variant) -> "VariantOut":
        return cls(
            variant_id=v.variant_id,
            published_ref=list(v.published_ref) if v.published_ref else None,
            content_refs=[ContentRefOut(url=c.url, caption=c.caption) for c in v.content_refs],
            metrics=MetricsOut(**v.metrics.to_dict()) if v.metrics else None,
        )


class AbTestOut(BaseModel):
    test_id: str
    project_id: str
    kind: str
    status: str
    checked: bool
    scheduled_at: datetime
    completed_at: Optional[datetime] = None
    winner_variant_ids: list[str] = Field(default_factory=list)
    published_refs: list[str] = Field(default_factory=list)
    notify_email: Optional[str] = None
    special_occasion: Optional[str] = None
    variants: Optional[list[VariantOut]] = None

    @classmethod
    def from_test(cls, t: AbTest, variants: Optional[list[Variant]] = None) -> "AbTestOut":
        return cls(
            test_id=t.test_id,
            project_id=t.project_id,
            kind=t.kind.value,
            status=t.status.value,
            checked=t.checked,
            scheduled_at=t.scheduled_at,
            completed_at=t.completed_at,
            winner_variant_ids=list(t.winner_variant_ids),
            published_refs=list(t.published_refs),
            notify_email=t.notify_email,
            special_occasion=t.special_occasion,
            variants=[VariantOut.from_variant(v) for v in variants] if variants is not None else None,
        )


class VariantResultOut(BaseModel):
    variant_id: str
    published_ref: Optional[list[str]] = None
    content_refs: list[ContentRefOut] = Field(default_factory=list)
    metrics: Optional[MetricsOut] = None
    scored_this_pass: bool


class EvaluationOut(BaseModel):
    test_id: str
    project_id: Optional[str] = None
    outcome: str
    status: str
    winners: list[VariantResultOut] = Field(default_factory=list)
    unscored: list[str] = Field(default_factory=list)
    results: list[VariantResultOut] = Field(default_factory=list)
    unpublished: list[str] = Field(default_factory=list)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None


class PassRequest(BaseModel):
    now: Optional[datetime] = None


class PassResponse(BaseModel):
    now: datetime
    results: list[EvaluationOut]


class DueResponse(BaseModel):
    now: datetime
    test_ids: list[str]


class RunningTestOut(BaseModel):
    test: AbTestOut
    variant_count: int
