"""Notification dispatcher abstractions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from abjudge.config.settings import settings
from abjudge.models.domain import AbTestCompleted, VariantPublished

logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    """Receives lifecycle events; delivery and retries are its own business."""

    def test_completed(self, event: AbTestCompleted) -> None:
        raise NotImplementedError

    def variant_published(self, event: VariantPublished) -> None:
        raise NotImplementedError


class LogDispatcher:
    """Default dispatcher: writes the event to the log."""

    def test_completed(self, event: AbTestCompleted) -> None:
        logger.info(
            "test %s (project %s) completed, winners=%s",
            event.test_id,
            event.project_id,
            list(event.winner_variant_ids),
        )

    def variant_published(self, event: VariantPublished) -> None:
        logger.info(
            "variant %s of test %s published for %s",
            event.variant_id,
            event.test_id,
            event.special_occasion,
        )


@dataclass
class RecordingDispatcher:
    """Keeps events in memory (tests, dry runs)."""

    completed: list[AbTestCompleted] = field(default_factory=list)
    published: list[VariantPublished] = field(default_factory=list)

    def test_completed(self, event: AbTestCompleted) -> None:
        self.completed.append(event)

    def variant_published(self, event: VariantPublished) -> None:
        self.published.append(event)


class WebhookDispatcher:
    """POSTs events as JSON to one URL."""

    def __init__(self, url: str, timeout_s: float | None = None, client: httpx.Client | None = None) -> None:
        self.url = url
        self.timeout_s = timeout_s if timeout_s is not None else settings.notify_timeout_s
        self._client = client

    def _post(self, payload: dict[str, Any]) -> None:
        close_client = False
        client = self._client
        if client is None:
            client = httpx.Client(timeout=self.timeout_s)
            close_client = True
        try:
            r = client.post(self.url, json=payload)
            r.raise_for_status()
        finally:
            if close_client:
                client.close()

    def test_completed(self, event: AbTestCompleted) -> None:
        self._post(
            {
                "event": "test_completed",
                "test_id": event.test_id,
                "project_id": event.project_id,
                "winner_variant_ids": list(event.winner_variant_ids),
                "completed_at": event.completed_at.isoformat(),
                "notify_email": event.notify_email,
                "special_occasion": event.special_occasion,
            }
        )

    def variant_published(self, event: VariantPublished) -> None:
        self._post(
            {
                "event": "variant_published",
                "test_id": event.test_id,
                "project_id": event.project_id,
                "variant_id": event.variant_id,
                "published_ref": list(event.published_ref),
                "special_occasion": event.special_occasion,
                "content_refs": [c.to_dict() for c in event.content_refs],
            }
        )


def notify_completed(dispatcher: NotificationDispatcher | None, event: AbTestCompleted) -> bool:
    """
    Fire-and-forget: a failing dispatcher never rolls back the completed test.
    Returns whether the dispatcher accepted the event.
    """
    if dispatcher is None:
        return False
    try:
        dispatcher.test_completed(event)
    except Exception:
        logger.warning("notification for test %s failed", event.test_id, exc_info=True)
        return False
    return True


def notify_published(dispatcher: NotificationDispatcher | None, event: VariantPublished) -> bool:
    if dispatcher is None:
        return False
    try:
        dispatcher.variant_published(event)
    except Exception:
        logger.warning("publish notification for test %s failed", event.test_id, exc_info=True)
        return False
    return True


def get_dispatcher() -> NotificationDispatcher:
    """Factory for dispatchers based on settings."""
    kind = settings.notifier.lower()
    if kind == "log":
        return LogDispatcher()
    if kind == "webhook":
        if not settings.notify_webhook_url:
            raise RuntimeError("ABJUDGE_NOTIFY_WEBHOOK_URL is required for the webhook notifier.")
        return WebhookDispatcher(settings.notify_webhook_url)
    raise ValueError(f"Unknown notifier: {settings.notifier}")
