"""API dependencies."""

from __future__ import annotations

from abjudge.db.session import get_store as build_store
from abjudge.repos.ab_test_repo import AbTestStore
from abjudge.services.metrics_gateway import MetricsGateway, get_metrics_gateway
from abjudge.services.notifications import NotificationDispatcher, get_dispatcher


def get_store() -> AbTestStore:
    return build_store()


def get_gateway() -> MetricsGateway:
    return get_metrics_gateway()


def get_notifier() -> NotificationDispatcher:
    return get_dispatcher()
