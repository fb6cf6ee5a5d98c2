from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized config.

    Key idea:
    - read from env first (so tests/CI/cron can override),
    - otherwise default to local dev values.
    """

    model_config = SettingsConfigDict(env_prefix="ABJUDGE_", extra="ignore")

    # DuckDB file by default (portable, zero-setup)
    db_url: str = "duckdb:///data/abjudge.duckdb"

    # Metrics gateway ("stub" keeps local runs and tests deterministic)
    metrics_provider: str = "stub"
    graph_api_base_url: str = "https://graph.facebook.com/v18.0"
    graph_access_token: str | None = None
    metrics_timeout_s: float = 10.0

    # Engagement score policy: weighted sum of raw counters
    like_weight: float = 1.0
    comment_weight: float = 2.0
    share_weight: float = 3.0
    reach_weight: float = 0.0

    # Scheduler / pass behaviour
    lease_ttl_s: float = 300.0
    pass_max_tests: int = 100
    pass_max_workers: int = 4
    check_delay: str = ""

    # Notification dispatcher
    notifier: str = "log"
    notify_webhook_url: str | None = None
    notify_timeout_s: float = 5.0


settings = Settings()
