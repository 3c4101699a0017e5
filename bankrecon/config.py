from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RECON_", env_file=".env", extra="ignore")

    database_url: str = "sqlite+pysqlite:///./bank_recon.db"
    log_level: str = "INFO"

    # Batch settings
    batch_prefix: str = "REC"
    default_window_days: int = 30
    candidate_days_before: int = 30  # settlement lag tolerated before the bank date
    candidate_days_after: int = 7
    batch_number_attempts: int = 5
    worker_count: int = 4
    tracked_batches: int = 256  # futures kept for wait()
    auto_run_window_hours: int = 24

    # Default matching rule, used when a business has no active rule
    amount_tolerance_percent: float = 1.0
    date_tolerance_days: int = 7
    min_match_score: int = 70
    auto_match_score: int = 95
    reference_weight: int = 50
    exact_amount_weight: int = 20
    fuzzy_amount_weight: int = 10
    date_proximity_weight: int = 10
    counterparty_weight: int = 10

    suggestion_min_score: int = 30
    suggestion_limit: int = 10

    # Completion events
    event_publisher: str = "log"  # disabled|log|webhook
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 4.0


settings = Settings()
