from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from ledger_worker.retry.policy import RETRY_DELAY_SECONDS


class Settings(BaseSettings):
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 5
    database_command_timeout_seconds: float = 15.0
    poll_interval_seconds: float = 0.75
    retry_delay_seconds: float = RETRY_DELAY_SECONDS
    failpoint: Literal["after_claim_once"] | None = None
    stale_claim_timeout_seconds: float | None = None
    stale_claim_sweep_interval_seconds: float = 30.0
    stale_claim_batch_size: int = 100
    otel_enabled: bool = True
    otel_service_name: str = "ledger-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="LEDGER_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
