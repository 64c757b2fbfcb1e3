from __future__ import annotations

import os
from dataclasses import dataclass


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "FoodShare Outbound"
    api_prefix: str = "/api/v1"
    # AI provider used for admin insights.
    ai_api_key: str = ""
    ai_api_base_url: str = "https://api.openai.com/v1"
    ai_quick_model: str = "gpt-4o-mini"
    ai_reasoning_model: str = "gpt-4o"
    ai_client_type: str = "http"
    ai_max_retries: int = 3
    ai_base_delay_ms: int = 1000
    ai_max_delay_ms: int = 30000
    ai_jitter_factor: float = 0.3
    ai_min_interval_ms: int = 1000
    ai_request_timeout_ms: int = 60000
    ai_queue_timeout_ms: int = 120000
    ai_breaker_failure_threshold: int = 5
    ai_breaker_reset_timeout_ms: int = 60000
    insight_cache_ttl_seconds: int = 3600
    # Email provider.
    email_sender_type: str = "stub"
    email_api_base_url: str = ""
    email_api_key: str = ""
    email_timeout_seconds: int = 30
    email_from_address: str = "FoodShare <noreply@foodshare.club>"
    email_max_retries: int = 3
    email_base_delay_ms: int = 1000
    email_max_delay_ms: int = 10000
    # Push provider.
    push_sender_type: str = "stub"
    push_api_base_url: str = ""
    push_api_key: str = ""
    push_timeout_seconds: int = 30
    push_max_retries: int = 3
    push_base_delay_ms: int = 1000
    push_max_delay_ms: int = 5000
    # Provider breakers share one threshold and reset window.
    provider_breaker_failure_threshold: int = 5
    provider_breaker_reset_timeout_ms: int = 60000
    # Sweeps.
    campaign_sweep_limit: int = 10
    campaign_segment_limit: int = 10000
    campaign_send_concurrency: int = 10
    automation_sweep_limit: int = 50
    deferred_flush_limit: int = 100
    broadcast_chunk_size: int = 10
    quiet_hours_end: int = 8
    quiet_hours_timezone: str = "UTC"
    outbound_store_backend: str = "inmemory"
    database_url: str = ""
    cron_secret: str = ""
    admin_api_token: str = ""
    runtime_secret_guard_mode: str = "warn"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("OUTBOUND_APP_NAME", "FoodShare Outbound"),
        api_prefix=os.getenv("OUTBOUND_API_PREFIX", "/api/v1"),
        ai_api_key=os.getenv("AI_API_KEY", ""),
        ai_api_base_url=os.getenv("AI_API_BASE_URL", "https://api.openai.com/v1"),
        ai_quick_model=os.getenv("AI_QUICK_MODEL", "gpt-4o-mini"),
        ai_reasoning_model=os.getenv("AI_REASONING_MODEL", "gpt-4o"),
        ai_client_type=_normalize_mode(os.getenv("AI_CLIENT_TYPE"), default="http", allowed={"stub", "http"}),
        ai_max_retries=_as_int(os.getenv("AI_MAX_RETRIES"), 3),
        ai_base_delay_ms=_as_int(os.getenv("AI_BASE_DELAY_MS"), 1000),
        ai_max_delay_ms=_as_int(os.getenv("AI_MAX_DELAY_MS"), 30000),
        ai_jitter_factor=_as_float(os.getenv("AI_JITTER_FACTOR"), 0.3),
        ai_min_interval_ms=_as_int(os.getenv("AI_MIN_INTERVAL_MS"), 1000),
        ai_request_timeout_ms=_as_int(os.getenv("AI_REQUEST_TIMEOUT_MS"), 60000),
        ai_queue_timeout_ms=_as_int(os.getenv("AI_QUEUE_TIMEOUT_MS"), 120000),
        ai_breaker_failure_threshold=_as_int(os.getenv("AI_BREAKER_FAILURE_THRESHOLD"), 5),
        ai_breaker_reset_timeout_ms=_as_int(os.getenv("AI_BREAKER_RESET_TIMEOUT_MS"), 60000),
        insight_cache_ttl_seconds=_as_int(os.getenv("INSIGHT_CACHE_TTL_SECONDS"), 3600),
        email_sender_type=_normalize_mode(os.getenv("EMAIL_SENDER_TYPE"), default="stub", allowed={"stub", "http"}),
        email_api_base_url=os.getenv("EMAIL_API_BASE_URL", ""),
        email_api_key=os.getenv("EMAIL_API_KEY", ""),
        email_timeout_seconds=_as_int(os.getenv("EMAIL_TIMEOUT_SECONDS"), 30),
        email_from_address=os.getenv("EMAIL_FROM_ADDRESS", "FoodShare <noreply@foodshare.club>"),
        email_max_retries=_as_int(os.getenv("EMAIL_MAX_RETRIES"), 3),
        email_base_delay_ms=_as_int(os.getenv("EMAIL_BASE_DELAY_MS"), 1000),
        email_max_delay_ms=_as_int(os.getenv("EMAIL_MAX_DELAY_MS"), 10000),
        push_sender_type=_normalize_mode(os.getenv("PUSH_SENDER_TYPE"), default="stub", allowed={"stub", "http"}),
        push_api_base_url=os.getenv("PUSH_API_BASE_URL", ""),
        push_api_key=os.getenv("PUSH_API_KEY", ""),
        push_timeout_seconds=_as_int(os.getenv("PUSH_TIMEOUT_SECONDS"), 30),
        push_max_retries=_as_int(os.getenv("PUSH_MAX_RETRIES"), 3),
        push_base_delay_ms=_as_int(os.getenv("PUSH_BASE_DELAY_MS"), 1000),
        push_max_delay_ms=_as_int(os.getenv("PUSH_MAX_DELAY_MS"), 5000),
        provider_breaker_failure_threshold=_as_int(os.getenv("PROVIDER_BREAKER_FAILURE_THRESHOLD"), 5),
        provider_breaker_reset_timeout_ms=_as_int(os.getenv("PROVIDER_BREAKER_RESET_TIMEOUT_MS"), 60000),
        campaign_sweep_limit=_as_int(os.getenv("CAMPAIGN_SWEEP_LIMIT"), 10),
        campaign_segment_limit=_as_int(os.getenv("CAMPAIGN_SEGMENT_LIMIT"), 10000),
        campaign_send_concurrency=_as_int(os.getenv("CAMPAIGN_SEND_CONCURRENCY"), 10),
        automation_sweep_limit=_as_int(os.getenv("AUTOMATION_SWEEP_LIMIT"), 50),
        deferred_flush_limit=_as_int(os.getenv("DEFERRED_FLUSH_LIMIT"), 100),
        broadcast_chunk_size=_as_int(os.getenv("BROADCAST_CHUNK_SIZE"), 10),
        quiet_hours_end=_as_int(os.getenv("QUIET_HOURS_END"), 8),
        quiet_hours_timezone=os.getenv("QUIET_HOURS_TIMEZONE", "UTC"),
        outbound_store_backend=_normalize_mode(
            os.getenv("OUTBOUND_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if _is_placeholder(settings.cron_secret, defaults={"dev-cron-secret", "change-me-in-production"}):
        issues.append("CRON_SECRET is empty or uses a development placeholder")
    if _is_placeholder(settings.admin_api_token, defaults={"dev-admin-token", "change-me-in-production"}):
        issues.append("ADMIN_API_TOKEN is empty or uses a development placeholder")
    if settings.ai_client_type == "http" and not settings.ai_api_key.strip():
        issues.append("AI_API_KEY is required when AI_CLIENT_TYPE=http")
    if settings.email_sender_type == "http" and (
        not settings.email_api_base_url.strip() or not settings.email_api_key.strip()
    ):
        issues.append("EMAIL_API_BASE_URL and EMAIL_API_KEY are required when EMAIL_SENDER_TYPE=http")
    if settings.push_sender_type == "http" and (
        not settings.push_api_base_url.strip() or not settings.push_api_key.strip()
    ):
        issues.append("PUSH_API_BASE_URL and PUSH_API_KEY are required when PUSH_SENDER_TYPE=http")
    if settings.outbound_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when OUTBOUND_STORE_BACKEND=postgres")
    return tuple(issues)
