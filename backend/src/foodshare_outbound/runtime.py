from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .ai_client import AIClient, HttpAIClient, StubAIClient
from .automations import AutomationProcessor
from .backoff import BackoffCalculator
from .campaigns import CampaignProcessor
from .circuit_breaker import CircuitBreaker
from .config import Settings
from .deferred import DeferredNotifier
from .dispatch import EmailDispatcher, PushDispatcher
from .insights import InsightService, MetricsSource, StaticMetricsSource
from .providers import EmailProvider, PushProvider, create_email_provider, create_push_provider
from .rate_limiter import RateLimitedExecutor, RequestQueue
from .repository import OutboundRepository, create_outbound_repository

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class OutboundRuntime:
    settings: Settings
    repository: OutboundRepository
    email_dispatcher: EmailDispatcher
    push_dispatcher: PushDispatcher
    campaigns: CampaignProcessor
    automations: AutomationProcessor
    deferred: DeferredNotifier
    insights: InsightService


def create_ai_client(settings: Settings) -> AIClient | None:
    if settings.ai_client_type == "stub":
        return StubAIClient()
    if not settings.ai_api_key.strip():
        return None
    return HttpAIClient(
        base_url=settings.ai_api_base_url,
        api_key=settings.ai_api_key,
        timeout_seconds=settings.ai_request_timeout_ms / 1000,
    )


def build_runtime(
    settings: Settings,
    *,
    repository: OutboundRepository | None = None,
    email_provider: EmailProvider | None = None,
    push_provider: PushProvider | None = None,
    ai_client: AIClient | None = None,
    metrics: MetricsSource | None = None,
    sleep: SleepFn = asyncio.sleep,
) -> OutboundRuntime:
    """Wire one executor and breaker per external dependency."""
    repo = repository or create_outbound_repository(
        backend=settings.outbound_store_backend,
        database_url=settings.database_url,
    )

    email_executor = RateLimitedExecutor(
        "email",
        breaker=CircuitBreaker(
            "email",
            failure_threshold=settings.provider_breaker_failure_threshold,
            reset_timeout_ms=settings.provider_breaker_reset_timeout_ms,
        ),
        backoff=BackoffCalculator(
            base_delay_ms=settings.email_base_delay_ms,
            max_delay_ms=settings.email_max_delay_ms,
        ),
        min_interval_ms=0,
        request_timeout_ms=(settings.email_timeout_seconds + 5) * 1000,
        max_retries=settings.email_max_retries,
        sleep=sleep,
    )
    push_executor = RateLimitedExecutor(
        "push",
        breaker=CircuitBreaker(
            "push",
            failure_threshold=settings.provider_breaker_failure_threshold,
            reset_timeout_ms=settings.provider_breaker_reset_timeout_ms,
        ),
        backoff=BackoffCalculator(
            base_delay_ms=settings.push_base_delay_ms,
            max_delay_ms=settings.push_max_delay_ms,
        ),
        min_interval_ms=0,
        request_timeout_ms=(settings.push_timeout_seconds + 5) * 1000,
        max_retries=settings.push_max_retries,
        sleep=sleep,
    )
    ai_executor = RateLimitedExecutor(
        "ai",
        breaker=CircuitBreaker(
            "ai",
            failure_threshold=settings.ai_breaker_failure_threshold,
            reset_timeout_ms=settings.ai_breaker_reset_timeout_ms,
        ),
        backoff=BackoffCalculator(
            base_delay_ms=settings.ai_base_delay_ms,
            max_delay_ms=settings.ai_max_delay_ms,
            jitter_factor=settings.ai_jitter_factor,
        ),
        min_interval_ms=settings.ai_min_interval_ms,
        request_timeout_ms=settings.ai_request_timeout_ms,
        max_retries=settings.ai_max_retries,
        sleep=sleep,
    )

    email_dispatcher = EmailDispatcher(
        provider=email_provider or create_email_provider(settings),
        executor=email_executor,
    )
    push_dispatcher = PushDispatcher(
        provider=push_provider or create_push_provider(settings),
        executor=push_executor,
        repository=repo,
    )

    return OutboundRuntime(
        settings=settings,
        repository=repo,
        email_dispatcher=email_dispatcher,
        push_dispatcher=push_dispatcher,
        campaigns=CampaignProcessor(
            repository=repo,
            email_dispatcher=email_dispatcher,
            segment_limit=settings.campaign_segment_limit,
            concurrency=settings.campaign_send_concurrency,
        ),
        automations=AutomationProcessor(repository=repo, email_dispatcher=email_dispatcher),
        deferred=DeferredNotifier(
            repository=repo,
            push_dispatcher=push_dispatcher,
            quiet_hours_end=settings.quiet_hours_end,
            quiet_hours_timezone=settings.quiet_hours_timezone,
        ),
        insights=InsightService(
            client=ai_client if ai_client is not None else create_ai_client(settings),
            executor=ai_executor,
            queue=RequestQueue(ai_executor, queue_timeout_ms=settings.ai_queue_timeout_ms),
            metrics=metrics or StaticMetricsSource(),
            repository=repo,
            quick_model=settings.ai_quick_model,
            reasoning_model=settings.ai_reasoning_model,
            cache_ttl_seconds=settings.insight_cache_ttl_seconds,
        ),
    )
