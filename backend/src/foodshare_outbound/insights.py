"""Admin AI insights over platform metrics.

Interactive questions go through the AI executor (breaker, spacing, retries);
background cache warming goes through the request queue so it never competes
with an admin waiting on an answer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from .ai_client import AIClient, AICompletion
from .errors import OutboundError, ServiceUnavailableError
from .models import InsightAnswer
from .rate_limiter import RateLimitedExecutor, RequestQueue
from .repository import OutboundRepository

logger = logging.getLogger(__name__)

COMPLEX_KEYWORDS = ("predict", "analyze", "optimize", "recommend", "strategy", "detailed")
COMPLEX_QUERY_LENGTH = 200
MAX_SUGGESTIONS = 6
NOT_CONFIGURED_MESSAGE = "AI insights unavailable - API key not configured"

SYSTEM_PROMPT = (
    "You are an AI business analyst for FoodShare, a food sharing platform.\n"
    "Analyze the provided metrics and answer admin questions with actionable insights.\n"
    "Be concise, data-driven, and provide specific recommendations.\n"
)


@dataclass(frozen=True)
class PlatformMetrics:
    total_users: int = 0
    active_users_7d: int = 0
    active_users_30d: int = 0
    total_listings: int = 0
    active_listings: int = 0
    new_listings_7d: int = 0
    new_listings_30d: int = 0
    total_messages: int = 0
    average_views: float = 0.0
    listings_by_category: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ChurnData:
    total_users: int = 0
    at_risk_users: int = 0

    @property
    def churn_rate(self) -> float:
        if self.total_users <= 0:
            return 0.0
        return self.at_risk_users / self.total_users * 100


@dataclass(frozen=True)
class EmailStats:
    total_emails: int = 0
    success_rate: float = 100.0
    best_send_time: str = "N/A"
    provider_stats: dict[str, int] = field(default_factory=dict)


class MetricsSource(Protocol):
    async def platform_metrics(self) -> PlatformMetrics: ...

    async def churn_data(self) -> ChurnData: ...

    async def email_stats(self) -> EmailStats | None: ...


class StaticMetricsSource:
    """Metrics supplied by the caller; used when no analytics store is wired in."""

    def __init__(
        self,
        *,
        platform: PlatformMetrics | None = None,
        churn: ChurnData | None = None,
        email: EmailStats | None = None,
    ) -> None:
        self.platform = platform or PlatformMetrics()
        self.churn = churn or ChurnData()
        self.email = email

    async def platform_metrics(self) -> PlatformMetrics:
        return self.platform

    async def churn_data(self) -> ChurnData:
        return self.churn

    async def email_stats(self) -> EmailStats | None:
        return self.email


def select_model(query: str, *, quick_model: str, reasoning_model: str) -> str:
    lowered = query.lower()
    if len(query) > COMPLEX_QUERY_LENGTH or any(keyword in lowered for keyword in COMPLEX_KEYWORDS):
        return reasoning_model
    return quick_model


def suggest_questions(metrics: PlatformMetrics, churn: ChurnData) -> list[str]:
    suggestions = [
        "Which users are most likely to churn?",
        "What's causing the spike in listings today?",
        "Optimize my email campaign timing",
        "What are the most popular food categories?",
        "How can I improve user engagement?",
    ]
    if churn.churn_rate > 20:
        suggestions.insert(0, "Why is my churn rate so high?")
    if metrics.new_listings_7d > metrics.new_listings_30d / 4:
        suggestions.insert(0, "Analyze the recent spike in new listings")
    if metrics.active_users_7d < metrics.total_users * 0.1:
        suggestions.insert(0, "How can I re-engage inactive users?")
    return suggestions[:MAX_SUGGESTIONS]


def _format_context(metrics: PlatformMetrics, churn: ChurnData, email: EmailStats | None) -> str:
    lines = [
        "Current FoodShare Platform Metrics:",
        "",
        "USER METRICS:",
        f"- Total Users: {metrics.total_users}",
        f"- Active Users (7 days): {metrics.active_users_7d}",
        f"- Active Users (30 days): {metrics.active_users_30d}",
        f"- Users at Churn Risk: {churn.at_risk_users} ({churn.churn_rate:.2f}%)",
        "",
        "LISTING METRICS:",
        f"- Total Listings: {metrics.total_listings}",
        f"- Active Listings: {metrics.active_listings}",
        f"- New Listings (7 days): {metrics.new_listings_7d}",
        f"- New Listings (30 days): {metrics.new_listings_30d}",
        f"- Average Views per Listing: {metrics.average_views:.2f}",
        f"- Listings by Category: {json.dumps(metrics.listings_by_category, sort_keys=True)}",
        "",
        "ENGAGEMENT METRICS:",
        f"- Total Messages: {metrics.total_messages}",
        "",
        "EMAIL CAMPAIGN METRICS:",
    ]
    if email is None:
        lines.append("Email data not available")
    else:
        lines.extend(
            [
                f"- Total Emails Sent: {email.total_emails}",
                f"- Success Rate: {email.success_rate:.2f}%",
                f"- Best Send Time: {email.best_send_time}",
                f"- Provider Stats: {json.dumps(email.provider_stats, sort_keys=True)}",
            ]
        )
    return "\n".join(lines)


@dataclass(frozen=True)
class _CachedInsight:
    text: str
    model: str
    stored_at: float


class InsightService:
    def __init__(
        self,
        *,
        client: AIClient | None,
        executor: RateLimitedExecutor,
        queue: RequestQueue,
        metrics: MetricsSource,
        repository: OutboundRepository,
        quick_model: str,
        reasoning_model: str,
        cache_ttl_seconds: int = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._executor = executor
        self._queue = queue
        self._metrics = metrics
        self._repository = repository
        self._quick_model = quick_model
        self._reasoning_model = reasoning_model
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[tuple[str, bool], _CachedInsight] = {}

    @property
    def executor(self) -> RateLimitedExecutor:
        return self._executor

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    def clear_cache(self) -> None:
        self._cache.clear()

    async def ask(self, query: str, *, include_metrics: bool = True, background: bool = False) -> InsightAnswer:
        cache_key = (query, include_metrics)
        cached = self._cache.get(cache_key)
        if cached is not None and self._clock() - cached.stored_at < self._cache_ttl_seconds:
            return InsightAnswer(text=cached.text, model=cached.model, cached=True)

        if self._client is None:
            return InsightAnswer(text=NOT_CONFIGURED_MESSAGE, unavailable=True)

        context = await self._build_context() if include_metrics else ""
        model = select_model(query, quick_model=self._quick_model, reasoning_model=self._reasoning_model)
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT + context},
            {"role": "user", "content": query},
        ]
        client = self._client

        async def _call() -> AICompletion:
            return await asyncio.to_thread(
                client.complete,
                model=model,
                messages=messages,
                temperature=0.7,
                max_tokens=1000,
            )

        try:
            if background:
                completion = await self._queue.enqueue(_call)
            else:
                completion = await self._executor.execute(_call)
        except ServiceUnavailableError as exc:
            return InsightAnswer(
                text=f"AI service temporarily unavailable, please try again in {exc.wait_seconds} seconds",
                model=model,
                unavailable=True,
                retry_after_seconds=exc.wait_seconds,
            )
        except OutboundError as exc:
            logger.warning("insight generation failed model=%s: %s", model, exc)
            return InsightAnswer(
                text="Unable to generate insights right now. Please try again later.",
                model=model,
                unavailable=True,
            )

        text = completion.text or "No insight generated"
        self._cache[cache_key] = _CachedInsight(text=text, model=model, stored_at=self._clock())
        await self._record_usage(model, completion.total_tokens)
        return InsightAnswer(text=text, model=model)

    async def suggested_questions(self) -> list[str]:
        metrics, churn = await asyncio.gather(self._metrics.platform_metrics(), self._metrics.churn_data())
        return suggest_questions(metrics, churn)

    async def warm_suggested_insights(self) -> int:
        """Queue answers for the current suggested questions; returns how many were cached."""
        questions = await self.suggested_questions()
        answers = await asyncio.gather(*(self.ask(question, background=True) for question in questions))
        return sum(1 for answer in answers if not answer.unavailable)

    async def _build_context(self) -> str:
        try:
            metrics, churn, email = await asyncio.gather(
                self._metrics.platform_metrics(),
                self._metrics.churn_data(),
                self._metrics.email_stats(),
            )
        except Exception as exc:
            logger.warning("platform metrics unavailable for insight context: %s", exc)
            return "Platform metrics unavailable"
        return _format_context(metrics, churn, email)

    async def _record_usage(self, model: str, total_tokens: int) -> None:
        try:
            await self._repository.insert_ai_usage(model, total_tokens)
        except Exception as exc:
            logger.warning("failed to record AI usage for model=%s: %s", model, exc)
