from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter, HTTPException, Request, status

from .config import get_settings
from .dispatch import broadcast_push
from .errors import (
    AlreadyEnrolledError,
    AutomationInactiveError,
    AutomationNotFoundError,
    AutomationQueueItemNotFoundError,
    CampaignNotFoundError,
    QueueItemNotRetryableError,
    SegmentResolutionError,
)
from .models import (
    AutomationEnrollRequest,
    AutomationRetryResult,
    AutomationSweepResult,
    BroadcastRequest,
    BroadcastResult,
    CampaignProcessResult,
    CampaignSweepResult,
    DeferredFlushResult,
    DeferredNotificationRequest,
    DeferredQueued,
    EnrollmentResult,
    InsightAnswer,
    InsightRequest,
    InsightWarmResponse,
    LimiterStatusResponse,
    SuggestedQuestionsResponse,
)
from .runtime import OutboundRuntime, build_runtime

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/outbound", tags=["outbound"])
runtime: OutboundRuntime = build_runtime(_settings)


def reset_runtime_state_for_tests() -> None:
    global runtime
    runtime = build_runtime(_settings)


def _bearer_token(request: Request) -> str:
    return request.headers.get("Authorization", "").removeprefix("Bearer ").strip()


def _require_secret(request: Request, configured: str, missing_detail: str) -> None:
    token = _bearer_token(request)
    if not configured.strip() or not token:
        raise HTTPException(401, missing_detail)
    if not hmac.compare_digest(token.encode("utf-8"), configured.strip().encode("utf-8")):
        raise HTTPException(401, "invalid credentials")


def _require_cron(request: Request) -> None:
    _require_secret(request, runtime.settings.cron_secret, "cron secret required")


def _require_admin(request: Request) -> None:
    _require_secret(request, runtime.settings.admin_api_token, "admin token required")


@router.post("/cron/campaigns", response_model=CampaignSweepResult)
async def run_scheduled_campaigns(request: Request) -> CampaignSweepResult:
    _require_cron(request)
    return await runtime.campaigns.check_scheduled_campaigns(limit=runtime.settings.campaign_sweep_limit)


@router.post("/cron/automations", response_model=AutomationSweepResult)
async def run_automation_queue(request: Request) -> AutomationSweepResult:
    _require_cron(request)
    return await runtime.automations.check_queue(limit=runtime.settings.automation_sweep_limit)


@router.post("/cron/deferred-notifications", response_model=DeferredFlushResult)
async def flush_deferred_notifications(request: Request) -> DeferredFlushResult:
    _require_cron(request)
    return await runtime.deferred.flush_due(limit=runtime.settings.deferred_flush_limit)


@router.post("/campaigns/{campaign_id}/process", response_model=CampaignProcessResult)
async def process_campaign(campaign_id: str, request: Request) -> CampaignProcessResult:
    _require_admin(request)
    try:
        return await runtime.campaigns.process(campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"campaign not found: {campaign_id}") from exc
    except SegmentResolutionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/campaigns/{campaign_id}/send-now", response_model=CampaignProcessResult)
async def send_campaign_now(campaign_id: str, request: Request) -> CampaignProcessResult:
    _require_admin(request)
    try:
        return await runtime.campaigns.trigger_now(campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"campaign not found: {campaign_id}") from exc
    except SegmentResolutionError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post(
    "/automations/{automation_id}/enroll",
    response_model=EnrollmentResult,
    status_code=status.HTTP_201_CREATED,
)
async def enroll_in_automation(
    automation_id: str, payload: AutomationEnrollRequest, request: Request
) -> EnrollmentResult:
    _require_admin(request)
    try:
        return await runtime.automations.enroll(
            automation_id,
            payload.profile_id,
            payload.email,
            payload.trigger_data,
        )
    except AutomationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"automation not found: {automation_id}") from exc
    except (AutomationInactiveError, AlreadyEnrolledError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/automation-queue/{item_id}/retry", response_model=AutomationRetryResult)
async def retry_automation_item(item_id: str, request: Request) -> AutomationRetryResult:
    _require_admin(request)
    try:
        return await runtime.automations.retry_item(item_id)
    except AutomationQueueItemNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"queue item not found: {item_id}") from exc
    except QueueItemNotRetryableError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post(
    "/notifications/deferred",
    response_model=DeferredQueued,
    status_code=status.HTTP_201_CREATED,
)
async def queue_deferred_notification(payload: DeferredNotificationRequest, request: Request) -> DeferredQueued:
    _require_admin(request)
    return await runtime.deferred.queue_for_quiet_hours(payload)


@router.post("/notifications/broadcast", response_model=BroadcastResult)
async def broadcast_notification(payload: BroadcastRequest, request: Request) -> BroadcastResult:
    _require_admin(request)
    return await broadcast_push(
        runtime.push_dispatcher,
        payload.user_ids,
        title=payload.title,
        body=payload.body,
        data=payload.data,
        chunk_size=runtime.settings.broadcast_chunk_size,
    )


@router.post("/insights", response_model=InsightAnswer)
async def ask_insight(payload: InsightRequest, request: Request) -> InsightAnswer:
    _require_admin(request)
    return await runtime.insights.ask(
        payload.query,
        include_metrics=payload.include_metrics,
        background=payload.background,
    )


@router.get("/insights/suggestions", response_model=SuggestedQuestionsResponse)
async def get_suggested_questions(request: Request) -> SuggestedQuestionsResponse:
    _require_admin(request)
    return SuggestedQuestionsResponse(questions=await runtime.insights.suggested_questions())


@router.post("/insights/warm", response_model=InsightWarmResponse)
async def warm_insights(request: Request) -> InsightWarmResponse:
    _require_admin(request)
    return InsightWarmResponse(cached=await runtime.insights.warm_suggested_insights())


@router.get("/insights/limiter", response_model=LimiterStatusResponse)
async def get_limiter_status(request: Request) -> LimiterStatusResponse:
    _require_admin(request)
    insights = runtime.insights
    limiter = insights.executor.status(queue=insights.queue)
    return LimiterStatusResponse(
        dependency=limiter.dependency,
        circuit_state=limiter.circuit_state,
        failures=limiter.failures,
        queue_length=limiter.queue_length,
        last_call_time=limiter.last_call_time,
        next_retry_at=limiter.next_retry_at,
    )


@router.post("/insights/limiter/reset", response_model=LimiterStatusResponse)
async def reset_limiter(request: Request) -> LimiterStatusResponse:
    _require_admin(request)
    runtime.insights.executor.reset()
    logger.info("AI limiter reset by admin")
    return await get_limiter_status(request)
