from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

CampaignStatus = Literal["draft", "scheduled", "sending", "sent", "partial", "failed", "paused"]
CampaignRunStatus = Literal["sent", "partial", "failed", "skipped"]
AutomationQueueStatus = Literal["pending", "processing", "sent", "failed"]
AutomationItemOutcome = Literal["sent", "failed", "skipped"]
DeferredNotificationStatus = Literal["pending", "sent"]
PushPlatform = Literal["ios", "android", "web"]
CircuitStateName = Literal["CLOSED", "OPEN", "HALF_OPEN"]


class CampaignProcessResult(BaseModel):
    campaign_id: str
    status: CampaignRunStatus
    total_recipients: int
    sent: int
    failed: int


class CampaignSweepResult(BaseModel):
    processed: int
    triggered: int
    campaigns: list[str] = Field(default_factory=list)
    failed_campaigns: list[str] = Field(default_factory=list)
    error: str | None = None


class AutomationEnrollRequest(BaseModel):
    profile_id: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=320)
    trigger_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("profile_id", "email")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("value cannot be blank")
        return normalized

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.lower()


class EnrollmentResult(BaseModel):
    automation_id: str
    automation_name: str
    steps_queued: int


class AutomationItemResult(BaseModel):
    item_id: str
    success: bool
    status: AutomationItemOutcome
    error: str | None = None


class AutomationSweepResult(BaseModel):
    processed: int
    sent: int
    failed: int
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)


class AutomationRetryResult(BaseModel):
    item_id: str
    status: AutomationQueueStatus


class DeferredNotificationRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    title: str = Field(min_length=1, max_length=256)
    body: str = Field(min_length=1, max_length=4096)
    data: dict[str, Any] = Field(default_factory=dict)
    resume_at: datetime | None = None

    @field_validator("resume_at")
    @classmethod
    def _ensure_utc(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class DeferredQueued(BaseModel):
    notification_id: str
    user_id: str
    resume_at: datetime


class DeferredFlushResult(BaseModel):
    processed: int
    sent: int
    failed: int
    error: str | None = None


class BroadcastRequest(BaseModel):
    user_ids: list[str] = Field(min_length=1, max_length=10000)
    title: str = Field(min_length=1, max_length=256)
    body: str = Field(min_length=1, max_length=4096)
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("user_ids")
    @classmethod
    def _normalize_user_ids(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        seen: set[str] = set()
        for raw in value:
            user_id = str(raw).strip()
            if not user_id:
                raise ValueError("user_ids entries cannot be blank")
            if user_id in seen:
                continue
            seen.add(user_id)
            normalized.append(user_id)
        return normalized


class BroadcastResult(BaseModel):
    total_users: int
    sent: int
    failed: int
    errors: list[str] = Field(default_factory=list)


class InsightRequest(BaseModel):
    query: str = Field(min_length=1, max_length=4000)
    include_metrics: bool = True
    background: bool = False

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("query cannot be blank")
        return normalized


class InsightAnswer(BaseModel):
    text: str
    model: str | None = None
    cached: bool = False
    unavailable: bool = False
    retry_after_seconds: int | None = None


class SuggestedQuestionsResponse(BaseModel):
    questions: list[str]


class InsightWarmResponse(BaseModel):
    cached: int


class LimiterStatusResponse(BaseModel):
    dependency: str
    circuit_state: CircuitStateName
    failures: int
    queue_length: int
    last_call_time: datetime | None = None
    next_retry_at: datetime | None = None
