from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable, Protocol

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import AlreadyEnrolledError, SegmentResolutionError
from .models import (
    AutomationQueueStatus,
    CampaignStatus,
    DeferredNotificationStatus,
)

CLAIMABLE_CAMPAIGN_STATUSES: tuple[CampaignStatus, ...] = ("draft", "scheduled", "paused")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class CampaignRecord:
    id: str
    name: str
    subject: str
    status: CampaignStatus = "draft"
    segment_id: str | None = None
    html_content: str | None = None
    text_content: str | None = None
    template_data: dict[str, Any] = field(default_factory=dict)
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    sent_count: int = 0
    total_recipients: int = 0


@dataclass(frozen=True)
class SegmentRecipient:
    email: str
    name: str | None = None


@dataclass(frozen=True)
class AutomationStep:
    delay_minutes: int = 0
    template_id: str | None = None
    subject: str | None = None
    html_content: str | None = None
    text_content: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "delay_minutes": self.delay_minutes,
            "template_id": self.template_id,
            "subject": self.subject,
            "html_content": self.html_content,
            "text_content": self.text_content,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> AutomationStep:
        return cls(
            delay_minutes=int(payload.get("delay_minutes") or 0),
            template_id=payload.get("template_id"),
            subject=payload.get("subject"),
            html_content=payload.get("html_content"),
            text_content=payload.get("text_content"),
        )


@dataclass(frozen=True)
class AutomationRecord:
    id: str
    name: str
    steps: tuple[AutomationStep, ...] = ()
    is_active: bool = True


@dataclass(frozen=True)
class EmailTemplateRecord:
    id: str
    subject: str
    html_content: str
    text_content: str | None = None
    name: str = ""


@dataclass(frozen=True)
class AutomationQueueItemRecord:
    id: str
    automation_id: str
    profile_id: str
    email: str
    step_index: int
    scheduled_at: datetime
    status: AutomationQueueStatus = "pending"
    template_data: dict[str, Any] = field(default_factory=dict)
    sent_at: datetime | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class AutomationRunRecord:
    automation_id: str
    profile_id: str
    step_index: int
    status: AutomationQueueStatus
    sent_at: datetime


@dataclass(frozen=True)
class DeferredNotificationRecord:
    id: str
    user_id: str
    title: str
    body: str
    resume_at: datetime
    data: dict[str, Any] = field(default_factory=dict)
    status: DeferredNotificationStatus = "pending"
    sent_at: datetime | None = None


@dataclass(frozen=True)
class PushDeviceRecord:
    user_id: str
    token: str
    platform: str
    is_active: bool = True


@dataclass(frozen=True)
class AIUsageRecord:
    model: str
    total_tokens: int
    created_at: datetime


class OutboundRepository(Protocol):
    async def reset(self) -> None: ...

    async def save_campaign(self, record: CampaignRecord) -> None: ...

    async def fetch_campaign(self, campaign_id: str) -> CampaignRecord | None: ...

    async def claim_campaign(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus] = CLAIMABLE_CAMPAIGN_STATUSES,
    ) -> bool: ...

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        *,
        sent_count: int | None = None,
        total_recipients: int | None = None,
        sent_at: datetime | None = None,
    ) -> None: ...

    async def schedule_campaign_now(self, campaign_id: str, now: datetime) -> bool: ...

    async def fetch_due_campaigns(self, limit: int, *, now: datetime | None = None) -> list[CampaignRecord]: ...

    async def save_segment(
        self, segment_id: str, recipients: Iterable[SegmentRecipient], *, name: str | None = None
    ) -> None: ...

    async def resolve_segment_recipients(self, segment_id: str, limit: int) -> list[SegmentRecipient]: ...

    async def save_automation(self, record: AutomationRecord) -> None: ...

    async def fetch_automation(self, automation_id: str) -> AutomationRecord | None: ...

    async def save_email_template(self, record: EmailTemplateRecord) -> None: ...

    async def fetch_email_template(self, template_id: str) -> EmailTemplateRecord | None: ...

    async def fetch_automation_queue_item(self, item_id: str) -> AutomationQueueItemRecord | None: ...

    async def claim_automation_queue_item(self, item_id: str) -> bool: ...

    async def update_automation_queue_item_status(
        self,
        item_id: str,
        status: AutomationQueueStatus,
        *,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None: ...

    async def retry_automation_queue_item(self, item_id: str) -> bool: ...

    async def insert_automation_run(self, record: AutomationRunRecord) -> None: ...

    async def list_automation_runs(self, automation_id: str) -> list[AutomationRunRecord]: ...

    async def has_automation_enrollment(self, automation_id: str, profile_id: str) -> bool: ...

    async def insert_automation_queue_rows(self, rows: list[AutomationQueueItemRecord]) -> None:
        """Insert all rows or none; raises AlreadyEnrolledError if any (automation, profile, step) exists."""
        ...

    async def list_automation_queue_items(self, automation_id: str) -> list[AutomationQueueItemRecord]: ...

    async def fetch_due_automation_items(self, limit: int, *, now: datetime | None = None) -> list[str]: ...

    async def insert_deferred_notification(self, record: DeferredNotificationRecord) -> None: ...

    async def fetch_deferred_notification(self, notification_id: str) -> DeferredNotificationRecord | None: ...

    async def fetch_due_deferred_notifications(
        self, limit: int, *, now: datetime | None = None
    ) -> list[DeferredNotificationRecord]: ...

    async def mark_deferred_notification_sent(self, notification_id: str, sent_at: datetime) -> None: ...

    async def save_push_device(self, record: PushDeviceRecord) -> None: ...

    async def list_push_devices(self, user_id: str) -> list[PushDeviceRecord]: ...

    async def insert_ai_usage(self, model: str, total_tokens: int) -> None: ...

    async def list_ai_usage(self) -> list[AIUsageRecord]: ...


class InMemoryOutboundRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._campaigns: dict[str, CampaignRecord] = {}
        self._segments: dict[str, list[SegmentRecipient]] = {}
        self._automations: dict[str, AutomationRecord] = {}
        self._templates: dict[str, EmailTemplateRecord] = {}
        self._queue: dict[str, AutomationQueueItemRecord] = {}
        self._runs: list[AutomationRunRecord] = []
        self._deferred: dict[str, DeferredNotificationRecord] = {}
        self._devices: dict[str, PushDeviceRecord] = {}
        self._ai_usage: list[AIUsageRecord] = []

    async def reset(self) -> None:
        with self._lock:
            self._campaigns.clear()
            self._segments.clear()
            self._automations.clear()
            self._templates.clear()
            self._queue.clear()
            self._runs.clear()
            self._deferred.clear()
            self._devices.clear()
            self._ai_usage.clear()

    async def save_campaign(self, record: CampaignRecord) -> None:
        with self._lock:
            self._campaigns[record.id] = record

    async def fetch_campaign(self, campaign_id: str) -> CampaignRecord | None:
        with self._lock:
            return self._campaigns.get(campaign_id)

    async def claim_campaign(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus] = CLAIMABLE_CAMPAIGN_STATUSES,
    ) -> bool:
        allowed = set(from_statuses)
        with self._lock:
            record = self._campaigns.get(campaign_id)
            if record is None or record.status not in allowed:
                return False
            self._campaigns[campaign_id] = replace(record, status="sending")
            return True

    async def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        *,
        sent_count: int | None = None,
        total_recipients: int | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        with self._lock:
            record = self._campaigns.get(campaign_id)
            if record is None:
                return
            updated = replace(record, status=status)
            if sent_count is not None:
                updated = replace(updated, sent_count=sent_count)
            if total_recipients is not None:
                updated = replace(updated, total_recipients=total_recipients)
            if sent_at is not None:
                updated = replace(updated, sent_at=sent_at)
            self._campaigns[campaign_id] = updated

    async def schedule_campaign_now(self, campaign_id: str, now: datetime) -> bool:
        with self._lock:
            record = self._campaigns.get(campaign_id)
            if record is None or record.status not in CLAIMABLE_CAMPAIGN_STATUSES:
                return False
            self._campaigns[campaign_id] = replace(record, status="scheduled", scheduled_at=now)
            return True

    async def fetch_due_campaigns(self, limit: int, *, now: datetime | None = None) -> list[CampaignRecord]:
        cutoff = now or _now_utc()
        with self._lock:
            due = [
                record
                for record in self._campaigns.values()
                if record.status == "scheduled"
                and record.scheduled_at is not None
                and _coerce_utc(record.scheduled_at) <= cutoff
            ]
        due.sort(key=lambda item: item.scheduled_at)  # type: ignore[arg-type, return-value]
        return due[:limit]

    async def save_segment(
        self, segment_id: str, recipients: Iterable[SegmentRecipient], *, name: str | None = None
    ) -> None:
        with self._lock:
            self._segments[segment_id] = list(recipients)

    async def resolve_segment_recipients(self, segment_id: str, limit: int) -> list[SegmentRecipient]:
        with self._lock:
            recipients = self._segments.get(segment_id)
            if recipients is None:
                raise SegmentResolutionError(f"segment not found: {segment_id}")
            return list(recipients[:limit])

    async def save_automation(self, record: AutomationRecord) -> None:
        with self._lock:
            self._automations[record.id] = record

    async def fetch_automation(self, automation_id: str) -> AutomationRecord | None:
        with self._lock:
            return self._automations.get(automation_id)

    async def save_email_template(self, record: EmailTemplateRecord) -> None:
        with self._lock:
            self._templates[record.id] = record

    async def fetch_email_template(self, template_id: str) -> EmailTemplateRecord | None:
        with self._lock:
            return self._templates.get(template_id)

    async def fetch_automation_queue_item(self, item_id: str) -> AutomationQueueItemRecord | None:
        with self._lock:
            return self._queue.get(item_id)

    async def claim_automation_queue_item(self, item_id: str) -> bool:
        with self._lock:
            record = self._queue.get(item_id)
            if record is None or record.status != "pending":
                return False
            self._queue[item_id] = replace(record, status="processing")
            return True

    async def update_automation_queue_item_status(
        self,
        item_id: str,
        status: AutomationQueueStatus,
        *,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            record = self._queue.get(item_id)
            if record is None:
                return
            self._queue[item_id] = replace(record, status=status, sent_at=sent_at, error_message=error_message)

    async def retry_automation_queue_item(self, item_id: str) -> bool:
        with self._lock:
            record = self._queue.get(item_id)
            if record is None or record.status != "failed":
                return False
            self._queue[item_id] = replace(record, status="pending", error_message=None, sent_at=None)
            return True

    async def insert_automation_run(self, record: AutomationRunRecord) -> None:
        with self._lock:
            self._runs.append(record)

    async def list_automation_runs(self, automation_id: str) -> list[AutomationRunRecord]:
        with self._lock:
            return [run for run in self._runs if run.automation_id == automation_id]

    async def has_automation_enrollment(self, automation_id: str, profile_id: str) -> bool:
        with self._lock:
            if any(
                run.automation_id == automation_id and run.profile_id == profile_id for run in self._runs
            ):
                return True
            return any(
                item.automation_id == automation_id and item.profile_id == profile_id
                for item in self._queue.values()
            )

    async def insert_automation_queue_rows(self, rows: list[AutomationQueueItemRecord]) -> None:
        with self._lock:
            taken = {(item.automation_id, item.profile_id, item.step_index) for item in self._queue.values()}
            if any((row.automation_id, row.profile_id, row.step_index) in taken for row in rows):
                raise AlreadyEnrolledError("already enrolled")
            for row in rows:
                self._queue[row.id] = row

    async def list_automation_queue_items(self, automation_id: str) -> list[AutomationQueueItemRecord]:
        with self._lock:
            items = [item for item in self._queue.values() if item.automation_id == automation_id]
        return sorted(items, key=lambda item: (item.profile_id, item.step_index))

    async def fetch_due_automation_items(self, limit: int, *, now: datetime | None = None) -> list[str]:
        cutoff = now or _now_utc()
        with self._lock:
            due = [
                item
                for item in self._queue.values()
                if item.status == "pending" and _coerce_utc(item.scheduled_at) <= cutoff
            ]
        due.sort(key=lambda item: item.scheduled_at)
        return [item.id for item in due[:limit]]

    async def insert_deferred_notification(self, record: DeferredNotificationRecord) -> None:
        with self._lock:
            self._deferred[record.id] = record

    async def fetch_deferred_notification(self, notification_id: str) -> DeferredNotificationRecord | None:
        with self._lock:
            return self._deferred.get(notification_id)

    async def fetch_due_deferred_notifications(
        self, limit: int, *, now: datetime | None = None
    ) -> list[DeferredNotificationRecord]:
        cutoff = now or _now_utc()
        with self._lock:
            due = [
                record
                for record in self._deferred.values()
                if record.status == "pending" and _coerce_utc(record.resume_at) <= cutoff
            ]
        due.sort(key=lambda item: item.resume_at)
        return due[:limit]

    async def mark_deferred_notification_sent(self, notification_id: str, sent_at: datetime) -> None:
        with self._lock:
            record = self._deferred.get(notification_id)
            if record is None:
                return
            self._deferred[notification_id] = replace(record, status="sent", sent_at=sent_at)

    async def save_push_device(self, record: PushDeviceRecord) -> None:
        with self._lock:
            self._devices[record.token] = record

    async def list_push_devices(self, user_id: str) -> list[PushDeviceRecord]:
        with self._lock:
            return [
                device for device in self._devices.values() if device.user_id == user_id and device.is_active
            ]

    async def insert_ai_usage(self, model: str, total_tokens: int) -> None:
        with self._lock:
            self._ai_usage.append(AIUsageRecord(model=model, total_tokens=total_tokens, created_at=_now_utc()))

    async def list_ai_usage(self) -> list[AIUsageRecord]:
        with self._lock:
            return list(self._ai_usage)


class OutboundBase(DeclarativeBase):
    pass


class _CampaignRow(OutboundBase):
    __tablename__ = "outbound_campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    segment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    html_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    template_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SegmentRow(OutboundBase):
    __tablename__ = "outbound_segments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _SegmentMemberRow(OutboundBase):
    __tablename__ = "outbound_segment_members"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    segment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _AutomationRow(OutboundBase):
    __tablename__ = "outbound_automations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)


class _EmailTemplateRow(OutboundBase):
    __tablename__ = "outbound_email_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)


class _AutomationQueueRow(OutboundBase):
    __tablename__ = "outbound_automation_queue"
    __table_args__ = (
        UniqueConstraint("automation_id", "profile_id", "step_index", name="uq_outbound_automation_queue_step"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    automation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    profile_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    template_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class _AutomationRunRow(OutboundBase):
    __tablename__ = "outbound_automation_runs"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    automation_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    profile_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _DeferredNotificationRow(OutboundBase):
    __tablename__ = "outbound_deferred_notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    resume_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _PushDeviceRow(OutboundBase):
    __tablename__ = "outbound_push_devices"

    token: Mapped[str] = mapped_column(String(512), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _AIUsageRow(OutboundBase):
    __tablename__ = "outbound_ai_usage"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer(), "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    model: Mapped[str] = mapped_column(String(128), nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _offloaded(method):
    """Run a blocking session method in a worker thread so the event loop keeps turning."""

    @functools.wraps(method)
    async def _wrapped(self, *args, **kwargs):
        return await asyncio.to_thread(method, self, *args, **kwargs)

    return _wrapped


class SqlAlchemyOutboundRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for OUTBOUND_STORE_BACKEND=postgres")
        engine_options: dict[str, Any] = {"future": True, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            # Sessions run on worker threads.
            engine_options["connect_args"] = {"check_same_thread": False}
            if database_url in {"sqlite://", "sqlite:///:memory:"}:
                engine_options["poolclass"] = StaticPool
        self._engine = create_engine(database_url, **engine_options)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            OutboundBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    @_offloaded
    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                for row_type in (
                    _AIUsageRow,
                    _PushDeviceRow,
                    _DeferredNotificationRow,
                    _AutomationRunRow,
                    _AutomationQueueRow,
                    _EmailTemplateRow,
                    _AutomationRow,
                    _SegmentMemberRow,
                    _SegmentRow,
                    _CampaignRow,
                ):
                    session.execute(delete(row_type))

    @_offloaded
    def save_campaign(self, record: CampaignRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_CampaignRow, record.id)
                if row is None:
                    row = _CampaignRow(id=record.id)
                    session.add(row)
                row.name = record.name
                row.subject = record.subject
                row.status = record.status
                row.segment_id = record.segment_id
                row.html_content = record.html_content
                row.text_content = record.text_content
                row.template_data = dict(record.template_data)
                row.scheduled_at = record.scheduled_at
                row.sent_at = record.sent_at
                row.sent_count = record.sent_count
                row.total_recipients = record.total_recipients
                row.updated_at = _now_utc()

    @_offloaded
    def fetch_campaign(self, campaign_id: str) -> CampaignRecord | None:
        with self._session() as session:
            row = session.get(_CampaignRow, campaign_id)
            return self._campaign_record(row) if row is not None else None

    @_offloaded
    def claim_campaign(
        self,
        campaign_id: str,
        from_statuses: Iterable[CampaignStatus] = CLAIMABLE_CAMPAIGN_STATUSES,
    ) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_CampaignRow)
                    .where(_CampaignRow.id == campaign_id)
                    .where(_CampaignRow.status.in_(tuple(from_statuses)))
                    .values(status="sending", updated_at=_now_utc())
                )
                return result.rowcount == 1

    @_offloaded
    def update_campaign_status(
        self,
        campaign_id: str,
        status: CampaignStatus,
        *,
        sent_count: int | None = None,
        total_recipients: int | None = None,
        sent_at: datetime | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status, "updated_at": _now_utc()}
        if sent_count is not None:
            values["sent_count"] = sent_count
        if total_recipients is not None:
            values["total_recipients"] = total_recipients
        if sent_at is not None:
            values["sent_at"] = sent_at
        with self._session() as session:
            with session.begin():
                session.execute(update(_CampaignRow).where(_CampaignRow.id == campaign_id).values(**values))

    @_offloaded
    def schedule_campaign_now(self, campaign_id: str, now: datetime) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_CampaignRow)
                    .where(_CampaignRow.id == campaign_id)
                    .where(_CampaignRow.status.in_(CLAIMABLE_CAMPAIGN_STATUSES))
                    .values(status="scheduled", scheduled_at=now, updated_at=_now_utc())
                )
                return result.rowcount == 1

    @_offloaded
    def fetch_due_campaigns(self, limit: int, *, now: datetime | None = None) -> list[CampaignRecord]:
        cutoff = now or _now_utc()
        with self._session() as session:
            rows = session.execute(
                select(_CampaignRow)
                .where(_CampaignRow.status == "scheduled")
                .where(_CampaignRow.scheduled_at <= cutoff)
                .order_by(_CampaignRow.scheduled_at.asc())
                .limit(limit)
            ).scalars().all()
            return [self._campaign_record(row) for row in rows]

    @_offloaded
    def save_segment(
        self, segment_id: str, recipients: Iterable[SegmentRecipient], *, name: str | None = None
    ) -> None:
        with self._session() as session:
            with session.begin():
                segment = session.get(_SegmentRow, segment_id)
                if segment is None:
                    session.add(_SegmentRow(id=segment_id, name=name))
                elif name is not None:
                    segment.name = name
                session.execute(delete(_SegmentMemberRow).where(_SegmentMemberRow.segment_id == segment_id))
                for recipient in recipients:
                    session.add(
                        _SegmentMemberRow(segment_id=segment_id, email=recipient.email, name=recipient.name)
                    )

    @_offloaded
    def resolve_segment_recipients(self, segment_id: str, limit: int) -> list[SegmentRecipient]:
        with self._session() as session:
            if session.get(_SegmentRow, segment_id) is None:
                raise SegmentResolutionError(f"segment not found: {segment_id}")
            rows = session.execute(
                select(_SegmentMemberRow)
                .where(_SegmentMemberRow.segment_id == segment_id)
                .order_by(_SegmentMemberRow.id.asc())
                .limit(limit)
            ).scalars().all()
            return [SegmentRecipient(email=row.email, name=row.name) for row in rows]

    @_offloaded
    def save_automation(self, record: AutomationRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_AutomationRow, record.id)
                if row is None:
                    row = _AutomationRow(id=record.id)
                    session.add(row)
                row.name = record.name
                row.is_active = record.is_active
                row.steps = [step.to_payload() for step in record.steps]

    @_offloaded
    def fetch_automation(self, automation_id: str) -> AutomationRecord | None:
        with self._session() as session:
            row = session.get(_AutomationRow, automation_id)
            if row is None:
                return None
            return AutomationRecord(
                id=row.id,
                name=row.name,
                is_active=row.is_active,
                steps=tuple(AutomationStep.from_payload(step) for step in (row.steps or [])),
            )

    @_offloaded
    def save_email_template(self, record: EmailTemplateRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_EmailTemplateRow, record.id)
                if row is None:
                    row = _EmailTemplateRow(id=record.id)
                    session.add(row)
                row.name = record.name
                row.subject = record.subject
                row.html_content = record.html_content
                row.text_content = record.text_content

    @_offloaded
    def fetch_email_template(self, template_id: str) -> EmailTemplateRecord | None:
        with self._session() as session:
            row = session.get(_EmailTemplateRow, template_id)
            if row is None:
                return None
            return EmailTemplateRecord(
                id=row.id,
                name=row.name,
                subject=row.subject,
                html_content=row.html_content,
                text_content=row.text_content,
            )

    @_offloaded
    def fetch_automation_queue_item(self, item_id: str) -> AutomationQueueItemRecord | None:
        with self._session() as session:
            row = session.get(_AutomationQueueRow, item_id)
            return self._queue_record(row) if row is not None else None

    @_offloaded
    def claim_automation_queue_item(self, item_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_AutomationQueueRow)
                    .where(_AutomationQueueRow.id == item_id)
                    .where(_AutomationQueueRow.status == "pending")
                    .values(status="processing")
                )
                return result.rowcount == 1

    @_offloaded
    def update_automation_queue_item_status(
        self,
        item_id: str,
        status: AutomationQueueStatus,
        *,
        sent_at: datetime | None = None,
        error_message: str | None = None,
    ) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_AutomationQueueRow)
                    .where(_AutomationQueueRow.id == item_id)
                    .values(status=status, sent_at=sent_at, error_message=error_message)
                )

    @_offloaded
    def retry_automation_queue_item(self, item_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_AutomationQueueRow)
                    .where(_AutomationQueueRow.id == item_id)
                    .where(_AutomationQueueRow.status == "failed")
                    .values(status="pending", error_message=None, sent_at=None)
                )
                return result.rowcount == 1

    @_offloaded
    def insert_automation_run(self, record: AutomationRunRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _AutomationRunRow(
                        automation_id=record.automation_id,
                        profile_id=record.profile_id,
                        step_index=record.step_index,
                        status=record.status,
                        sent_at=record.sent_at,
                    )
                )

    @_offloaded
    def list_automation_runs(self, automation_id: str) -> list[AutomationRunRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_AutomationRunRow)
                .where(_AutomationRunRow.automation_id == automation_id)
                .order_by(_AutomationRunRow.id.asc())
            ).scalars().all()
            return [
                AutomationRunRecord(
                    automation_id=row.automation_id,
                    profile_id=row.profile_id,
                    step_index=row.step_index,
                    status=row.status,  # type: ignore[arg-type]
                    sent_at=_coerce_utc(row.sent_at),
                )
                for row in rows
            ]

    @_offloaded
    def has_automation_enrollment(self, automation_id: str, profile_id: str) -> bool:
        with self._session() as session:
            run_id = session.execute(
                select(_AutomationRunRow.id)
                .where(_AutomationRunRow.automation_id == automation_id)
                .where(_AutomationRunRow.profile_id == profile_id)
                .limit(1)
            ).scalar_one_or_none()
            if run_id is not None:
                return True
            item_id = session.execute(
                select(_AutomationQueueRow.id)
                .where(_AutomationQueueRow.automation_id == automation_id)
                .where(_AutomationQueueRow.profile_id == profile_id)
                .limit(1)
            ).scalar_one_or_none()
            return item_id is not None

    @_offloaded
    def insert_automation_queue_rows(self, rows: list[AutomationQueueItemRecord]) -> None:
        with self._session() as session:
            try:
                with session.begin():
                    for record in rows:
                        session.add(
                            _AutomationQueueRow(
                                id=record.id,
                                automation_id=record.automation_id,
                                profile_id=record.profile_id,
                                email=record.email,
                                step_index=record.step_index,
                                scheduled_at=record.scheduled_at,
                                status=record.status,
                                template_data=dict(record.template_data),
                                sent_at=record.sent_at,
                                error_message=record.error_message,
                            )
                        )
            except IntegrityError as exc:
                raise AlreadyEnrolledError("already enrolled") from exc

    @_offloaded
    def list_automation_queue_items(self, automation_id: str) -> list[AutomationQueueItemRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_AutomationQueueRow)
                .where(_AutomationQueueRow.automation_id == automation_id)
                .order_by(_AutomationQueueRow.profile_id.asc(), _AutomationQueueRow.step_index.asc())
            ).scalars().all()
            return [self._queue_record(row) for row in rows]

    @_offloaded
    def fetch_due_automation_items(self, limit: int, *, now: datetime | None = None) -> list[str]:
        cutoff = now or _now_utc()
        with self._session() as session:
            return list(
                session.execute(
                    select(_AutomationQueueRow.id)
                    .where(_AutomationQueueRow.status == "pending")
                    .where(_AutomationQueueRow.scheduled_at <= cutoff)
                    .order_by(_AutomationQueueRow.scheduled_at.asc())
                    .limit(limit)
                ).scalars().all()
            )

    @_offloaded
    def insert_deferred_notification(self, record: DeferredNotificationRecord) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _DeferredNotificationRow(
                        id=record.id,
                        user_id=record.user_id,
                        title=record.title,
                        body=record.body,
                        data=dict(record.data),
                        resume_at=record.resume_at,
                        status=record.status,
                        sent_at=record.sent_at,
                    )
                )

    @_offloaded
    def fetch_deferred_notification(self, notification_id: str) -> DeferredNotificationRecord | None:
        with self._session() as session:
            row = session.get(_DeferredNotificationRow, notification_id)
            return self._deferred_record(row) if row is not None else None

    @_offloaded
    def fetch_due_deferred_notifications(
        self, limit: int, *, now: datetime | None = None
    ) -> list[DeferredNotificationRecord]:
        cutoff = now or _now_utc()
        with self._session() as session:
            rows = session.execute(
                select(_DeferredNotificationRow)
                .where(_DeferredNotificationRow.status == "pending")
                .where(_DeferredNotificationRow.resume_at <= cutoff)
                .order_by(_DeferredNotificationRow.resume_at.asc())
                .limit(limit)
            ).scalars().all()
            return [self._deferred_record(row) for row in rows]

    @_offloaded
    def mark_deferred_notification_sent(self, notification_id: str, sent_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(
                    update(_DeferredNotificationRow)
                    .where(_DeferredNotificationRow.id == notification_id)
                    .values(status="sent", sent_at=sent_at)
                )

    @_offloaded
    def save_push_device(self, record: PushDeviceRecord) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_PushDeviceRow, record.token)
                if row is None:
                    row = _PushDeviceRow(token=record.token)
                    session.add(row)
                row.user_id = record.user_id
                row.platform = record.platform
                row.is_active = record.is_active

    @_offloaded
    def list_push_devices(self, user_id: str) -> list[PushDeviceRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_PushDeviceRow)
                .where(_PushDeviceRow.user_id == user_id)
                .where(_PushDeviceRow.is_active.is_(True))
            ).scalars().all()
            return [
                PushDeviceRecord(user_id=row.user_id, token=row.token, platform=row.platform, is_active=row.is_active)
                for row in rows
            ]

    @_offloaded
    def insert_ai_usage(self, model: str, total_tokens: int) -> None:
        with self._session() as session:
            with session.begin():
                session.add(_AIUsageRow(model=model, total_tokens=total_tokens, created_at=_now_utc()))

    @_offloaded
    def list_ai_usage(self) -> list[AIUsageRecord]:
        with self._session() as session:
            rows = session.execute(select(_AIUsageRow).order_by(_AIUsageRow.id.asc())).scalars().all()
            return [
                AIUsageRecord(model=row.model, total_tokens=row.total_tokens, created_at=_coerce_utc(row.created_at))
                for row in rows
            ]

    @staticmethod
    def _campaign_record(row: _CampaignRow) -> CampaignRecord:
        return CampaignRecord(
            id=row.id,
            name=row.name,
            subject=row.subject,
            status=row.status,  # type: ignore[arg-type]
            segment_id=row.segment_id,
            html_content=row.html_content,
            text_content=row.text_content,
            template_data=dict(row.template_data or {}),
            scheduled_at=_optional_utc(row.scheduled_at),
            sent_at=_optional_utc(row.sent_at),
            sent_count=row.sent_count,
            total_recipients=row.total_recipients,
        )

    @staticmethod
    def _queue_record(row: _AutomationQueueRow) -> AutomationQueueItemRecord:
        return AutomationQueueItemRecord(
            id=row.id,
            automation_id=row.automation_id,
            profile_id=row.profile_id,
            email=row.email,
            step_index=row.step_index,
            scheduled_at=_coerce_utc(row.scheduled_at),
            status=row.status,  # type: ignore[arg-type]
            template_data=dict(row.template_data or {}),
            sent_at=_optional_utc(row.sent_at),
            error_message=row.error_message,
        )

    @staticmethod
    def _deferred_record(row: _DeferredNotificationRow) -> DeferredNotificationRecord:
        return DeferredNotificationRecord(
            id=row.id,
            user_id=row.user_id,
            title=row.title,
            body=row.body,
            data=dict(row.data or {}),
            resume_at=_coerce_utc(row.resume_at),
            status=row.status,  # type: ignore[arg-type]
            sent_at=_optional_utc(row.sent_at),
        )


def create_outbound_repository(*, backend: str, database_url: str) -> OutboundRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyOutboundRepository(database_url)
    if normalized == "inmemory":
        return InMemoryOutboundRepository()
    raise RuntimeError(f"unsupported OUTBOUND_STORE_BACKEND: {backend}")
