from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from .dispatch import PushDispatcher, PushMessage, PushResult
from .models import DeferredFlushResult, DeferredNotificationRequest, DeferredQueued
from .repository import DeferredNotificationRecord, OutboundRepository

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def is_within_quiet_hours(now: datetime, start_hour: int, end_hour: int, tz: str = "UTC") -> bool:
    """True when ``now`` falls in ``[start_hour, end_hour)`` local time; windows may wrap midnight."""
    if start_hour == end_hour:
        return False
    hour = now.astimezone(ZoneInfo(tz)).hour
    if start_hour < end_hour:
        return start_hour <= hour < end_hour
    return hour >= start_hour or hour < end_hour


def next_quiet_hours_end(now: datetime, end_hour: int, tz: str = "UTC") -> datetime:
    local_now = now.astimezone(ZoneInfo(tz))
    candidate = local_now.replace(hour=end_hour, minute=0, second=0, microsecond=0)
    if candidate <= local_now:
        candidate += timedelta(days=1)
    return candidate.astimezone(timezone.utc)


class DeferredNotifier:
    def __init__(
        self,
        *,
        repository: OutboundRepository,
        push_dispatcher: PushDispatcher,
        quiet_hours_end: int = 8,
        quiet_hours_timezone: str = "UTC",
    ) -> None:
        self._repository = repository
        self._push_dispatcher = push_dispatcher
        self._quiet_hours_end = quiet_hours_end
        self._quiet_hours_timezone = quiet_hours_timezone

    async def queue_for_quiet_hours(self, request: DeferredNotificationRequest) -> DeferredQueued:
        resume_at = request.resume_at or next_quiet_hours_end(
            _now_utc(), self._quiet_hours_end, self._quiet_hours_timezone
        )
        record = DeferredNotificationRecord(
            id=f"dn_{uuid.uuid4().hex}",
            user_id=request.user_id,
            title=request.title,
            body=request.body,
            data=dict(request.data),
            resume_at=resume_at,
        )
        await self._repository.insert_deferred_notification(record)
        logger.info("deferred notification %s queued for user %s until %s", record.id, record.user_id, resume_at)
        return DeferredQueued(notification_id=record.id, user_id=record.user_id, resume_at=resume_at)

    async def flush_due(self, *, limit: int = 100) -> DeferredFlushResult:
        try:
            due = await self._repository.fetch_due_deferred_notifications(limit)
        except Exception as exc:
            logger.exception("failed to fetch due deferred notifications")
            return DeferredFlushResult(processed=0, sent=0, failed=0, error=str(exc))

        if not due:
            return DeferredFlushResult(processed=0, sent=0, failed=0)

        outcomes = await asyncio.gather(*(self._deliver(record) for record in due), return_exceptions=True)
        sent = 0
        for record, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("deferred notification %s left pending: %s", record.id, outcome)
                continue
            sent += 1

        logger.info("deferred notification flush processed=%d sent=%d", len(due), sent)
        return DeferredFlushResult(processed=len(due), sent=sent, failed=len(due) - sent)

    async def _deliver(self, record: DeferredNotificationRecord) -> PushResult:
        result = await self._push_dispatcher.send(
            PushMessage(user_id=record.user_id, title=record.title, body=record.body, data=record.data)
        )
        await self._repository.mark_deferred_notification_sent(record.id, _now_utc())
        return result
