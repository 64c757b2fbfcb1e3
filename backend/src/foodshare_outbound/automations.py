from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from .dispatch import EmailDispatcher, EmailMessage
from .errors import (
    AlreadyEnrolledError,
    AutomationInactiveError,
    AutomationNotFoundError,
    AutomationQueueItemNotFoundError,
    QueueItemNotRetryableError,
)
from .models import (
    AutomationItemResult,
    AutomationRetryResult,
    AutomationSweepResult,
    EnrollmentResult,
)
from .repository import (
    AutomationQueueItemRecord,
    AutomationRunRecord,
    AutomationStep,
    OutboundRepository,
)
from .templates import replace_variables

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "FoodShare Update"
MAX_REPORTED_ERRORS = 10


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AutomationProcessor:
    """Drip sequences: enrollment materializes one queue row per step up front;
    processing only ever advances a single row's status."""

    def __init__(self, *, repository: OutboundRepository, email_dispatcher: EmailDispatcher) -> None:
        self._repository = repository
        self._email_dispatcher = email_dispatcher

    async def process_item(self, item_id: str) -> AutomationItemResult:
        item = await self._repository.fetch_automation_queue_item(item_id)
        if item is None:
            return AutomationItemResult(
                item_id=item_id,
                success=False,
                status="failed",
                error=f"Queue item not found: {item_id}",
            )

        if not await self._repository.claim_automation_queue_item(item_id):
            logger.info("automation queue item %s already claimed (status=%s)", item_id, item.status)
            return AutomationItemResult(item_id=item_id, success=False, status="skipped")

        try:
            message = await self._render(item)
            result = await self._email_dispatcher.send(message)
        except Exception as exc:
            logger.warning("automation queue item %s failed before dispatch: %s", item_id, exc)
            return await self._record_outcome(item, success=False, error=str(exc))

        return await self._record_outcome(item, success=result.success, error=result.error)

    async def enroll(
        self,
        automation_id: str,
        profile_id: str,
        email: str,
        trigger_data: dict[str, Any] | None = None,
    ) -> EnrollmentResult:
        automation = await self._repository.fetch_automation(automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation not found: {automation_id}")
        if not automation.is_active:
            raise AutomationInactiveError(f"Automation is inactive: {automation_id}")
        if await self._repository.has_automation_enrollment(automation_id, profile_id):
            raise AlreadyEnrolledError("already enrolled")

        entered_at = _now_utc()
        rows = [
            AutomationQueueItemRecord(
                id=f"aq_{uuid.uuid4().hex}",
                automation_id=automation_id,
                profile_id=profile_id,
                email=email,
                step_index=index,
                scheduled_at=entered_at + timedelta(minutes=step.delay_minutes),
                status="pending",
                template_data={**(trigger_data or {}), "step_index": index},
            )
            for index, step in enumerate(automation.steps)
        ]
        if rows:
            await self._repository.insert_automation_queue_rows(rows)

        logger.info("enrolled profile %s in automation %s steps=%d", profile_id, automation_id, len(rows))
        return EnrollmentResult(
            automation_id=automation_id,
            automation_name=automation.name,
            steps_queued=len(rows),
        )

    async def check_queue(self, *, limit: int = 50) -> AutomationSweepResult:
        try:
            due_ids = await self._repository.fetch_due_automation_items(limit)
        except Exception as exc:
            logger.exception("failed to fetch automation queue")
            return AutomationSweepResult(processed=0, sent=0, failed=0, errors=[str(exc)])

        if not due_ids:
            return AutomationSweepResult(processed=0, sent=0, failed=0)

        outcomes = await asyncio.gather(*(self.process_item(item_id) for item_id in due_ids), return_exceptions=True)

        sent = failed = skipped = 0
        errors: list[str] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                failed += 1
                errors.append(str(outcome))
            elif outcome.success:
                sent += 1
            elif outcome.status == "skipped":
                skipped += 1
            else:
                failed += 1
                if outcome.error:
                    errors.append(outcome.error)

        logger.info(
            "automation queue sweep processed=%d sent=%d failed=%d skipped=%d",
            len(due_ids),
            sent,
            failed,
            skipped,
        )
        return AutomationSweepResult(
            processed=len(due_ids),
            sent=sent,
            failed=failed,
            skipped=skipped,
            errors=errors[:MAX_REPORTED_ERRORS],
        )

    async def retry_item(self, item_id: str) -> AutomationRetryResult:
        item = await self._repository.fetch_automation_queue_item(item_id)
        if item is None:
            raise AutomationQueueItemNotFoundError(f"Queue item not found: {item_id}")
        if not await self._repository.retry_automation_queue_item(item_id):
            raise QueueItemNotRetryableError(f"Queue item {item_id} is {item.status}; only failed items can be retried")
        logger.info("automation queue item %s returned to pending by operator", item_id)
        return AutomationRetryResult(item_id=item_id, status="pending")

    async def _render(self, item: AutomationQueueItemRecord) -> EmailMessage:
        automation = await self._repository.fetch_automation(item.automation_id)
        steps: tuple[AutomationStep, ...] = automation.steps if automation is not None else ()
        if item.step_index < 0 or item.step_index >= len(steps):
            raise LookupError(f"Step {item.step_index} not found in automation")
        step = steps[item.step_index]

        template = None
        if step.template_id:
            template = await self._repository.fetch_email_template(step.template_id)

        html = (template.html_content if template else None) or step.html_content or ""
        subject = step.subject or (template.subject if template else None) or DEFAULT_SUBJECT
        text = step.text_content or (template.text_content if template else None)

        variables = {"email": item.email, "profile_id": item.profile_id, **item.template_data}
        return EmailMessage(
            to=item.email,
            subject=replace_variables(subject, variables),
            html=replace_variables(html, variables),
            text=replace_variables(text, variables) if text else None,
            email_type="newsletter",
        )

    async def _record_outcome(
        self, item: AutomationQueueItemRecord, *, success: bool, error: str | None
    ) -> AutomationItemResult:
        now = _now_utc()
        status = "sent" if success else "failed"
        await self._repository.update_automation_queue_item_status(
            item.id,
            status,
            sent_at=now if success else None,
            error_message=None if success else error,
        )
        await self._repository.insert_automation_run(
            AutomationRunRecord(
                automation_id=item.automation_id,
                profile_id=item.profile_id,
                step_index=item.step_index,
                status=status,
                sent_at=now,
            )
        )
        if not success:
            logger.warning("automation queue item %s failed: %s", item.id, error)
        return AutomationItemResult(
            item_id=item.id,
            success=success,
            status=status,
            error=None if success else error,
        )
