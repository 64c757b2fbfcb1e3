from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from .dispatch import EmailDispatcher, EmailMessage, batch_dispatch
from .errors import CampaignNotFoundError, SegmentResolutionError
from .models import CampaignProcessResult, CampaignSweepResult
from .repository import CampaignRecord, OutboundRepository, SegmentRecipient
from .templates import replace_variables

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class CampaignProcessor:
    def __init__(
        self,
        *,
        repository: OutboundRepository,
        email_dispatcher: EmailDispatcher,
        segment_limit: int = 10000,
        concurrency: int = 10,
    ) -> None:
        self._repository = repository
        self._email_dispatcher = email_dispatcher
        self._segment_limit = segment_limit
        self._concurrency = concurrency
        self._background: set[asyncio.Task[CampaignProcessResult]] = set()

    async def process(self, campaign_id: str) -> CampaignProcessResult:
        campaign = await self._repository.fetch_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")

        if not await self._repository.claim_campaign(campaign_id):
            logger.info("campaign %s already claimed (status=%s); skipping", campaign_id, campaign.status)
            return CampaignProcessResult(
                campaign_id=campaign_id,
                status="skipped",
                total_recipients=0,
                sent=0,
                failed=0,
            )

        try:
            if not campaign.segment_id:
                raise SegmentResolutionError(f"Campaign {campaign_id} has no target segment")
            recipients = await self._repository.resolve_segment_recipients(
                campaign.segment_id, self._segment_limit
            )
        except Exception:
            logger.exception("failed to resolve recipients for campaign %s", campaign_id)
            await self._repository.update_campaign_status(campaign_id, "failed")
            raise

        messages = [self._build_message(campaign, recipient) for recipient in recipients]
        try:
            batch = await batch_dispatch(messages, self._email_dispatcher.send, concurrency=self._concurrency)
        except Exception:
            logger.exception("batch dispatch failed for campaign %s", campaign_id)
            await self._repository.update_campaign_status(campaign_id, "failed")
            raise

        final_status = "sent" if batch.failed == 0 else "partial"
        await self._repository.update_campaign_status(
            campaign_id,
            final_status,
            sent_count=batch.successful,
            total_recipients=len(recipients),
            sent_at=_now_utc(),
        )
        logger.info(
            "campaign %s finished status=%s recipients=%d sent=%d failed=%d",
            campaign_id,
            final_status,
            len(recipients),
            batch.successful,
            batch.failed,
        )
        return CampaignProcessResult(
            campaign_id=campaign_id,
            status=final_status,
            total_recipients=len(recipients),
            sent=batch.successful,
            failed=batch.failed,
        )

    async def trigger_now(self, campaign_id: str) -> CampaignProcessResult:
        campaign = await self._repository.fetch_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(f"Campaign not found: {campaign_id}")
        if not await self._repository.schedule_campaign_now(campaign_id, _now_utc()):
            logger.info("campaign %s cannot be sent now from status=%s", campaign_id, campaign.status)
            return CampaignProcessResult(
                campaign_id=campaign_id,
                status="skipped",
                total_recipients=0,
                sent=0,
                failed=0,
            )
        return await self.process(campaign_id)

    async def check_scheduled_campaigns(self, *, limit: int = 10, wait: bool = True) -> CampaignSweepResult:
        try:
            due = await self._repository.fetch_due_campaigns(limit)
        except Exception as exc:
            logger.exception("failed to fetch due campaigns")
            return CampaignSweepResult(processed=0, triggered=0, error=str(exc))

        if not due:
            return CampaignSweepResult(processed=0, triggered=0)

        tasks = [asyncio.create_task(self.process(campaign.id)) for campaign in due]
        if not wait:
            for task in tasks:
                self._background.add(task)
                task.add_done_callback(self._on_background_done)
            return CampaignSweepResult(
                processed=len(due),
                triggered=len(tasks),
                campaigns=[campaign.name for campaign in due],
            )

        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        failed_campaigns: list[str] = []
        for campaign, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("scheduled campaign %s failed: %s", campaign.id, outcome)
                failed_campaigns.append(campaign.name)

        logger.info("scheduled campaign sweep processed=%d failed=%d", len(due), len(failed_campaigns))
        return CampaignSweepResult(
            processed=len(due),
            triggered=len(tasks),
            campaigns=[campaign.name for campaign in due],
            failed_campaigns=failed_campaigns,
        )

    def _on_background_done(self, task: asyncio.Task[CampaignProcessResult]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background campaign processing failed: %s", exc)

    @staticmethod
    def _build_message(campaign: CampaignRecord, recipient: SegmentRecipient) -> EmailMessage:
        variables = {
            "campaign_id": campaign.id,
            "campaign_name": campaign.name,
            "recipient_name": recipient.name or "",
            "recipient_email": recipient.email,
            **campaign.template_data,
        }
        text = replace_variables(campaign.text_content, variables) if campaign.text_content else None
        html_source = campaign.html_content or f"<p>{campaign.text_content or ''}</p>"
        return EmailMessage(
            to=recipient.email,
            subject=replace_variables(campaign.subject, variables),
            html=replace_variables(html_source, variables),
            text=text,
            email_type="newsletter",
        )
