from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from foodshare_outbound.config import Settings
from foodshare_outbound.errors import AlreadyEnrolledError, SegmentResolutionError
from foodshare_outbound.models import DeferredNotificationRequest
from foodshare_outbound.providers import StubEmailProvider, StubPushProvider
from foodshare_outbound.repository import (
    AutomationQueueItemRecord,
    AutomationRecord,
    AutomationStep,
    CampaignRecord,
    PushDeviceRecord,
    SegmentRecipient,
    SqlAlchemyOutboundRepository,
    create_outbound_repository,
)
from foodshare_outbound.runtime import build_runtime


async def _no_sleep(seconds: float) -> None:
    return None


def _repository(tmp_path: Path) -> SqlAlchemyOutboundRepository:
    return SqlAlchemyOutboundRepository(f"sqlite:///{tmp_path / 'outbound.db'}")


def test_campaign_claim_is_conditional(tmp_path: Path) -> None:
    repository = _repository(tmp_path)

    async def _run():
        await repository.save_campaign(CampaignRecord(id="c1", name="Surplus", subject="Hi", status="scheduled"))
        first = await repository.claim_campaign("c1")
        second = await repository.claim_campaign("c1")
        stored = await repository.fetch_campaign("c1")
        return first, second, stored

    first, second, stored = asyncio.run(_run())

    assert first is True
    assert second is False
    assert stored.status == "sending"


def test_due_campaigns_and_status_updates_round_trip(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    now = datetime.now(timezone.utc)

    async def _run():
        await repository.save_campaign(
            CampaignRecord(
                id="due",
                name="Due",
                subject="Hi",
                status="scheduled",
                scheduled_at=now - timedelta(minutes=1),
                template_data={"city": "Sacramento"},
            )
        )
        await repository.save_campaign(
            CampaignRecord(id="later", name="Later", subject="Hi", status="scheduled", scheduled_at=now + timedelta(hours=1))
        )
        due = await repository.fetch_due_campaigns(10)
        await repository.update_campaign_status("due", "partial", sent_count=4, total_recipients=5, sent_at=now)
        return due, await repository.fetch_campaign("due")

    due, stored = asyncio.run(_run())

    assert [campaign.id for campaign in due] == ["due"]
    assert due[0].template_data == {"city": "Sacramento"}
    assert due[0].scheduled_at.tzinfo is not None
    assert stored.status == "partial"
    assert (stored.sent_count, stored.total_recipients) == (4, 5)


def test_segment_resolution(tmp_path: Path) -> None:
    repository = _repository(tmp_path)

    async def _run():
        await repository.save_segment(
            "seg",
            [SegmentRecipient(email="a@example.com", name="A"), SegmentRecipient(email="b@example.com")],
            name="Local",
        )
        limited = await repository.resolve_segment_recipients("seg", 1)
        everyone = await repository.resolve_segment_recipients("seg", 100)
        with pytest.raises(SegmentResolutionError):
            await repository.resolve_segment_recipients("missing", 10)
        return limited, everyone

    limited, everyone = asyncio.run(_run())

    assert len(limited) == 1
    assert {recipient.email for recipient in everyone} == {"a@example.com", "b@example.com"}


def test_enrollment_and_queue_processing_against_sqlite(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    provider = StubEmailProvider()
    runtime = build_runtime(Settings(), repository=repository, email_provider=provider, sleep=_no_sleep)

    async def _run():
        await repository.save_automation(
            AutomationRecord(
                id="welcome",
                name="Welcome",
                steps=(
                    AutomationStep(subject="Hello {{first_name}}", html_content="<p>hi</p>"),
                    AutomationStep(delay_minutes=60, subject="Later", html_content="<p>later</p>"),
                ),
            )
        )
        await runtime.automations.enroll("welcome", "p1", "ana@example.com", {"first_name": "Ana"})
        with pytest.raises(AlreadyEnrolledError):
            await runtime.automations.enroll("welcome", "p1", "ana@example.com")
        sweep = await runtime.automations.check_queue()
        rows = await repository.list_automation_queue_items("welcome")
        runs = await repository.list_automation_runs("welcome")
        return sweep, rows, runs

    sweep, rows, runs = asyncio.run(_run())

    assert sweep.sent == 1
    assert [row.status for row in rows] == ["sent", "pending"]
    assert rows[1].template_data == {"first_name": "Ana", "step_index": 1}
    assert len(runs) == 1
    assert provider.sent[0].subject == "Hello Ana"


def test_concurrent_enrollments_queue_steps_once(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    runtime = build_runtime(Settings(), repository=repository, email_provider=StubEmailProvider(), sleep=_no_sleep)

    async def _run():
        await repository.save_automation(
            AutomationRecord(
                id="a1",
                name="Welcome",
                steps=(AutomationStep(subject="Hello", html_content="<p>hi</p>"),),
            )
        )
        outcomes = await asyncio.gather(
            runtime.automations.enroll("a1", "p1", "ana@example.com"),
            runtime.automations.enroll("a1", "p1", "ana@example.com"),
            return_exceptions=True,
        )
        return outcomes, await repository.list_automation_queue_items("a1")

    outcomes, rows = asyncio.run(_run())

    enrolled = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, AlreadyEnrolledError)]
    assert len(enrolled) == 1
    assert len(rejected) == 1
    assert len(rows) == 1


def test_duplicate_queue_step_insert_is_rejected_atomically(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    scheduled_at = datetime.now(timezone.utc)

    def _row(item_id: str, step_index: int) -> AutomationQueueItemRecord:
        return AutomationQueueItemRecord(
            id=item_id,
            automation_id="a1",
            profile_id="p1",
            email="ana@example.com",
            step_index=step_index,
            scheduled_at=scheduled_at,
        )

    async def _run():
        await repository.insert_automation_queue_rows([_row("aq_1", 0)])
        with pytest.raises(AlreadyEnrolledError):
            await repository.insert_automation_queue_rows([_row("aq_2", 1), _row("aq_3", 0)])
        return await repository.list_automation_queue_items("a1")

    rows = asyncio.run(_run())

    assert [row.id for row in rows] == ["aq_1"]


def test_deferred_notifications_against_sqlite(tmp_path: Path) -> None:
    repository = _repository(tmp_path)
    provider = StubPushProvider()
    runtime = build_runtime(Settings(), repository=repository, push_provider=provider, sleep=_no_sleep)
    now = datetime.now(timezone.utc)

    async def _run():
        await repository.save_push_device(PushDeviceRecord(user_id="u1", token="tok-1", platform="android"))
        due = await runtime.deferred.queue_for_quiet_hours(
            DeferredNotificationRequest(user_id="u1", title="Morning", body="Fresh bagels", resume_at=now - timedelta(minutes=2))
        )
        await runtime.deferred.queue_for_quiet_hours(
            DeferredNotificationRequest(user_id="u1", title="Tomorrow", body="Later", resume_at=now + timedelta(days=1))
        )
        result = await runtime.deferred.flush_due()
        return result, await repository.fetch_deferred_notification(due.notification_id)

    result, record = asyncio.run(_run())

    assert result.sent == 1
    assert record.status == "sent"
    assert [request.title for request in provider.sent] == ["Morning"]


def test_ai_usage_is_recorded(tmp_path: Path) -> None:
    repository = _repository(tmp_path)

    async def _run():
        await repository.insert_ai_usage("gpt-4o-mini", 120)
        await repository.insert_ai_usage("gpt-4o", 480)
        return await repository.list_ai_usage()

    usage = asyncio.run(_run())

    assert [(row.model, row.total_tokens) for row in usage] == [("gpt-4o-mini", 120), ("gpt-4o", 480)]
    assert all(row.created_at.tzinfo is not None for row in usage)


def test_reset_clears_all_tables(tmp_path: Path) -> None:
    repository = _repository(tmp_path)

    async def _run():
        await repository.save_campaign(CampaignRecord(id="c1", name="n", subject="s"))
        await repository.insert_ai_usage("m", 1)
        await repository.reset()
        return await repository.fetch_campaign("c1"), await repository.list_ai_usage()

    campaign, usage = asyncio.run(_run())

    assert campaign is None
    assert usage == []


def test_repository_factory() -> None:
    assert type(create_outbound_repository(backend="inmemory", database_url="")).__name__ == "InMemoryOutboundRepository"
    assert isinstance(
        create_outbound_repository(backend="postgres", database_url="sqlite://"),
        SqlAlchemyOutboundRepository,
    )
    with pytest.raises(RuntimeError):
        create_outbound_repository(backend="redis", database_url="")
    with pytest.raises(RuntimeError):
        create_outbound_repository(backend="postgres", database_url="")
