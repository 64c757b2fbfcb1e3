from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from foodshare_outbound.config import Settings
from foodshare_outbound.errors import CampaignNotFoundError, SegmentResolutionError
from foodshare_outbound.providers import StubEmailProvider
from foodshare_outbound.repository import CampaignRecord, InMemoryOutboundRepository, SegmentRecipient
from foodshare_outbound.runtime import OutboundRuntime, build_runtime


async def _no_sleep(seconds: float) -> None:
    return None


def _runtime() -> tuple[OutboundRuntime, StubEmailProvider]:
    provider = StubEmailProvider()
    runtime = build_runtime(
        Settings(campaign_send_concurrency=2),
        repository=InMemoryOutboundRepository(),
        email_provider=provider,
        sleep=_no_sleep,
    )
    return runtime, provider


def _campaign(campaign_id: str = "camp-1", **overrides) -> CampaignRecord:
    values = {
        "id": campaign_id,
        "name": "Weekend surplus",
        "subject": "Hi {{recipient_name}}, food is waiting",
        "status": "draft",
        "segment_id": "seg-1",
        "html_content": "<p>{{campaign_name}} for {{recipient_email}} in {{city}}</p>",
        "template_data": {"city": "Sacramento"},
    }
    values.update(overrides)
    return CampaignRecord(**values)


async def _seed(runtime: OutboundRuntime, recipients: list[SegmentRecipient], **campaign_overrides) -> None:
    await runtime.repository.save_segment("seg-1", recipients, name="Nearby")
    await runtime.repository.save_campaign(_campaign(**campaign_overrides))


def test_process_sends_to_every_recipient() -> None:
    runtime, provider = _runtime()
    recipients = [
        SegmentRecipient(email="ana@example.com", name="Ana"),
        SegmentRecipient(email="ben@example.com", name="Ben"),
        SegmentRecipient(email="cy@example.com"),
    ]

    async def _run():
        await _seed(runtime, recipients)
        result = await runtime.campaigns.process("camp-1")
        return result, await runtime.repository.fetch_campaign("camp-1")

    result, stored = asyncio.run(_run())

    assert result.status == "sent"
    assert result.total_recipients == 3
    assert result.sent == 3
    assert result.failed == 0
    assert stored.status == "sent"
    assert stored.sent_count == 3
    assert stored.total_recipients == 3
    assert stored.sent_at is not None
    assert provider.sent[0].subject == "Hi Ana, food is waiting"
    assert provider.sent[0].html == "<p>Weekend surplus for ana@example.com in Sacramento</p>"
    assert provider.sent[2].subject == "Hi , food is waiting"


def test_process_marks_partial_when_some_recipients_fail() -> None:
    runtime, provider = _runtime()
    recipients = [
        SegmentRecipient(email="ana@example.com"),
        SegmentRecipient(email="fail@example.com"),
        SegmentRecipient(email="cy@example.com"),
    ]

    async def _run():
        await _seed(runtime, recipients)
        result = await runtime.campaigns.process("camp-1")
        return result, await runtime.repository.fetch_campaign("camp-1")

    result, stored = asyncio.run(_run())

    assert result.status == "partial"
    assert result.sent == 2
    assert result.failed == 1
    assert stored.status == "partial"
    assert stored.sent_count == 2
    assert len(provider.sent) == 2


def test_second_process_call_is_skipped() -> None:
    runtime, provider = _runtime()

    async def _run():
        await _seed(runtime, [SegmentRecipient(email="ana@example.com")])
        first = await runtime.campaigns.process("camp-1")
        second = await runtime.campaigns.process("camp-1")
        return first, second

    first, second = asyncio.run(_run())

    assert first.status == "sent"
    assert second.status == "skipped"
    assert len(provider.sent) == 1


def test_concurrent_process_calls_send_once() -> None:
    runtime, provider = _runtime()

    async def _run():
        await _seed(runtime, [SegmentRecipient(email="ana@example.com")])
        return await asyncio.gather(runtime.campaigns.process("camp-1"), runtime.campaigns.process("camp-1"))

    results = asyncio.run(_run())

    assert sorted(result.status for result in results) == ["sent", "skipped"]
    assert len(provider.sent) == 1


def test_process_unknown_campaign_raises() -> None:
    runtime, _ = _runtime()

    with pytest.raises(CampaignNotFoundError):
        asyncio.run(runtime.campaigns.process("missing"))


def test_unresolvable_segment_marks_campaign_failed() -> None:
    runtime, provider = _runtime()

    async def _run():
        await runtime.repository.save_campaign(_campaign(segment_id="seg-gone"))
        with pytest.raises(SegmentResolutionError):
            await runtime.campaigns.process("camp-1")
        return await runtime.repository.fetch_campaign("camp-1")

    stored = asyncio.run(_run())

    assert stored.status == "failed"
    assert provider.sent == []



def test_batch_mechanism_failure_marks_campaign_failed_and_propagates() -> None:
    provider = StubEmailProvider()
    runtime = build_runtime(
        Settings(campaign_send_concurrency=0),
        repository=InMemoryOutboundRepository(),
        email_provider=provider,
        sleep=_no_sleep,
    )

    async def _run():
        await _seed(runtime, [SegmentRecipient(email="ana@example.com")])
        with pytest.raises(ValueError, match="concurrency must be at least 1"):
            await runtime.campaigns.process("camp-1")
        return await runtime.repository.fetch_campaign("camp-1")

    stored = asyncio.run(_run())

    assert stored.status == "failed"
    assert stored.sent_at is None
    assert provider.sent == []

def test_campaign_without_segment_fails() -> None:
    runtime, _ = _runtime()

    async def _run():
        await runtime.repository.save_campaign(_campaign(segment_id=None))
        with pytest.raises(SegmentResolutionError):
            await runtime.campaigns.process("camp-1")
        return await runtime.repository.fetch_campaign("camp-1")

    assert asyncio.run(_run()).status == "failed"


def test_text_only_campaign_gets_wrapped_html() -> None:
    runtime, provider = _runtime()

    async def _run():
        await _seed(
            runtime,
            [SegmentRecipient(email="ana@example.com", name="Ana")],
            html_content=None,
            text_content="Hello {{recipient_name}}",
        )
        await runtime.campaigns.process("camp-1")

    asyncio.run(_run())

    assert provider.sent[0].html == "<p>Hello Ana</p>"
    assert provider.sent[0].text == "Hello Ana"
    assert provider.sent[0].email_type == "newsletter"


def test_trigger_now_sends_draft_campaign() -> None:
    runtime, provider = _runtime()

    async def _run():
        await _seed(runtime, [SegmentRecipient(email="ana@example.com")])
        return await runtime.campaigns.trigger_now("camp-1")

    result = asyncio.run(_run())

    assert result.status == "sent"
    assert len(provider.sent) == 1


def test_trigger_now_skips_already_sent_campaign() -> None:
    runtime, provider = _runtime()

    async def _run():
        await _seed(runtime, [SegmentRecipient(email="ana@example.com")], status="sent")
        return await runtime.campaigns.trigger_now("camp-1")

    assert asyncio.run(_run()).status == "skipped"
    assert provider.sent == []


def test_check_scheduled_campaigns_processes_only_due_campaigns() -> None:
    runtime, provider = _runtime()
    now = datetime.now(timezone.utc)

    async def _run():
        repo = runtime.repository
        await repo.save_segment("seg-1", [SegmentRecipient(email="ana@example.com")])
        await repo.save_campaign(
            _campaign("due-1", name="Due one", status="scheduled", scheduled_at=now - timedelta(minutes=5))
        )
        await repo.save_campaign(
            _campaign(
                "due-2",
                name="Due two",
                status="scheduled",
                segment_id="seg-missing",
                scheduled_at=now - timedelta(minutes=1),
            )
        )
        await repo.save_campaign(
            _campaign("later", name="Later", status="scheduled", scheduled_at=now + timedelta(hours=1))
        )
        result = await runtime.campaigns.check_scheduled_campaigns(limit=10)
        statuses = {cid: (await repo.fetch_campaign(cid)).status for cid in ("due-1", "due-2", "later")}
        return result, statuses

    result, statuses = asyncio.run(_run())

    assert result.processed == 2
    assert result.triggered == 2
    assert result.campaigns == ["Due one", "Due two"]
    assert result.failed_campaigns == ["Due two"]
    assert statuses == {"due-1": "sent", "due-2": "failed", "later": "scheduled"}
    assert len(provider.sent) == 1


def test_check_scheduled_campaigns_with_nothing_due() -> None:
    runtime, _ = _runtime()

    result = asyncio.run(runtime.campaigns.check_scheduled_campaigns())

    assert result.processed == 0
    assert result.triggered == 0
    assert result.error is None


def test_check_scheduled_campaigns_without_waiting() -> None:
    runtime, provider = _runtime()
    now = datetime.now(timezone.utc)

    async def _run():
        await _seed(
            runtime,
            [SegmentRecipient(email="ana@example.com")],
            status="scheduled",
            scheduled_at=now - timedelta(minutes=1),
        )
        result = await runtime.campaigns.check_scheduled_campaigns(wait=False)
        for _ in range(50):
            if (await runtime.repository.fetch_campaign("camp-1")).status == "sent":
                break
            await asyncio.sleep(0.01)
        return result

    result = asyncio.run(_run())

    assert result.triggered == 1
    assert len(provider.sent) == 1
