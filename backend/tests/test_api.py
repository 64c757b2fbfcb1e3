from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient

from foodshare_outbound import api as api_module
from foodshare_outbound.ai_client import StubAIClient
from foodshare_outbound.config import Settings
from foodshare_outbound.main import create_app
from foodshare_outbound.providers import StubEmailProvider, StubPushProvider
from foodshare_outbound.repository import (
    AutomationQueueItemRecord,
    AutomationRecord,
    AutomationStep,
    CampaignRecord,
    InMemoryOutboundRepository,
    PushDeviceRecord,
    SegmentRecipient,
)
from foodshare_outbound.runtime import build_runtime

CRON_HEADERS = {"Authorization": "Bearer cron-secret-001"}
ADMIN_HEADERS = {"Authorization": "Bearer admin-token-001"}
PREFIX = "/api/v1/outbound"


async def _no_sleep(seconds: float) -> None:
    return None


def _client(**settings_overrides) -> tuple[TestClient, StubEmailProvider, StubPushProvider]:
    email_provider = StubEmailProvider()
    push_provider = StubPushProvider()
    values = {
        "cron_secret": "cron-secret-001",
        "admin_api_token": "admin-token-001",
        "ai_client_type": "stub",
    }
    values.update(settings_overrides)
    api_module.runtime = build_runtime(
        Settings(**values),
        repository=InMemoryOutboundRepository(),
        email_provider=email_provider,
        push_provider=push_provider,
        ai_client=StubAIClient(),
        sleep=_no_sleep,
    )
    return TestClient(create_app()), email_provider, push_provider


def _seed_campaign(campaign_id: str = "camp-1", **overrides) -> None:
    values = {
        "id": campaign_id,
        "name": "Weekend surplus",
        "subject": "Food near you",
        "status": "draft",
        "segment_id": "seg-1",
        "html_content": "<p>Hi {{recipient_name}}</p>",
    }
    values.update(overrides)
    repository = api_module.runtime.repository

    async def _seed() -> None:
        await repository.save_segment(
            "seg-1",
            [SegmentRecipient(email="ana@example.com", name="Ana"), SegmentRecipient(email="ben@example.com")],
            name="Nearby",
        )
        await repository.save_campaign(CampaignRecord(**values))

    asyncio.run(_seed())


def _seed_automation(*, is_active: bool = True) -> None:
    automation = AutomationRecord(
        id="welcome",
        name="Welcome Series",
        is_active=is_active,
        steps=(
            AutomationStep(delay_minutes=0, subject="Welcome {{first_name}}", html_content="<p>Hi</p>"),
            AutomationStep(delay_minutes=2880, subject="Finish your profile", html_content="<p>Profile</p>"),
        ),
    )
    asyncio.run(api_module.runtime.repository.save_automation(automation))


def test_cron_routes_require_bearer_secret() -> None:
    client, _, _ = _client()

    missing = client.post(f"{PREFIX}/cron/campaigns")
    wrong = client.post(f"{PREFIX}/cron/campaigns", headers={"Authorization": "Bearer nope"})
    admin_token = client.post(f"{PREFIX}/cron/automations", headers=ADMIN_HEADERS)

    assert missing.status_code == 401
    assert missing.json()["detail"] == "cron secret required"
    assert wrong.status_code == 401
    assert wrong.json()["detail"] == "invalid credentials"
    assert admin_token.status_code == 401


def test_cron_routes_fail_closed_without_configured_secret() -> None:
    client, _, _ = _client(cron_secret="")

    response = client.post(f"{PREFIX}/cron/deferred-notifications", headers=CRON_HEADERS)

    assert response.status_code == 401


def test_admin_routes_require_admin_token() -> None:
    client, _, _ = _client()

    response = client.post(f"{PREFIX}/campaigns/camp-1/process", headers=CRON_HEADERS)

    assert response.status_code == 401
    assert response.json()["detail"] == "invalid credentials"


def test_cron_sweeps_return_empty_results_when_idle() -> None:
    client, _, _ = _client()

    campaigns = client.post(f"{PREFIX}/cron/campaigns", headers=CRON_HEADERS)
    automations = client.post(f"{PREFIX}/cron/automations", headers=CRON_HEADERS)
    deferred = client.post(f"{PREFIX}/cron/deferred-notifications", headers=CRON_HEADERS)

    assert campaigns.status_code == 200
    assert campaigns.json()["processed"] == 0
    assert campaigns.json()["triggered"] == 0
    assert automations.json() == {"processed": 0, "sent": 0, "failed": 0, "skipped": 0, "errors": []}
    assert deferred.json() == {"processed": 0, "sent": 0, "failed": 0, "error": None}


def test_cron_campaign_sweep_sends_due_campaign() -> None:
    client, email_provider, _ = _client()
    _seed_campaign(
        status="scheduled",
        scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )

    response = client.post(f"{PREFIX}/cron/campaigns", headers=CRON_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["triggered"] == 1
    assert body["campaigns"] == ["Weekend surplus"]
    assert len(email_provider.sent) == 2


def test_process_campaign_sends_once() -> None:
    client, email_provider, _ = _client()
    _seed_campaign()

    first = client.post(f"{PREFIX}/campaigns/camp-1/process", headers=ADMIN_HEADERS)
    second = client.post(f"{PREFIX}/campaigns/camp-1/process", headers=ADMIN_HEADERS)

    assert first.status_code == 200
    assert first.json() == {
        "campaign_id": "camp-1",
        "status": "sent",
        "total_recipients": 2,
        "sent": 2,
        "failed": 0,
    }
    assert second.status_code == 200
    assert second.json()["status"] == "skipped"
    assert len(email_provider.sent) == 2


def test_process_unknown_campaign_returns_404() -> None:
    client, _, _ = _client()

    response = client.post(f"{PREFIX}/campaigns/missing/process", headers=ADMIN_HEADERS)
    send_now = client.post(f"{PREFIX}/campaigns/missing/send-now", headers=ADMIN_HEADERS)

    assert response.status_code == 404
    assert response.json()["detail"] == "campaign not found: missing"
    assert send_now.status_code == 404


def test_process_campaign_with_unknown_segment_returns_422() -> None:
    client, _, _ = _client()
    _seed_campaign(segment_id="seg-unknown")

    response = client.post(f"{PREFIX}/campaigns/camp-1/process", headers=ADMIN_HEADERS)

    assert response.status_code == 422


def test_send_now_triggers_draft_campaign() -> None:
    client, email_provider, _ = _client()
    _seed_campaign()

    response = client.post(f"{PREFIX}/campaigns/camp-1/send-now", headers=ADMIN_HEADERS)

    assert response.status_code == 200
    assert response.json()["status"] == "sent"
    assert len(email_provider.sent) == 2


def test_enroll_creates_queue_rows_and_rejects_duplicates() -> None:
    client, _, _ = _client()
    _seed_automation()
    payload = {"profile_id": "user-1", "email": "ana@example.com", "trigger_data": {"first_name": "Ana"}}

    created = client.post(f"{PREFIX}/automations/welcome/enroll", json=payload, headers=ADMIN_HEADERS)
    duplicate = client.post(f"{PREFIX}/automations/welcome/enroll", json=payload, headers=ADMIN_HEADERS)

    assert created.status_code == 201
    assert created.json() == {"automation_id": "welcome", "automation_name": "Welcome Series", "steps_queued": 2}
    assert duplicate.status_code == 409


def test_enroll_unknown_or_inactive_automation() -> None:
    client, _, _ = _client()
    payload = {"profile_id": "user-1", "email": "ana@example.com"}

    missing = client.post(f"{PREFIX}/automations/welcome/enroll", json=payload, headers=ADMIN_HEADERS)
    _seed_automation(is_active=False)
    inactive = client.post(f"{PREFIX}/automations/welcome/enroll", json=payload, headers=ADMIN_HEADERS)

    assert missing.status_code == 404
    assert missing.json()["detail"] == "automation not found: welcome"
    assert inactive.status_code == 409


def test_enroll_validates_payload() -> None:
    client, _, _ = _client()
    _seed_automation()

    response = client.post(
        f"{PREFIX}/automations/welcome/enroll",
        json={"profile_id": "", "email": "ana@example.com"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 422


def test_cron_automation_sweep_sends_first_step() -> None:
    client, email_provider, _ = _client()
    _seed_automation()
    client.post(
        f"{PREFIX}/automations/welcome/enroll",
        json={"profile_id": "user-1", "email": "ana@example.com", "trigger_data": {"first_name": "Ana"}},
        headers=ADMIN_HEADERS,
    )

    response = client.post(f"{PREFIX}/cron/automations", headers=CRON_HEADERS)

    assert response.status_code == 200
    assert response.json()["processed"] == 1
    assert response.json()["sent"] == 1
    assert email_provider.sent[0].subject == "Welcome Ana"


def test_retry_queue_item() -> None:
    client, _, _ = _client()
    _seed_automation()
    failed = AutomationQueueItemRecord(
        id="item-1",
        automation_id="welcome",
        profile_id="user-1",
        email="ana@example.com",
        step_index=0,
        scheduled_at=datetime.now(timezone.utc),
        status="failed",
        error_message="provider down",
    )
    asyncio.run(api_module.runtime.repository.insert_automation_queue_rows([failed]))

    missing = client.post(f"{PREFIX}/automation-queue/item-404/retry", headers=ADMIN_HEADERS)
    retried = client.post(f"{PREFIX}/automation-queue/item-1/retry", headers=ADMIN_HEADERS)
    again = client.post(f"{PREFIX}/automation-queue/item-1/retry", headers=ADMIN_HEADERS)

    assert missing.status_code == 404
    assert missing.json()["detail"] == "queue item not found: item-404"
    assert retried.status_code == 200
    assert retried.json() == {"item_id": "item-1", "status": "pending"}
    assert again.status_code == 409


def test_deferred_notification_is_flushed_when_due() -> None:
    client, _, push_provider = _client()
    asyncio.run(
        api_module.runtime.repository.save_push_device(
            PushDeviceRecord(user_id="user-1", token="tok-1", platform="ios")
        )
    )
    resume_at = datetime.now(timezone.utc) - timedelta(minutes=1)

    queued = client.post(
        f"{PREFIX}/notifications/deferred",
        json={"user_id": "user-1", "title": "New listing", "body": "Bread nearby", "resume_at": resume_at.isoformat()},
        headers=ADMIN_HEADERS,
    )
    flushed = client.post(f"{PREFIX}/cron/deferred-notifications", headers=CRON_HEADERS)

    assert queued.status_code == 201
    assert queued.json()["user_id"] == "user-1"
    assert flushed.json() == {"processed": 1, "sent": 1, "failed": 0, "error": None}
    assert len(push_provider.sent) == 1


def test_broadcast_reports_per_user_outcome() -> None:
    client, _, _ = _client()
    asyncio.run(
        api_module.runtime.repository.save_push_device(
            PushDeviceRecord(user_id="user-1", token="tok-1", platform="android")
        )
    )

    response = client.post(
        f"{PREFIX}/notifications/broadcast",
        json={"user_ids": ["user-1", "user-2"], "title": "Community fridge", "body": "Restocked"},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    body = response.json()
    assert body["total_users"] == 2
    assert body["sent"] == 1
    assert body["failed"] == 0
    assert body["errors"] == ["No active device tokens found"]


def test_insight_answers_are_cached() -> None:
    client, _, _ = _client()

    first = client.post(f"{PREFIX}/insights", json={"query": "How many listings today?"}, headers=ADMIN_HEADERS)
    second = client.post(f"{PREFIX}/insights", json={"query": "How many listings today?"}, headers=ADMIN_HEADERS)

    assert first.status_code == 200
    assert first.json()["text"].startswith("Stub insight")
    assert first.json()["model"] == "gpt-4o-mini"
    assert first.json()["cached"] is False
    assert second.json()["cached"] is True


def test_suggestions_and_warm() -> None:
    client, _, _ = _client()

    suggestions = client.get(f"{PREFIX}/insights/suggestions", headers=ADMIN_HEADERS)
    warmed = client.post(f"{PREFIX}/insights/warm", headers=ADMIN_HEADERS)

    assert suggestions.status_code == 200
    assert len(suggestions.json()["questions"]) == 5
    assert warmed.json() == {"cached": 5}


def test_limiter_status_and_reset() -> None:
    client, _, _ = _client()
    client.post(f"{PREFIX}/insights", json={"query": "Top categories?"}, headers=ADMIN_HEADERS)

    status_response = client.get(f"{PREFIX}/insights/limiter", headers=ADMIN_HEADERS)
    reset_response = client.post(f"{PREFIX}/insights/limiter/reset", headers=ADMIN_HEADERS)

    assert status_response.status_code == 200
    assert status_response.json()["dependency"] == "ai"
    assert status_response.json()["circuit_state"] == "CLOSED"
    assert status_response.json()["last_call_time"] is not None
    assert reset_response.status_code == 200
    assert reset_response.json()["failures"] == 0
    assert reset_response.json()["queue_length"] == 0
