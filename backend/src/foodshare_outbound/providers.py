from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

ProviderResultStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class EmailSendRequest:
    to: str
    subject: str
    html: str
    text: str | None = None
    from_address: str | None = None
    email_type: str = "transactional"


@dataclass(frozen=True)
class PushSendRequest:
    device_token: str
    platform: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderSendResult:
    status: ProviderResultStatus
    attempted_at: datetime
    provider: str
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class EmailProvider(Protocol):
    name: str

    def send_email(self, payload: EmailSendRequest) -> ProviderSendResult: ...


class PushProvider(Protocol):
    name: str

    def send_push(self, payload: PushSendRequest) -> ProviderSendResult: ...


class StubEmailProvider:
    name = "stub"

    def __init__(self) -> None:
        self.sent: list[EmailSendRequest] = []

    def send_email(self, payload: EmailSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in payload.to.lower():
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                provider=self.name,
                error_code="stub_delivery_failed",
                error_message=f"Stub provider forced failure (recipient: {mask_email(payload.to)})",
            )
        self.sent.append(payload)
        message_id = f"stub-email-{len(self.sent)}-{int(attempted_at.timestamp())}"
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider=self.name,
            provider_message_id=message_id,
        )


class StubPushProvider:
    name = "stub"

    def __init__(self) -> None:
        self.sent: list[PushSendRequest] = []

    def send_push(self, payload: PushSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        if "fail" in payload.device_token.lower():
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                provider=self.name,
                error_code="stub_delivery_failed",
                error_message="Stub provider forced failure for device token",
            )
        self.sent.append(payload)
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider=self.name,
            provider_message_id=f"stub-push-{len(self.sent)}",
        )


class _ProviderRequestError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _post_json(url: str, api_key: str, body: dict[str, Any], timeout_seconds: int) -> dict[str, Any]:
    data = json.dumps(body).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raise _ProviderRequestError(
            error_code=f"http_{exc.code}",
            message=f"HTTP {exc.code}: {exc.reason}",
        ) from exc
    except urllib.error.URLError as exc:
        raise _ProviderRequestError(
            error_code="connection_error",
            message=f"Connection error: {exc.reason}",
        ) from exc
    except (socket.timeout, TimeoutError) as exc:
        raise _ProviderRequestError(
            error_code="timeout",
            message=f"Request timed out: {exc}",
        ) from exc
    if not raw.strip():
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


class HttpEmailProvider:
    """Delivers email through a JSON HTTP API (``POST {base}/v1/emails``)."""

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        from_address: str,
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._from_address = from_address
        self._timeout_seconds = timeout_seconds

    def send_email(self, payload: EmailSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        body: dict[str, Any] = {
            "from": payload.from_address or self._from_address,
            "to": [payload.to],
            "subject": payload.subject,
            "html": payload.html,
            "tags": [{"name": "email_type", "value": payload.email_type}],
        }
        if payload.text:
            body["text"] = payload.text

        try:
            response_data = _post_json(f"{self._base_url}/v1/emails", self._api_key, body, self._timeout_seconds)
        except _ProviderRequestError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                provider=self.name,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {mask_email(payload.to)})",
            )
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider=self.name,
            provider_message_id=response_data.get("id"),
        )


class HttpPushProvider:
    """Delivers push notifications through the send-push-notification function endpoint."""

    name = "http"

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 30) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def send_push(self, payload: PushSendRequest) -> ProviderSendResult:
        attempted_at = datetime.now(timezone.utc)
        body = {
            "token": payload.device_token,
            "platform": payload.platform,
            "notification": {"title": payload.title, "body": payload.body},
            "data": payload.data,
        }
        try:
            response_data = _post_json(
                f"{self._base_url}/functions/v1/send-push-notification",
                self._api_key,
                body,
                self._timeout_seconds,
            )
        except _ProviderRequestError as exc:
            return ProviderSendResult(
                status="failed",
                attempted_at=attempted_at,
                provider=self.name,
                error_code=exc.error_code,
                error_message=f"{exc.message} (device: {mask_token(payload.device_token)})",
            )
        return ProviderSendResult(
            status="sent",
            attempted_at=attempted_at,
            provider=self.name,
            provider_message_id=response_data.get("message_id"),
        )


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    return mask_token(normalized)


def mask_token(value: str) -> str:
    normalized = value.strip()
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


def create_email_provider(settings) -> EmailProvider:
    if settings.email_sender_type == "http":
        return HttpEmailProvider(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            from_address=settings.email_from_address,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailProvider()


def create_push_provider(settings) -> PushProvider:
    if settings.push_sender_type == "http":
        return HttpPushProvider(
            base_url=settings.push_api_base_url,
            api_key=settings.push_api_key,
            timeout_seconds=settings.push_timeout_seconds,
        )
    return StubPushProvider()
