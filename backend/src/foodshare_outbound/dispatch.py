"""Single-message email/push dispatch and bounded-concurrency batch fan-out.

Provider calls are blocking (``urllib``), so each attempt runs in a worker
thread and is governed by a per-provider ``RateLimitedExecutor``. Dispatchers
turn every outbound failure into a failed result instead of raising, so batch
callers only ever see aggregate counts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from .errors import OutboundError, ProviderSendError
from .models import BroadcastResult
from .providers import (
    EmailProvider,
    EmailSendRequest,
    ProviderSendResult,
    PushProvider,
    PushSendRequest,
    mask_email,
    mask_token,
)
from .rate_limiter import RateLimitedExecutor
from .repository import OutboundRepository, PushDeviceRecord

logger = logging.getLogger(__name__)

M = TypeVar("M")

MAX_REPORTED_ERRORS = 10


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    html: str
    text: str | None = None
    email_type: str = "transactional"


@dataclass(frozen=True)
class PushMessage:
    user_id: str
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    device_token: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message_id: str | None = None
    provider: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class PushResult:
    success: bool
    sent: int
    failed: int
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class BatchResult:
    total: int
    successful: int
    failed: int
    results: tuple[DispatchResult, ...] = ()


def _raise_for_failure(result: ProviderSendResult, default_message: str) -> ProviderSendResult:
    if result.status != "sent":
        raise ProviderSendError(result.error_code, result.error_message or default_message)
    return result


class EmailDispatcher:
    def __init__(self, *, provider: EmailProvider, executor: RateLimitedExecutor) -> None:
        self._provider = provider
        self._executor = executor

    @property
    def executor(self) -> RateLimitedExecutor:
        return self._executor

    async def send(self, message: EmailMessage) -> DispatchResult:
        request = EmailSendRequest(
            to=message.to,
            subject=message.subject,
            html=message.html,
            text=message.text,
            email_type=message.email_type,
        )

        async def _attempt() -> ProviderSendResult:
            result = await asyncio.to_thread(self._provider.send_email, request)
            return _raise_for_failure(result, "email provider reported a failed send")

        try:
            result = await self._executor.execute(_attempt)
        except OutboundError as exc:
            logger.warning("email dispatch failed (recipient: %s): %s", mask_email(message.to), exc)
            return DispatchResult(success=False, provider=self._provider.name, error=str(exc))
        return DispatchResult(
            success=True,
            message_id=result.provider_message_id,
            provider=result.provider,
        )


class PushDispatcher:
    def __init__(
        self,
        *,
        provider: PushProvider,
        executor: RateLimitedExecutor,
        repository: OutboundRepository,
    ) -> None:
        self._provider = provider
        self._executor = executor
        self._repository = repository

    @property
    def executor(self) -> RateLimitedExecutor:
        return self._executor

    async def send(self, message: PushMessage) -> PushResult:
        devices = await self._repository.list_push_devices(message.user_id)
        if message.device_token:
            devices = [device for device in devices if device.token == message.device_token]
        if not devices:
            return PushResult(success=False, sent=0, failed=0, errors=("No active device tokens found",))

        outcomes = await asyncio.gather(*(self._send_to_device(device, message) for device in devices))
        errors = tuple(outcome for outcome in outcomes if outcome is not None)
        sent = len(outcomes) - len(errors)
        return PushResult(success=sent > 0, sent=sent, failed=len(errors), errors=errors)

    async def _send_to_device(self, device: PushDeviceRecord, message: PushMessage) -> str | None:
        request = PushSendRequest(
            device_token=device.token,
            platform=device.platform,
            title=message.title,
            body=message.body,
            data=message.data,
        )

        async def _attempt() -> ProviderSendResult:
            result = await asyncio.to_thread(self._provider.send_push, request)
            return _raise_for_failure(result, "push provider reported a failed send")

        try:
            await self._executor.execute(_attempt)
        except OutboundError as exc:
            logger.warning(
                "push dispatch failed (user: %s, device: %s): %s",
                message.user_id,
                mask_token(device.token),
                exc,
            )
            return str(exc)
        return None


async def batch_dispatch(
    messages: Sequence[M],
    send: Callable[[M], Awaitable[DispatchResult]],
    *,
    concurrency: int,
) -> BatchResult:
    """Send ``messages`` in chunks of ``concurrency``.

    Each chunk settles completely before the next one starts. A message whose
    ``send`` raises is folded into the result as a failure.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    results: list[DispatchResult] = []
    for start in range(0, len(messages), concurrency):
        chunk = messages[start : start + concurrency]
        outcomes = await asyncio.gather(*(send(message) for message in chunk), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                results.append(DispatchResult(success=False, error=str(outcome) or type(outcome).__name__))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

    successful = sum(1 for result in results if result.success)
    return BatchResult(
        total=len(results),
        successful=successful,
        failed=len(results) - successful,
        results=tuple(results),
    )


async def broadcast_push(
    dispatcher: PushDispatcher,
    user_ids: Sequence[str],
    *,
    title: str,
    body: str,
    data: dict[str, Any] | None = None,
    chunk_size: int = 10,
) -> BroadcastResult:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")

    total_sent = 0
    total_failed = 0
    errors: list[str] = []
    for start in range(0, len(user_ids), chunk_size):
        chunk = user_ids[start : start + chunk_size]
        outcomes = await asyncio.gather(
            *(
                dispatcher.send(PushMessage(user_id=user_id, title=title, body=body, data=dict(data or {})))
                for user_id in chunk
            ),
            return_exceptions=True,
        )
        for outcome in outcomes:
            if isinstance(outcome, Exception):
                total_failed += 1
                errors.append(str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                total_sent += outcome.sent
                total_failed += outcome.failed
                errors.extend(outcome.errors)

    logger.info("broadcast push finished users=%d sent=%d failed=%d", len(user_ids), total_sent, total_failed)
    return BroadcastResult(
        total_users=len(user_ids),
        sent=total_sent,
        failed=total_failed,
        errors=errors[:MAX_REPORTED_ERRORS],
    )
