from __future__ import annotations


class OutboundError(RuntimeError):
    """Base class for failures raised by the outbound reliability layer."""


class RateLimitError(OutboundError):
    pass


class UpstreamTimeoutError(OutboundError):
    pass


class NetworkError(OutboundError):
    pass


class PermanentError(OutboundError):
    """Raised for 400/401/403-class failures that are never retried."""


class ServiceUnavailableError(OutboundError):
    """Raised without attempting a call while the circuit breaker is open."""

    def __init__(self, dependency: str, wait_ms: int, reason: str | None = None) -> None:
        self.dependency = dependency
        self.wait_ms = max(0, int(wait_ms))
        self.reason = reason or "Circuit breaker is OPEN due to repeated failures"
        super().__init__(
            f"{dependency} service temporarily unavailable. {self.reason}. "
            f"Please try again in {self.wait_seconds} seconds."
        )

    @property
    def wait_seconds(self) -> int:
        return -(-self.wait_ms // 1000)


class RetriesExhaustedError(OutboundError):
    def __init__(self, dependency: str, attempts: int, last_error: BaseException | None) -> None:
        self.dependency = dependency
        self.attempts = attempts
        self.last_error = last_error
        last_message = str(last_error) if last_error is not None else "Unknown error"
        super().__init__(
            f"{dependency} request failed after {attempts} attempts. {last_message}. Please try again later."
        )


class QueueTimeoutError(OutboundError):
    pass


class ProviderSendError(OutboundError):
    """Raised inside a dispatch attempt when a provider reports a failed send."""

    def __init__(self, error_code: str | None, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class ProviderHTTPError(OutboundError):
    def __init__(
        self,
        status_code: int,
        message: str,
        *,
        provider: str,
        retry_after: int | None = None,
    ) -> None:
        self.status_code = status_code
        self.provider = provider
        self.retry_after = retry_after
        parts = [f"{provider} returned HTTP {status_code}: {message}"]
        if retry_after:
            parts.append(f"(retry-after: {retry_after})")
        super().__init__(" ".join(parts))


class SegmentResolutionError(OutboundError):
    pass


class CampaignNotFoundError(KeyError):
    pass


class AutomationNotFoundError(KeyError):
    pass


class AutomationQueueItemNotFoundError(KeyError):
    pass


class AutomationInactiveError(ValueError):
    pass


class AlreadyEnrolledError(ValueError):
    pass


class QueueItemNotRetryableError(ValueError):
    """Only ``failed`` automation queue items can be returned to ``pending``."""
