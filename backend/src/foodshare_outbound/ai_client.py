from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import NetworkError, ProviderHTTPError, UpstreamTimeoutError

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class AICompletion:
    text: str
    model: str
    total_tokens: int = 0


class AIClient(Protocol):
    def complete(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> AICompletion: ...


class StubAIClient:
    """Deterministic client for local runs and tests."""

    def __init__(self, reply: str = "Stub insight: platform metrics look healthy.") -> None:
        self._reply = reply
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> AICompletion:
        self.calls.append({"model": model, "messages": messages, "max_tokens": max_tokens})
        prompt_words = sum(len(message.get("content", "").split()) for message in messages)
        return AICompletion(text=self._reply, model=model, total_tokens=prompt_words + len(self._reply.split()))


def _parse_retry_after(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return seconds if seconds > 0 else None


class HttpAIClient:
    """OpenAI-compatible chat completions client (``POST {base}/chat/completions``)."""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: float = 60) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def complete(
        self,
        *,
        model: str,
        messages: list[ChatMessage],
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> AICompletion:
        body = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        request = urllib.request.Request(
            f"{self._base_url}/chat/completions",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise ProviderHTTPError(
                exc.code,
                _error_detail(exc),
                provider="ai",
                retry_after=_parse_retry_after(exc.headers.get("Retry-After") if exc.headers else None),
            ) from exc
        except urllib.error.URLError as exc:
            raise NetworkError(f"network error contacting AI provider: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise UpstreamTimeoutError(f"AI provider request timed out: {exc}") from exc

        choices = payload.get("choices") or []
        text = ""
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        usage = payload.get("usage") or {}
        return AICompletion(
            text=text,
            model=payload.get("model") or model,
            total_tokens=int(usage.get("total_tokens") or 0),
        )


def _error_detail(exc: urllib.error.HTTPError) -> str:
    try:
        raw = exc.read().decode("utf-8")
    except (OSError, ValueError):
        return str(exc.reason)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return raw.strip()[:200] or str(exc.reason)
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return str(exc.reason)
