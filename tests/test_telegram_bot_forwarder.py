from __future__ import annotations

import asyncio
import json
from typing import Callable

import httpx
import pytest

from adapters.telegram_bot_forwarder import TelegramBotForwarder
from core.config import RetryPolicy
from core.errors import RateLimited, Rejected, Unreachable
from core.models import Account, AttachmentSummary, DecodedMessage

ACCOUNT = Account(address="alice@example.com", bot_token="123:secret", chat_id="123")
MESSAGE = DecodedMessage(
    sender="bob@other.com",
    subject="Hello",
    excerpt="Test message",
    attachments=(AttachmentSummary(filename="a.pdf", content_type="application/pdf", size=2048),),
)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _forwarder(
    handler: Callable[[httpx.Request], httpx.Response],
    policy: RetryPolicy | None = None,
) -> tuple[TelegramBotForwarder, list[httpx.Request], SleepRecorder]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    sleep = SleepRecorder()
    forwarder = TelegramBotForwarder(
        policy=policy or RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=8.0),
        client=client,
        sleep=sleep,
    )
    return forwarder, requests, sleep


def test_success_sends_one_request() -> None:
    forwarder, requests, sleep = _forwarder(lambda request: httpx.Response(200, json={"ok": True, "result": {}}))

    asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 1
    request = requests[0]
    assert request.url == "https://api.telegram.org/bot123:secret/sendMessage"
    payload = json.loads(request.content)
    assert payload["chat_id"] == "123"
    assert payload["parse_mode"] == "HTML"
    assert "bob@other.com" in payload["text"]
    assert "<b>Hello</b>" in payload["text"]
    assert "Test message" in payload["text"]
    assert "a.pdf (2.0 KB)" in payload["text"]
    assert sleep.delays == []


def test_rate_limit_honours_retry_after_then_succeeds() -> None:
    responses = iter(
        [
            httpx.Response(429, json={"ok": False, "description": "Too Many Requests", "parameters": {"retry_after": 3}}),
            httpx.Response(200, json={"ok": True}),
        ]
    )
    forwarder, requests, sleep = _forwarder(lambda request: next(responses))

    asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 2
    assert sleep.delays == [3.0]


def test_rate_limit_gives_up_at_ceiling() -> None:
    forwarder, requests, sleep = _forwarder(
        lambda request: httpx.Response(429, headers={"Retry-After": "2"}, json={"ok": False})
    )

    with pytest.raises(RateLimited) as excinfo:
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 3
    assert excinfo.value.attempts == 3
    assert excinfo.value.retry_after == 2.0
    assert sleep.delays == [2.0, 2.0]


def test_rate_limit_without_hint_uses_backoff() -> None:
    forwarder, _, sleep = _forwarder(lambda request: httpx.Response(429, json={"ok": False}))

    with pytest.raises(RateLimited):
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert sleep.delays == [1.0, 2.0]


def test_rate_limit_hint_beyond_max_delay_fails_fast() -> None:
    forwarder, requests, sleep = _forwarder(
        lambda request: httpx.Response(429, json={"ok": False, "parameters": {"retry_after": 60}})
    )

    with pytest.raises(RateLimited) as excinfo:
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 1
    assert excinfo.value.attempts == 1
    assert excinfo.value.retry_after == 60.0
    assert sleep.delays == []


def test_rate_limit_waits_exactly_the_signalled_duration() -> None:
    responses = iter(
        [
            httpx.Response(429, json={"ok": False, "parameters": {"retry_after": 8}}),
            httpx.Response(200, json={"ok": True}),
        ]
    )
    forwarder, _, sleep = _forwarder(lambda request: next(responses))

    asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert sleep.delays == [8.0]


def test_rejected_credential_is_never_retried() -> None:
    forwarder, requests, sleep = _forwarder(
        lambda request: httpx.Response(401, json={"ok": False, "error_code": 401, "description": "Unauthorized"})
    )

    with pytest.raises(Rejected) as excinfo:
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 1
    assert sleep.delays == []
    assert excinfo.value.status_code == 401
    assert "Unauthorized" in str(excinfo.value)
    assert "secret" not in str(excinfo.value)


def test_unknown_chat_is_rejected() -> None:
    forwarder, requests, _ = _forwarder(
        lambda request: httpx.Response(400, json={"ok": False, "description": "Bad Request: chat not found"})
    )

    with pytest.raises(Rejected):
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))
    assert len(requests) == 1


def test_transport_errors_retry_with_exponential_backoff() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=4.0)
    forwarder, requests, sleep = _forwarder(handler, policy)

    with pytest.raises(Unreachable) as excinfo:
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 5
    assert excinfo.value.attempts == 5
    assert sleep.delays == [1.0, 2.0, 4.0, 4.0]


def test_transient_failure_then_success() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        if calls["count"] == 2:
            return httpx.Response(502, text="Bad Gateway")
        return httpx.Response(200, json={"ok": True})

    forwarder, requests, sleep = _forwarder(handler)

    asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))

    assert len(requests) == 3
    assert sleep.delays == [1.0, 2.0]


def test_ok_false_on_success_status_is_rejected() -> None:
    forwarder, _, _ = _forwarder(lambda request: httpx.Response(200, json={"ok": False, "description": "odd"}))

    with pytest.raises(Rejected):
        asyncio.run(forwarder.forward(ACCOUNT, MESSAGE))
