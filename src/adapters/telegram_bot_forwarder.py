"""Telegram Bot API forwarding adapter.

Each account carries its own bot token and chat id, so a single adapter
instance serves every account through one shared HTTP connection pool.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from adapters.notification_formatting import format_notification
from core.config import RetryPolicy
from core.errors import RateLimited, Rejected, Unreachable
from core.models import Account, DecodedMessage

LOGGER = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _retry_after(response: httpx.Response, body: dict[str, Any]) -> Optional[float]:
    """Read the server's retry hint: Bot API parameters first, then the header."""

    parameters = body.get("parameters") or {}
    for raw in (parameters.get("retry_after"), response.headers.get("Retry-After")):
        if raw is None:
            continue
        try:
            return max(float(raw), 0.0)
        except (TypeError, ValueError):
            continue
    return None


class TelegramBotForwarder:
    """Forwarder adapter that sends messages via the Telegram Bot API."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        client: Optional[httpx.AsyncClient] = None,
        api_base: str = API_BASE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._client = client or httpx.AsyncClient(timeout=self._policy.request_timeout)
        self._api_base = api_base.rstrip("/")
        self._sleep = sleep

    def _endpoint(self, bot_token: str) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"{self._api_base}/bot{bot_token}/sendMessage"

    async def aclose(self) -> None:
        await self._client.aclose()

    async def forward(self, account: Account, message: DecodedMessage) -> None:
        """Send the formatted notification, retrying transient failures.

        Raises RateLimited or Unreachable once max_attempts requests have
        failed, and Rejected immediately on a client error.
        """

        payload = {
            "chat_id": account.chat_id,
            "text": format_notification(message),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        max_attempts = max(self._policy.max_attempts, 1)
        attempt = 0
        delay = self._policy.base_delay

        while True:
            attempt += 1
            try:
                response = await self._client.post(self._endpoint(account.bot_token), json=payload)
            except httpx.TransportError as exc:
                reason = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
                if attempt >= max_attempts:
                    raise Unreachable(f"Bot API unreachable ({reason})", attempt) from exc
                LOGGER.warning(
                    "Bot API request for %s failed (%s), retry %s/%s in %.1fs",
                    account.address,
                    reason,
                    attempt,
                    max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self._policy.max_delay)
                continue

            body = _json_body(response)
            if response.is_success and body.get("ok", True):
                return

            status = response.status_code
            description = body.get("description") or response.reason_phrase

            if status == 429:
                hint = _retry_after(response, body)
                if attempt >= max_attempts:
                    raise RateLimited(f"Bot API rate limit: {description}", attempt, hint)
                if hint is not None and hint > self._policy.max_delay:
                    # Waiting less than asked would only be throttled again.
                    raise RateLimited(
                        f"Bot API rate limit: {description} (retry after {hint:g}s)",
                        attempt,
                        hint,
                    )
                wait = hint if hint is not None else delay
                LOGGER.warning(
                    "Bot API rate limited %s, retry %s/%s in %.1fs",
                    account.address,
                    attempt,
                    max_attempts - 1,
                    wait,
                )
                await self._sleep(wait)
                if hint is None:
                    delay = min(delay * 2, self._policy.max_delay)
                continue

            if status >= 500:
                if attempt >= max_attempts:
                    raise Unreachable(f"Bot API error {status}: {description}", attempt)
                LOGGER.warning(
                    "Bot API error %s for %s, retry %s/%s in %.1fs",
                    status,
                    account.address,
                    attempt,
                    max_attempts - 1,
                    delay,
                )
                await self._sleep(delay)
                delay = min(delay * 2, self._policy.max_delay)
                continue

            raise Rejected(f"Bot API rejected message ({status}): {description}", attempt, status)
