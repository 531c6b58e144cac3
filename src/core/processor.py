"""Core mail processing pipeline.

This module is integration-agnostic. It only relies on the forwarder port,
enabling other delivery adapters without changes here.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from core.config import DecoderConfig, RetryPolicy
from core.decoder import decode_message
from core.errors import DecodeError, ForwardError
from core.models import Envelope, ForwardOutcome, ForwardRequest
from core.ports import ForwarderPort

LOGGER = logging.getLogger(__name__)


class MailProcessor:
    """Decodes a completed envelope once and fans it out per account."""

    def __init__(
        self,
        forwarder: ForwarderPort,
        decoder_config: Optional[DecoderConfig] = None,
        hard_timeout: float = RetryPolicy.hard_timeout,
    ) -> None:
        self._forwarder = forwarder
        self._decoder = decoder_config or DecoderConfig()
        self._hard_timeout = hard_timeout

    async def handle(self, envelope: Envelope) -> list[ForwardOutcome]:
        """Process one completed mail transaction.

        Never raises: decode and forward failures are logged for the
        operator, since the SMTP peer has already been told 250.
        """

        if not envelope.accounts:
            return []

        try:
            message = decode_message(envelope.data, envelope.sender, self._decoder.excerpt_chars)
        except DecodeError as exc:
            LOGGER.error(
                "Dropping message from %s to %s: %s",
                envelope.sender or "<>",
                ", ".join(envelope.recipients),
                exc,
            )
            return []
        except Exception:
            LOGGER.exception(
                "Unexpected error while decoding message from %s to %s",
                envelope.sender or "<>",
                ", ".join(envelope.recipients),
            )
            return []

        requests = [ForwardRequest(account=account, message=message) for account in envelope.accounts]
        # Each request gets its own task and error channel.
        outcomes = await asyncio.gather(*(self._forward(request) for request in requests))
        return list(outcomes)

    async def _forward(self, request: ForwardRequest) -> ForwardOutcome:
        account = request.account
        try:
            await asyncio.wait_for(
                self._forwarder.forward(account, request.message),
                timeout=self._hard_timeout,
            )
        except ForwardError as exc:
            LOGGER.error(
                "Forward to %s failed after %s attempt(s): %s",
                account.address,
                exc.attempts,
                exc,
            )
            return ForwardOutcome(address=account.address, error=exc)
        except asyncio.TimeoutError as exc:
            LOGGER.error("Forward to %s abandoned after %ss", account.address, self._hard_timeout)
            return ForwardOutcome(address=account.address, error=exc)
        except Exception as exc:
            LOGGER.exception("Unexpected error while forwarding to %s", account.address)
            return ForwardOutcome(address=account.address, error=exc)

        LOGGER.info(
            "Forwarded %r from %s to %s",
            request.message.subject,
            request.message.sender,
            account.address,
        )
        return ForwardOutcome(address=account.address)
