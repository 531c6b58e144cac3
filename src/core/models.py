"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class Account:
    """Forwarding target for one recipient address."""

    address: str
    bot_token: str = field(repr=False)
    chat_id: str


@dataclass(frozen=True)
class Envelope:
    """Everything a completed mail transaction hands to the processor."""

    sender: str
    recipients: tuple[str, ...]
    accounts: tuple[Account, ...]
    data: bytes
    peer: Optional[str] = None


@dataclass(frozen=True)
class AttachmentSummary:
    """Name and size of a non-body MIME part; the content is not kept."""

    filename: str
    content_type: str
    size: int


@dataclass(frozen=True)
class DecodedMessage:
    """Display-ready extraction of a raw message."""

    sender: str
    subject: str
    excerpt: str
    attachments: tuple[AttachmentSummary, ...] = ()


@dataclass(frozen=True)
class ForwardRequest:
    """One unit of forwarding work: a decoded message for one account."""

    account: Account
    message: DecodedMessage


@dataclass(frozen=True)
class ForwardOutcome:
    """Result of one forward; error is None on success."""

    address: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None
