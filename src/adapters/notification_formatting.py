"""Shared notification formatting helpers.

Keeping formatting here keeps the Bot API adapter focused on delivery and
makes the message layout easy to adjust and test.
"""

from __future__ import annotations

import html

from core.decoder import ELLIPSIS, truncate
from core.models import AttachmentSummary, DecodedMessage

# Bot API limit for sendMessage text, counted after entity parsing.
TELEGRAM_TEXT_LIMIT = 4096
MAX_LISTED_ATTACHMENTS = 10
MAX_HEADER_CHARS = 256

ENVELOPE_ICON = "\U0001F4E8"
ATTACHMENT_ICON = "\U0001F4CE"


def format_size(size: int) -> str:
    """Return a short human-readable byte size."""

    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def _attachment_lines(attachments: tuple[AttachmentSummary, ...]) -> list[str]:
    lines = [
        f"{ATTACHMENT_ICON} {attachment.filename} ({format_size(attachment.size)})"
        for attachment in attachments[:MAX_LISTED_ATTACHMENTS]
    ]
    hidden = len(attachments) - MAX_LISTED_ATTACHMENTS
    if hidden > 0:
        lines.append(f"{ATTACHMENT_ICON} … and {hidden} more")
    return lines


def format_notification(message: DecodedMessage, limit: int = TELEGRAM_TEXT_LIMIT) -> str:
    """Render a decoded message as Telegram HTML.

    Layout: sender line, bold subject, excerpt, then one line per
    attachment. The excerpt is shortened so the visible text fits limit.
    """

    sender = truncate(message.sender, MAX_HEADER_CHARS)
    subject = truncate(message.subject, MAX_HEADER_CHARS)
    attachments = _attachment_lines(message.attachments)

    head = f"{ENVELOPE_ICON} {sender}\n{subject}\n"
    tail = "\n\n" + "\n".join(attachments) if attachments else ""
    budget = max(limit - len(head) - len(tail) - len(ELLIPSIS), 0)
    excerpt = truncate(message.excerpt, budget) if budget else ""

    parts = [
        f"{ENVELOPE_ICON} {html.escape(sender)}",
        f"<b>{html.escape(subject)}</b>",
        html.escape(excerpt),
    ]
    text = "\n".join(parts)
    if attachments:
        text += "\n\n" + "\n".join(html.escape(line) for line in attachments)
    return text
