"""Message decoding (core domain).

Turns the raw bytes received in the DATA phase into a DecodedMessage: a
sender, a subject, a bounded plain-text excerpt and a summary of every
other MIME part. Only a payload without any header/body separator is
treated as undecodable; everything else degrades to placeholders.
"""

from __future__ import annotations

import email
import logging
import re
from email.errors import HeaderParseError
from email.header import Header, decode_header
from email.message import Message
from typing import Optional

from bs4 import BeautifulSoup, NavigableString

from core.errors import DecodeError
from core.models import AttachmentSummary, DecodedMessage

LOGGER = logging.getLogger(__name__)

NO_SUBJECT = "no subject"
UNKNOWN_SENDER = "unknown sender"
UNNAMED_ATTACHMENT = "unnamed"
ELLIPSIS = "…"

_HEADER_BODY_SEPARATOR = re.compile(rb"(?:\r?\n){2}")
_BLOCK_TAGS = [
    "p", "div", "tr", "li", "ul", "ol", "table", "blockquote", "pre",
    "h1", "h2", "h3", "h4", "h5", "h6", "hr",
]


def _to_text(payload: bytes, charset: Optional[str]) -> str:
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except (LookupError, UnicodeError):
        # Unknown label, or a codec that only supports strict errors (idna).
        return payload.decode("utf-8", errors="replace")


def decode_header_value(value: object) -> str:
    """Decode an RFC 2047 header into a single-line string."""

    if value is None:
        return ""
    # Header objects carry raw 8-bit bytes that decode_header can recover.
    source = value if isinstance(value, Header) else str(value)
    try:
        chunks = decode_header(source)
    except HeaderParseError:
        chunks = [(str(value), None)]

    parts: list[str] = []
    for data, charset in chunks:
        if isinstance(data, bytes):
            parts.append(_to_text(data, charset))
        else:
            # Raw 8-bit header bytes arrive as surrogate escapes.
            parts.append(data.encode("utf-8", "surrogateescape").decode("utf-8", "replace"))
    return " ".join("".join(parts).split())


def html_to_text(markup: str) -> str:
    """Render an HTML body as plain text, one block element per line."""

    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style", "head", "title"]):
        tag.decompose()
    for node in soup.find_all(string=True):
        if type(node) is not NavigableString:
            node.extract()
            continue
        node.replace_with(re.sub(r"\s+", " ", str(node)))
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(_BLOCK_TAGS):
        block.insert_before("\n")
        block.append("\n")
    lines = [line.strip() for line in soup.get_text().split("\n")]
    return "\n".join(lines)


def normalize_text(text: str) -> str:
    """Trim trailing spaces and collapse runs of blank lines."""

    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def truncate(text: str, limit: int) -> str:
    """Clip text to limit characters, marking the cut with an ellipsis."""

    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + ELLIPSIS


def _is_body_text(part: Message) -> bool:
    return part.get_content_maintype() == "text" and part.get_content_disposition() != "attachment"


def _pick_alternative(children: list[Message]) -> Optional[Message]:
    for child in children:
        if child.get_content_type() == "text/plain" and _is_body_text(child):
            return child
    return children[0] if children else None


def _summarize(part: Message) -> AttachmentSummary:
    filename = decode_header_value(part.get_filename()) or UNNAMED_ATTACHMENT
    if part.get_content_type() == "message/rfc822":
        inner = part.get_payload()
        size = sum(len(msg.as_bytes()) for msg in inner) if isinstance(inner, list) else 0
    else:
        payload = part.get_payload(decode=True)
        size = len(payload) if isinstance(payload, bytes) else 0
    return AttachmentSummary(filename=filename, content_type=part.get_content_type(), size=size)


def _collect(part: Message, body: list[Message], attachments: list[AttachmentSummary]) -> None:
    """Walk the MIME tree, picking the first body text and listing the rest."""

    if part.get_content_type() == "message/rfc822":
        attachments.append(_summarize(part))
        return

    if part.is_multipart():
        children = [child for child in part.get_payload() if isinstance(child, Message)]
        if part.get_content_subtype() == "alternative" and not body:
            chosen = _pick_alternative(children)
            if chosen is not None:
                # The other alternatives render the same body.
                _collect(chosen, body, attachments)
                return
        for child in children:
            _collect(child, body, attachments)
        return

    if not body and _is_body_text(part):
        body.append(part)
        return
    attachments.append(_summarize(part))


def _body_text(part: Message) -> str:
    payload = part.get_payload(decode=True)
    text = _to_text(payload if isinstance(payload, bytes) else b"", part.get_content_charset())
    if part.get_content_subtype() == "html":
        text = html_to_text(text)
    return normalize_text(text)


def decode_message(raw: bytes, envelope_sender: str = "", excerpt_chars: int = 2000) -> DecodedMessage:
    """Decode raw DATA bytes into a DecodedMessage.

    The sender falls back to the envelope sender, then to a placeholder.
    Raises DecodeError when no header/body separator exists at all.
    """

    if not _HEADER_BODY_SEPARATOR.search(raw):
        raise DecodeError("No header/body separator found in message")

    message = email.message_from_bytes(raw)

    sender = decode_header_value(message.get("From")) or envelope_sender.strip() or UNKNOWN_SENDER
    subject = decode_header_value(message.get("Subject")) or NO_SUBJECT

    body: list[Message] = []
    attachments: list[AttachmentSummary] = []
    _collect(message, body, attachments)

    excerpt = truncate(_body_text(body[0]), excerpt_chars) if body else ""
    LOGGER.debug(
        "Decoded message: subject=%r, excerpt=%s chars, attachments=%s",
        subject,
        len(excerpt),
        len(attachments),
    )
    return DecodedMessage(
        sender=sender,
        subject=subject,
        excerpt=excerpt,
        attachments=tuple(attachments),
    )
