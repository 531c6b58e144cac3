"""SMTP session state machine (core domain).

One SmtpSession is created per accepted connection. It never touches a
socket: the listener feeds it CRLF-terminated lines and writes back the
Reply it returns. Every state lists the verbs it accepts; anything else
aborts the session.

States:
- GREETING: connected (or reset), no transaction open
- SENDER_DECLARED: MAIL FROM accepted
- RECIPIENT_ACCEPTED: at least one RCPT TO resolved to an account
- RECEIVING_DATA: between DATA and the terminating "."
- COMPLETED: message handed off; a new transaction may start
- ABORTED: protocol violation, oversize, disconnect or timeout
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from core.config import SessionLimits
from core.models import Account, Envelope
from core.registry import AccountRegistry, canonicalize_address

LOGGER = logging.getLogger(__name__)

# RFC 5321 4.5.3.1.4: command line including CRLF.
MAX_COMMAND_LINE = 512

_MAIL_FROM = re.compile(r"FROM:\s*(<[^>]*>|\S*)\s*(.*)$", re.IGNORECASE)
_RCPT_TO = re.compile(r"TO:\s*(<[^>]*>|\S+)\s*(.*)$", re.IGNORECASE)


class SessionState(enum.Enum):
    GREETING = "greeting"
    SENDER_DECLARED = "sender_declared"
    RECIPIENT_ACCEPTED = "recipient_accepted"
    RECEIVING_DATA = "receiving_data"
    COMPLETED = "completed"
    ABORTED = "aborted"


ALLOWED_VERBS: dict[SessionState, frozenset[str]] = {
    SessionState.GREETING: frozenset({"HELO", "EHLO", "STARTTLS", "MAIL", "RSET", "NOOP", "QUIT"}),
    SessionState.SENDER_DECLARED: frozenset({"RCPT", "RSET", "NOOP", "QUIT"}),
    SessionState.RECIPIENT_ACCEPTED: frozenset({"RCPT", "DATA", "RSET", "NOOP", "QUIT"}),
    SessionState.RECEIVING_DATA: frozenset(),
    SessionState.COMPLETED: frozenset({"MAIL", "RSET", "NOOP", "QUIT"}),
    SessionState.ABORTED: frozenset(),
}


@dataclass(frozen=True)
class Reply:
    """An SMTP reply; extra lines are sent as a multiline response."""

    code: int
    text: str
    extra: tuple[str, ...] = ()
    close: bool = False
    starttls: bool = False

    def encode(self) -> bytes:
        lines = [self.text, *self.extra]
        rendered = [f"{self.code}-{line}" for line in lines[:-1]]
        rendered.append(f"{self.code} {lines[-1]}")
        return ("\r\n".join(rendered) + "\r\n").encode("ascii", errors="replace")


class SmtpSession:
    """Protocol engine for one SMTP connection."""

    def __init__(
        self,
        registry: AccountRegistry,
        on_message: Callable[[Envelope], None],
        hostname: str = "localhost",
        limits: Optional[SessionLimits] = None,
        peer: Optional[str] = None,
        tls_available: bool = False,
    ) -> None:
        self._registry = registry
        self._on_message = on_message
        self._hostname = hostname
        self._limits = limits or SessionLimits()
        self._tls_available = tls_available
        self._handlers: dict[str, Callable[[str], Reply]] = {
            "HELO": self._helo,
            "EHLO": self._ehlo,
            "STARTTLS": self._starttls,
            "MAIL": self._mail,
            "RCPT": self._rcpt,
            "DATA": self._data,
            "RSET": self._rset,
            "NOOP": self._noop,
            "QUIT": self._quit,
        }

        self.peer = peer
        self.state = SessionState.GREETING
        self.helo: Optional[str] = None
        self.tls_active = False
        self.sender: Optional[str] = None
        self.recipients: list[str] = []
        self._accounts: dict[str, Account] = {}
        self._chunks: list[bytes] = []
        self._size = 0

    @property
    def accounts(self) -> tuple[Account, ...]:
        return tuple(self._accounts.values())

    @property
    def size(self) -> int:
        return self._size

    def greeting(self) -> Reply:
        return Reply(220, f"{self._hostname} ESMTP tginbox ready")

    def receive(self, line: bytes) -> Optional[Reply]:
        """Feed one line from the peer.

        Returns the reply to send, or None while message data is streaming.
        """

        if self.state is SessionState.ABORTED:
            return Reply(421, "4.3.0 Session aborted", close=True)
        if self.state is SessionState.RECEIVING_DATA:
            return self._receive_data(line)
        return self._receive_command(line)

    def abort(self, reason: str) -> None:
        """Move to ABORTED from outside the protocol (disconnect, timeout)."""

        if self.state is not SessionState.ABORTED:
            LOGGER.debug("Session from %s aborted in %s: %s", self.peer, self.state.value, reason)
        self._reset_transaction()
        self.state = SessionState.ABORTED

    def tls_started(self) -> None:
        """Record a completed STARTTLS upgrade; the client must greet again."""

        self.tls_active = True
        self.helo = None
        self._reset_transaction()
        self.state = SessionState.GREETING

    def _receive_command(self, line: bytes) -> Reply:
        if len(line) > MAX_COMMAND_LINE:
            return self._fail(500, "5.5.2 Line too long")
        try:
            text = line.decode("ascii").rstrip("\r\n")
        except UnicodeDecodeError:
            return self._fail(500, "5.5.2 Syntax error, non-ASCII command")

        verb, _, argument = text.partition(" ")
        verb = verb.upper()
        handler = self._handlers.get(verb)
        if handler is None:
            return self._fail(500, "5.5.1 Command unrecognized")
        if verb not in ALLOWED_VERBS[self.state] or (verb == "STARTTLS" and not self._can_starttls()):
            return self._fail(503, "5.5.1 Bad sequence of commands")
        return handler(argument.strip())

    def _receive_data(self, line: bytes) -> Optional[Reply]:
        if line in (b".\r\n", b".\n"):
            return self._complete()
        if line.startswith(b"."):
            line = line[1:]

        self._size += len(line)
        if self._size > self._limits.max_message_bytes:
            LOGGER.warning(
                "Message from %s exceeds %s bytes, aborting session",
                self.peer,
                self._limits.max_message_bytes,
            )
            return self._fail(552, "5.3.4 Message too large")
        self._chunks.append(line)
        return None

    def _complete(self) -> Reply:
        envelope = Envelope(
            sender=self.sender or "",
            recipients=tuple(self.recipients),
            accounts=self.accounts,
            data=b"".join(self._chunks),
            peer=self.peer,
        )
        self._reset_transaction()
        self.state = SessionState.COMPLETED
        self._on_message(envelope)
        return Reply(250, "2.0.0 OK: queued")

    def _can_starttls(self) -> bool:
        return self._tls_available and not self.tls_active

    def _greet(self, argument: str) -> Optional[Reply]:
        if not argument:
            return self._fail(501, "5.5.4 Syntax: HELO hostname")
        self._reset_transaction()
        self.helo = argument
        self.state = SessionState.GREETING
        return None

    def _helo(self, argument: str) -> Reply:
        return self._greet(argument) or Reply(250, self._hostname)

    def _ehlo(self, argument: str) -> Reply:
        failure = self._greet(argument)
        if failure:
            return failure
        extensions = [f"SIZE {self._limits.max_message_bytes}", "8BITMIME", "PIPELINING"]
        if self._can_starttls():
            extensions.append("STARTTLS")
        return Reply(250, f"{self._hostname} Hello {argument}", extra=tuple(extensions))

    def _starttls(self, argument: str) -> Reply:
        return Reply(220, "2.0.0 Ready to start TLS", starttls=True)

    def _mail(self, argument: str) -> Reply:
        match = _MAIL_FROM.match(argument)
        if not match:
            return self._fail(501, "5.5.4 Syntax: MAIL FROM:<address>")

        for param in match.group(2).split():
            key, _, value = param.partition("=")
            if key.upper() != "SIZE":
                continue
            if not value.isdigit():
                return self._fail(501, "5.5.4 Invalid SIZE parameter")
            if int(value) > self._limits.max_message_bytes:
                return self._fail(552, "5.3.4 Message size exceeds fixed limit")

        self._reset_transaction()
        self.sender = match.group(1).strip("<>").strip()
        self.state = SessionState.SENDER_DECLARED
        return Reply(250, "2.1.0 OK")

    def _rcpt(self, argument: str) -> Reply:
        match = _RCPT_TO.match(argument)
        address = match.group(1).strip("<>").strip() if match else ""
        if not address:
            return self._fail(501, "5.5.4 Syntax: RCPT TO:<address>")
        if len(self.recipients) >= self._limits.max_recipients:
            return Reply(452, "4.5.3 Too many recipients")

        account = self._registry.resolve(address)
        if account is None:
            LOGGER.info("Rejected recipient %s from %s: no such user", address, self.peer)
            return Reply(450, f"4.1.1 <{address}>: no such user")

        self.recipients.append(address)
        self._accounts.setdefault(canonicalize_address(account.address), account)
        self.state = SessionState.RECIPIENT_ACCEPTED
        return Reply(250, "2.1.5 OK")

    def _data(self, argument: str) -> Reply:
        self._chunks = []
        self._size = 0
        self.state = SessionState.RECEIVING_DATA
        return Reply(354, "End data with <CR><LF>.<CR><LF>")

    def _rset(self, argument: str) -> Reply:
        self._reset_transaction()
        self.state = SessionState.GREETING
        return Reply(250, "2.0.0 OK")

    def _noop(self, argument: str) -> Reply:
        return Reply(250, "2.0.0 OK")

    def _quit(self, argument: str) -> Reply:
        return Reply(221, "2.0.0 Bye", close=True)

    def _fail(self, code: int, text: str) -> Reply:
        LOGGER.info("Aborting session from %s in %s: %s %s", self.peer, self.state.value, code, text)
        self.abort(text)
        return Reply(code, text, close=True)

    def _reset_transaction(self) -> None:
        self.sender = None
        self.recipients = []
        self._accounts = {}
        self._chunks = []
        self._size = 0
