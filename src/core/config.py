"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ServerConfig:
    """One SMTP listening endpoint."""

    hostname: str
    address: str
    port: int
    starttls: bool = False
    cert_path: str = ""
    key_path: str = ""
    ca_path: str = ""


@dataclass(frozen=True)
class SessionLimits:
    """Resource limits applied to every SMTP session."""

    max_message_bytes: int = 10 * 1024 * 1024
    max_recipients: int = 100
    max_sessions: int = 100
    queue_timeout: float = 2.0
    idle_timeout: float = 300.0
    shutdown_grace: float = 30.0


@dataclass(frozen=True)
class DecoderConfig:
    """Message decoding settings."""

    excerpt_chars: int = 2000


@dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and backoff for the forwarder.

    max_attempts counts every request, including the first one. hard_timeout
    must cover worst_case so a forward is never cut off mid-schedule.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    request_timeout: float = 10.0
    hard_timeout: float = 180.0

    @property
    def worst_case(self) -> float:
        """Longest a full retry schedule can take: every request times out
        and every wait is max_delay."""

        attempts = max(self.max_attempts, 1)
        return attempts * self.request_timeout + (attempts - 1) * self.max_delay
