"""Exceptions raised by the core pipeline and its adapters."""

from __future__ import annotations

from typing import Optional


class DecodeError(Exception):
    """The raw message has no recognizable header/body structure."""


class ForwardError(Exception):
    """Terminal failure to deliver a message to one account."""

    def __init__(self, message: str, attempts: int = 1) -> None:
        super().__init__(message)
        self.attempts = attempts


class RateLimited(ForwardError):
    """The endpoint kept answering with a rate-limit response."""

    def __init__(self, message: str, attempts: int = 1, retry_after: Optional[float] = None) -> None:
        super().__init__(message, attempts)
        self.retry_after = retry_after


class Unreachable(ForwardError):
    """The endpoint could not be reached after all retries."""


class Rejected(ForwardError):
    """The endpoint refused the request (bad token, unknown chat, ...)."""

    def __init__(self, message: str, attempts: int = 1, status_code: Optional[int] = None) -> None:
        super().__init__(message, attempts)
        self.status_code = status_code
