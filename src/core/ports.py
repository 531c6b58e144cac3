"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for delivery adapters so that the core
can be reused with different messaging backends.
"""

from __future__ import annotations

from typing import Protocol

from core.models import Account, DecodedMessage


class ForwarderPort(Protocol):
    """Delivery operation required by the core pipeline.

    Returns on success and raises a core.errors.ForwardError subclass on
    terminal failure. Retries happen inside the adapter.
    """

    async def forward(self, account: Account, message: DecodedMessage) -> None:
        ...
