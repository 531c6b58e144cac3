"""Account registry (core domain).

The registry is built once at startup and shared read-only by every
connection, so lookups never need a lock.
"""

from __future__ import annotations

from email.utils import parseaddr
from types import MappingProxyType
from typing import Iterable, Iterator, Optional

from core.models import Account


def canonicalize_address(address: str) -> str:
    """Return the lookup form of an address.

    Accepts bare addresses, ``<addr>`` and ``Name <addr>`` forms. Both the
    local part and the domain are compared case-insensitively.
    """

    candidate = address.strip()
    if "<" in candidate or " " in candidate:
        _, parsed = parseaddr(candidate)
        if parsed:
            candidate = parsed
    return candidate.strip("<> \t").lower()


class AccountRegistry:
    """Immutable mapping of canonical recipient address to Account."""

    def __init__(self, accounts: Iterable[Account]) -> None:
        by_address: dict[str, Account] = {}
        for account in accounts:
            key = canonicalize_address(account.address)
            if not key:
                raise ValueError("Account address must not be empty")
            if key in by_address:
                raise ValueError(f"Duplicate account address: {account.address}")
            by_address[key] = account
        self._accounts = MappingProxyType(by_address)

    def resolve(self, address: str) -> Optional[Account]:
        """Return the account configured for address, if any."""

        return self._accounts.get(canonicalize_address(address))

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.resolve(address) is not None

    def __iter__(self) -> Iterator[Account]:
        return iter(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)
