"""Read-only account lookups consumed by the login flow."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True)
class AccountRecord:
    account_id: str
    password_hash: str
    role: str = "parent"
    device_bindings: frozenset[str] = field(default_factory=frozenset)

    def allows_device(self, device_id: str | None) -> bool:
        """Accounts without bindings accept any device."""
        if not self.device_bindings:
            return True
        return device_id is not None and device_id in self.device_bindings


@dataclass(frozen=True)
class LookupResult:
    """Either a record or an error string, never both."""

    record: AccountRecord | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.record is not None


class IdentityStore(Protocol):
    def lookup(self, account_id: str) -> LookupResult: ...


class InMemoryIdentityStore:
    """Dictionary-backed store for embedding and tests."""

    def __init__(self, records: Iterable[AccountRecord] = ()) -> None:
        self._records = {record.account_id: record for record in records}

    def add(self, record: AccountRecord) -> None:
        self._records[record.account_id] = record

    def lookup(self, account_id: str) -> LookupResult:
        record = self._records.get(account_id)
        if record is None:
            return LookupResult(error="not_found")
        return LookupResult(record=record)
