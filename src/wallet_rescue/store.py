"""Account store interface and in-memory implementation."""
from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from .exceptions import StoreError
from .models import AccountPatch, AccountRecord, AccountStatus


class AccountStore(Protocol):
    async def read_all(self) -> List[AccountRecord]: ...

    async def read_pending(self) -> List[AccountRecord]: ...

    async def read_by_address(self, address: str) -> Optional[AccountRecord]: ...

    async def update(self, address: str, patch: AccountPatch) -> AccountRecord: ...

    async def insert(self, record: AccountRecord) -> AccountRecord: ...

    async def current_max_vault_id(self) -> int: ...


class InMemoryAccountStore:
    """In-memory account store (swap for PostgreSQL in production)."""

    def __init__(self, records: Optional[List[AccountRecord]] = None):
        self._records: Dict[str, AccountRecord] = {}
        for record in records or []:
            self._records[record.address.lower()] = record

    async def read_all(self) -> List[AccountRecord]:
        return list(self._records.values())

    async def read_pending(self) -> List[AccountRecord]:
        return [r for r in self._records.values() if r.status == AccountStatus.PENDING]

    async def read_by_address(self, address: str) -> Optional[AccountRecord]:
        return self._records.get(address.lower())

    async def update(self, address: str, patch: AccountPatch) -> AccountRecord:
        record = self._records.get(address.lower())
        if record is None:
            raise StoreError(f"Account {address} not found", details={"address": address})
        updated = record.apply(patch)
        self._records[address.lower()] = updated
        return updated

    async def insert(self, record: AccountRecord) -> AccountRecord:
        key = record.address.lower()
        if key in self._records:
            raise StoreError(f"Account {record.address} already exists", details={"address": record.address})
        self._records[key] = record
        return record

    async def current_max_vault_id(self) -> int:
        ids = [int(r.vault_id) for r in self._records.values() if r.vault_id and r.vault_id.isdigit()]
        return max(ids, default=0)
