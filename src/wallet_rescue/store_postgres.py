"""PostgreSQL-backed account store.

All statements are parameterized; ``update`` builds its SET list from a
fixed map of patch fields to column names, never from caller input.
"""
from __future__ import annotations

from typing import Any, List, Optional, Tuple

from .exceptions import StoreError
from .models import AccountPatch, AccountRecord, AccountStatus, ClaimRecord

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    address          TEXT PRIMARY KEY,
    private_key      TEXT NOT NULL,
    new_address      TEXT,
    fireblocks_vault TEXT,
    status           TEXT NOT NULL DEFAULT 'pending',
    claim_tx_id      TEXT,
    claim_timestamp  BIGINT,
    claim_signature  TEXT,
    claim_token_ids  BIGINT[],
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""

_COLUMNS = """
    address, private_key, new_address, fireblocks_vault, status,
    claim_tx_id, claim_timestamp, claim_signature, claim_token_ids, updated_at
"""


def _patch_columns(patch: AccountPatch) -> List[Tuple[str, Any]]:
    columns: List[Tuple[str, Any]] = []
    if patch.new_address is not None:
        columns.append(("new_address", patch.new_address))
    if patch.vault_id is not None:
        columns.append(("fireblocks_vault", patch.vault_id))
    if patch.status is not None:
        columns.append(("status", patch.status.value))
    if patch.claim is not None:
        columns.append(("claim_tx_id", patch.claim.transaction_id))
        columns.append(("claim_timestamp", patch.claim.timestamp))
        columns.append(("claim_signature", patch.claim.signature))
        columns.append(("claim_token_ids", list(patch.claim.token_ids)))
    return columns


def build_update(address: str, patch: AccountPatch) -> Tuple[str, List[Any]]:
    """UPDATE statement and parameters for ``patch``.

    A status change is only applied to pending rows (or rows already in the
    target status), so completed and ignored accounts stay terminal.
    """
    columns = _patch_columns(patch)
    assignments = [f"{name} = ${i}" for i, (name, _) in enumerate(columns, start=1)]
    assignments.append("updated_at = NOW()")
    params: List[Any] = [value for _, value in columns]

    params.append(address.lower())
    where = f"LOWER(address) = ${len(params)}"
    if patch.status is not None:
        params.append(patch.status.value)
        where += f" AND (status = 'pending' OR status = ${len(params)})"

    sql = f"UPDATE accounts SET {', '.join(assignments)} WHERE {where} RETURNING {_COLUMNS}"
    return sql, params


class PostgresAccountStore:
    """Account store on an asyncpg pool."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool = None

    async def _get_pool(self):
        if self._pool is None:
            import asyncpg

            dsn = self._dsn
            if dsn.startswith("postgres://"):
                dsn = dsn.replace("postgres://", "postgresql://", 1)
            self._pool = await asyncpg.create_pool(dsn, min_size=1, max_size=5)
        return self._pool

    @staticmethod
    def _from_row(row: Any) -> AccountRecord:
        claim = None
        if row.get("claim_tx_id"):
            claim = ClaimRecord(
                transaction_id=str(row["claim_tx_id"]),
                timestamp=int(row.get("claim_timestamp") or 0),
                signature=str(row.get("claim_signature") or ""),
                token_ids=tuple(int(t) for t in row.get("claim_token_ids") or ()),
            )
        vault = row.get("fireblocks_vault")
        return AccountRecord(
            address=str(row["address"]),
            private_key=str(row["private_key"]),
            new_address=row.get("new_address"),
            vault_id=str(vault) if vault is not None else None,
            status=AccountStatus(row.get("status") or AccountStatus.PENDING.value),
            claim=claim,
            updated_at=row.get("updated_at"),
        )

    async def init_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(SCHEMA)

    async def read_all(self) -> List[AccountRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(f"SELECT {_COLUMNS} FROM accounts ORDER BY updated_at")
            return [self._from_row(dict(r)) for r in rows]

    async def read_pending(self) -> List[AccountRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM accounts WHERE status = $1 ORDER BY updated_at",
                AccountStatus.PENDING.value,
            )
            return [self._from_row(dict(r)) for r in rows]

    async def read_by_address(self, address: str) -> Optional[AccountRecord]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_COLUMNS} FROM accounts WHERE LOWER(address) = $1",
                address.lower(),
            )
            return self._from_row(dict(row)) if row else None

    async def update(self, address: str, patch: AccountPatch) -> AccountRecord:
        sql, params = build_update(address, patch)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, *params)
        if not row:
            raise StoreError(
                f"Account {address} not found or not updatable",
                details={"address": address, "fields": sorted(patch.present())},
            )
        return self._from_row(dict(row))

    async def insert(self, record: AccountRecord) -> AccountRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO accounts (address, private_key, new_address, fireblocks_vault, status)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (address) DO NOTHING
                RETURNING {_COLUMNS}
                """,
                record.address,
                record.private_key,
                record.new_address,
                record.vault_id,
                record.status.value,
            )
        if not row:
            raise StoreError(f"Account {record.address} already exists", details={"address": record.address})
        return self._from_row(dict(row))

    async def current_max_vault_id(self) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COALESCE(MAX(fireblocks_vault::BIGINT), 0) FROM accounts "
                "WHERE fireblocks_vault ~ '^[0-9]+$'"
            )
            return int(value or 0)

    async def close(self):
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
