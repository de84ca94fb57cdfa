"""Domain models shared by the dispatcher, the workers and the adapters."""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import FailureKind, StoreError


class AccountStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    IGNORE = "ignore"


def check_transition(current: AccountStatus, new: AccountStatus) -> None:
    """Status only ever moves pending -> completed (or pending -> ignore)."""
    if current == new:
        return
    if current != AccountStatus.PENDING:
        raise StoreError(
            f"Illegal status transition {current.value} -> {new.value}",
            details={"from": current.value, "to": new.value},
        )


@dataclass(frozen=True)
class ClaimRecord:
    """Voucher metadata of the last on-chain claim, kept for audit."""
    transaction_id: str
    timestamp: int
    signature: str
    token_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class AccountRecord:
    """One compromised wallet and where its assets go."""
    address: str
    private_key: str = field(repr=False)
    new_address: Optional[str] = None
    vault_id: Optional[str] = None
    status: AccountStatus = AccountStatus.PENDING
    claim: Optional[ClaimRecord] = None
    updated_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return f"vault-{self.vault_id}" if self.vault_id else self.address

    @property
    def is_provisioned(self) -> bool:
        return bool(self.vault_id and self.new_address)

    def apply(self, patch: AccountPatch) -> AccountRecord:
        if patch.status is not None:
            check_transition(self.status, patch.status)
        return dataclasses.replace(
            self,
            updated_at=datetime.now(timezone.utc),
            **patch.present(),
        )


@dataclass(frozen=True)
class AccountPatch:
    """Desired changes to an account record. ``None`` means unchanged."""
    new_address: Optional[str] = None
    vault_id: Optional[str] = None
    status: Optional[AccountStatus] = None
    claim: Optional[ClaimRecord] = None

    def present(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in dataclasses.fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.present()


# =============================================================================
# Claim vouchers returned by the game API
# =============================================================================

def _check_voucher(voucher: Any) -> Any:
    """An accepted voucher must carry a numeric txId and a hex signature."""
    if not voucher.success:
        return voucher
    if not voucher.transaction_id.isdigit():
        raise ValueError(f"txId must be a decimal integer, got {voucher.transaction_id!r}")
    signature = voucher.signature.removeprefix("0x")
    if not signature or len(signature) % 2:
        raise ValueError("signature must be non-empty hex")
    try:
        bytes.fromhex(signature)
    except ValueError as e:
        raise ValueError(f"signature is not hex: {voucher.signature!r}") from e
    return voucher


class ItemVoucher(BaseModel):
    """Signed authorization to claim in-game fighters on-chain."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    transaction_id: str = Field(default="", alias="txId")
    timestamp: int = 0
    signature: str = ""
    token_ids: list[int] = Field(default_factory=list, alias="tokenIds")

    @model_validator(mode="after")
    def check_claimable(self) -> ItemVoucher:
        return _check_voucher(self)

    def to_claim_record(self) -> ClaimRecord:
        return ClaimRecord(
            transaction_id=self.transaction_id,
            timestamp=self.timestamp,
            signature=self.signature,
            token_ids=tuple(self.token_ids),
        )


class SerumVoucher(BaseModel):
    """Signed authorization to withdraw in-game serum."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    error_reason: Optional[str] = Field(default=None, alias="errorReason")
    transaction_id: str = Field(default="", alias="txId")
    timestamp: int = 0
    signature: str = ""
    amount: int = 0

    @model_validator(mode="after")
    def check_claimable(self) -> SerumVoucher:
        return _check_voucher(self)


@dataclass(frozen=True)
class WithdrawalRules:
    is_banned: bool
    is_locked_for_claim: bool

    @property
    def allows_claims(self) -> bool:
        return not (self.is_banned or self.is_locked_for_claim)


@dataclass(frozen=True)
class AuthTokens:
    token: str = field(repr=False)
    token_secondary: str = field(repr=False)


# =============================================================================
# Transactions
# =============================================================================

@dataclass
class TransactionAttempt:
    """Bookkeeping of one execute call."""
    gas_units: int = 0
    gas_limit: int = 0
    max_fee_per_gas: int = 0
    priority_fee: int = 0
    retries: int = 0
    success: bool = False
    tx_hash: Optional[str] = None
    failure: Optional[FailureKind] = None
    broadcasts: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a funded call or a refund. Never an exception."""
    success: bool
    transaction: Optional[str] = None
    failure: Optional[FailureKind] = None
    detail: Optional[str] = None
    attempt: Optional[TransactionAttempt] = None

    @classmethod
    def failed(
        cls,
        failure: FailureKind,
        detail: str,
        attempt: Optional[TransactionAttempt] = None,
    ) -> ExecutionResult:
        return cls(success=False, failure=failure, detail=detail, attempt=attempt)


# =============================================================================
# Job results
# =============================================================================

@dataclass(frozen=True)
class JobResult:
    """What a worker reports about one account."""
    address: str
    completed: bool
    error: Optional[str] = None
    crashed: bool = False
    patch: Optional[AccountPatch] = None


@dataclass
class BatchSummary:
    round: int
    dispatched: int = 0
    completed: int = 0
    not_completed: int = 0
    crashed: int = 0

    def record(self, result: JobResult) -> None:
        if result.crashed:
            self.crashed += 1
        elif result.completed:
            self.completed += 1
        else:
            self.not_completed += 1
