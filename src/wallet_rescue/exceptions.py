"""Exception hierarchy for the recovery engine.

Exceptions are raised by the adapters (chain client, game API, custody,
store) and by the worker transport. The executor and the workflow catch them
at their own boundary and turn them into result values tagged with a
``FailureKind``; only a crash of the worker itself reaches the dispatcher.

All exceptions have:
- error_code: Machine-readable error code (e.g., "NONCE_TIMEOUT")
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to a loggable mapping
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class FailureKind(str, Enum):
    """Why a transaction or workflow step did not succeed."""
    ESTIMATION = "estimation"
    SUBMISSION = "submission"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    FUNDING = "funding"
    EXTERNAL_API = "external_api"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class RescueError(Exception):
    """Base exception for all recovery engine errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "RESCUE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ConfigurationError(RescueError):
    """Required settings are missing or inconsistent."""

    error_code = "CONFIGURATION_ERROR"


# =============================================================================
# External services
# =============================================================================

class ExternalAPIError(RescueError):
    """The game API returned an error or an unexpected payload."""

    error_code = "EXTERNAL_API_ERROR"

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if endpoint:
            details["endpoint"] = endpoint
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)


class AuthenticationError(ExternalAPIError):
    """Challenge signing or login was rejected."""

    error_code = "AUTHENTICATION_ERROR"


class AccountLockedError(ExternalAPIError):
    """The account is banned or locked for claims."""

    error_code = "ACCOUNT_LOCKED"


class ProvisioningError(RescueError):
    """Custodial vault provisioning failed."""

    error_code = "PROVISIONING_ERROR"


class StoreError(RescueError):
    """The account store rejected a read or write."""

    error_code = "STORE_ERROR"


# =============================================================================
# Nonce transport
# =============================================================================

class NonceTimeoutError(RescueError):
    """No nonce reply arrived within the configured timeout."""

    error_code = "NONCE_TIMEOUT"

    def __init__(self, worker_id: str, timeout: float) -> None:
        super().__init__(
            f"No nonce reply for worker {worker_id} within {timeout}s",
            details={"worker_id": worker_id, "timeout": timeout},
        )


class NonceUnavailableError(RescueError):
    """The sequencer refused to issue a nonce."""

    error_code = "NONCE_UNAVAILABLE"


# =============================================================================
# Chain
# =============================================================================

class ChainError(RescueError):
    """Node or transaction level failure."""

    error_code = "CHAIN_ERROR"


class TransactionRevertedError(ChainError):
    """The transaction was mined with status 0."""

    error_code = "TRANSACTION_REVERTED"

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"Transaction {tx_hash} reverted", details={"tx_hash": tx_hash})
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(ChainError):
    """The transaction was not mined within the wait window."""

    error_code = "CONFIRMATION_TIMEOUT"

    def __init__(self, tx_hash: str, timeout: float) -> None:
        super().__init__(
            f"Transaction {tx_hash} not confirmed within {timeout}s",
            details={"tx_hash": tx_hash, "timeout": timeout},
        )
        self.tx_hash = tx_hash
