"""
Pytest configuration and shared fakes for wallet_rescue tests.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from eth_account import Account

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

# Set test environment
os.environ.setdefault("RESCUE_ENVIRONMENT", "dev")
os.environ.setdefault("RESCUE_LOG_DIR", "")

from wallet_rescue.chain import ContractCall, FeeData  # noqa: E402
from wallet_rescue.config import ContractSettings, RescueSettings  # noqa: E402
from wallet_rescue.constants import GWEI  # noqa: E402
from wallet_rescue.exceptions import ChainError  # noqa: E402

FUNDING_KEY = "0x" + "11" * 32
OPERATING_KEY = "0x" + "22" * 32
DESTINATION = "0x" + "dd" * 20


class FakeChain:
    """In-memory stand-in for the chain client.

    Sends from addresses in ``fail_sends_from`` raise; confirmations for
    senders in ``confirm_errors`` raise the mapped exception. With
    ``mine_on_timeout`` a timed-out broadcast still gets a receipt, as if it
    was included right after the wait gave up.
    """

    def __init__(
        self,
        gas_estimate: int = 50_000,
        base_fee: int = 80 * GWEI,
        fee_data: Optional[FeeData] = None,
        tx_count: int = 7,
    ):
        self.gas_estimate = gas_estimate
        self.base_fee = base_fee
        self.fee_data = fee_data or FeeData(gas_price=100 * GWEI, priority_fee=2 * GWEI)
        self.tx_count = tx_count
        self.balances: Dict[str, int] = {}
        self.reads: Dict[str, Tuple[Any, ...]] = {}
        self.estimate_error: Optional[Exception] = None
        self.fail_sends_from: set[str] = set()
        self.confirm_errors: Dict[str, Exception] = {}
        self.mine_on_timeout = False

        self.sent: List[Tuple[str, Dict[str, Any], str]] = []
        self.send_attempts: List[str] = []
        self.count_requests: List[Tuple[str, str]] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}

    def sends_from(self, address: str) -> List[Dict[str, Any]]:
        return [tx for sender, tx, _ in self.sent if sender == address]

    async def get_fee_data(self) -> FeeData:
        return self.fee_data

    async def get_base_fee(self) -> int:
        return self.base_fee

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        self.count_requests.append((address, block))
        return self.tx_count

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.gas_estimate

    async def send_transaction(self, account, tx: Dict[str, Any]) -> str:
        self.send_attempts.append(account.address)
        if account.address in self.fail_sends_from:
            raise ChainError("transaction rejected")
        tx_hash = "0x%064x" % (len(self.sent) + 1)
        self.sent.append((account.address, dict(tx), tx_hash))
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str, confirmations: int = 1, timeout: float = 60.0):
        sender = next(s for s, _, h in self.sent if h == tx_hash)
        error = self.confirm_errors.get(sender)
        if error is not None:
            if self.mine_on_timeout:
                self.receipts[tx_hash] = {"status": "0x1", "transactionHash": tx_hash}
            raise error
        receipt = {"status": "0x1", "transactionHash": tx_hash}
        self.receipts[tx_hash] = receipt
        return receipt

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)

    async def read(self, call: ContractCall, output_types: Sequence[str]) -> tuple:
        return self.reads.get(call.name, (0,))

    async def close(self):
        pass


class FixedNonces:
    """Nonce source handing out consecutive values from ``start``."""

    def __init__(self, start: int = 42, error: Optional[Exception] = None):
        self.next = start
        self.error = error
        self.issued: List[int] = []

    async def next_nonce(self) -> int:
        if self.error is not None:
            raise self.error
        nonce = self.next
        self.next += 1
        self.issued.append(nonce)
        return nonce


@pytest.fixture
def contract_settings():
    return ContractSettings(
        knot_token="0x" + "01" * 20,
        serum_token="0x" + "02" * 20,
        knot_vault="0x" + "03" * 20,
        fighter_nft="0x" + "04" * 20,
    )


@pytest.fixture
def settings(contract_settings):
    return RescueSettings(
        _env_file=None,
        funding_private_key=FUNDING_KEY,
        contracts=contract_settings,
        max_retries=4,
        max_retries_refund=3,
        confirmation_timeout_seconds=0.01,
        nonce_timeout_seconds=2.0,
        dispatcher_poll_seconds=0.02,
        worker_join_seconds=1.0,
        knots_settle_seconds=0,
        log_dir=None,
    )


@pytest.fixture
def funding():
    return Account.from_key(FUNDING_KEY)


@pytest.fixture
def operating():
    return Account.from_key(OPERATING_KEY)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def nonces():
    return FixedNonces()


@pytest.fixture
def destination():
    return DESTINATION
