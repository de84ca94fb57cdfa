"""
Funded transaction execution with bounded retries.

A call from the operating wallet is paid for by a transfer from the funding
wallet sized to the call's worst-case fee. The transfer runs as a tracked
task (``FundingHandle``) that the retry loop awaits before every attempt.
Every outcome, including exhausted retries, is returned as an
``ExecutionResult``; nothing raises out of ``execute`` or
``return_unused_funds``.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from eth_account.signers.local import LocalAccount

from .chain import ChainClient, ContractCall, receipt_succeeded
from .config import RescueSettings
from .constants import TRANSFER_GAS_UNITS
from .exceptions import ConfirmationTimeoutError, FailureKind
from .fees import FeePlan, plan_fees, plan_refund
from .models import ExecutionResult, TransactionAttempt
from .sequencer import NonceSource

logger = logging.getLogger(__name__)


class FundingHandle:
    """Result-bearing handle on an in-flight funding transfer."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @classmethod
    def start(cls, coro) -> FundingHandle:
        return cls(asyncio.create_task(coro))

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def error(self) -> Optional[BaseException]:
        if not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    @property
    def tx_hash(self) -> Optional[str]:
        if self._task.done() and not self._task.cancelled() and self._task.exception() is None:
            return self._task.result()
        return None

    async def wait(self) -> bool:
        """Wait for the transfer to settle; True when it went through."""
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return False
        return self._task.exception() is None


class TransactionExecutor:
    """Runs contract calls from an operating wallet funded by the funding wallet."""

    def __init__(
        self,
        chain: ChainClient,
        nonces: NonceSource,
        settings: RescueSettings,
    ):
        self._chain = chain
        self._nonces = nonces
        self._settings = settings

    async def execute(
        self,
        call: ContractCall,
        funding: LocalAccount,
        operating: LocalAccount,
        max_retries: Optional[int] = None,
        priority_fee_override: Optional[int] = None,
    ) -> ExecutionResult:
        max_retries = max_retries or self._settings.max_retries
        attempt = TransactionAttempt()

        try:
            units = await self._chain.estimate_gas(call.to_tx(operating.address))
        except Exception as e:
            logger.warning(f"Gas estimation failed for {call}: {e}")
            return ExecutionResult.failed(FailureKind.ESTIMATION, str(e), attempt)
        if not units:
            logger.warning(f"Gas estimation returned zero for {call}")
            return ExecutionResult.failed(FailureKind.ESTIMATION, "zero gas estimate", attempt)

        try:
            base_fee = await self._chain.get_base_fee()
            fee_data = await self._chain.get_fee_data()
        except Exception as e:
            logger.warning(f"Fee data unavailable for {call}: {e}")
            return ExecutionResult.failed(FailureKind.SUBMISSION, f"fee data unavailable: {e}", attempt)

        plan = plan_fees(
            gas_units=units,
            base_fee=base_fee,
            current_priority_fee=fee_data.priority_fee,
            pf_increase=self._settings.pf_increase,
            gas_buffer_percent=self._settings.gas_buffer_percent,
            priority_fee_override=priority_fee_override,
        )
        attempt.gas_units = plan.gas_units
        attempt.gas_limit = plan.gas_limit
        attempt.max_fee_per_gas = plan.max_fee_per_gas
        attempt.priority_fee = plan.priority_fee
        logger.info(
            f"{call.name}: gas={plan.gas_limit} maxFee={plan.max_fee_per_gas} "
            f"priority={plan.priority_fee} funding={plan.funding_required}"
        )

        handle = FundingHandle.start(self._fund(funding, operating.address, plan))

        def build(nonce: int) -> Dict[str, Any]:
            tx = call.to_tx()
            tx.update(
                nonce=nonce,
                gas=plan.gas_limit,
                maxFeePerGas=plan.max_fee_per_gas,
                maxPriorityFeePerGas=plan.priority_fee,
            )
            return tx

        return await self._submit_with_retries(
            operating, build, max_retries, attempt, label=call.name, funding=handle
        )

    async def return_unused_funds(
        self,
        operating: LocalAccount,
        funding: LocalAccount,
        max_retries: Optional[int] = None,
    ) -> ExecutionResult:
        """Sweep what is left on the operating wallet back to the funding wallet."""
        max_retries = max_retries or self._settings.max_retries_refund
        attempt = TransactionAttempt()

        try:
            balance = await self._chain.get_balance(operating.address)
            units = await self._chain.estimate_gas(
                {"from": operating.address, "to": funding.address, "value": 0}
            )
            fee_data = await self._chain.get_fee_data()
        except Exception as e:
            logger.warning(f"Refund estimation failed: {e}")
            return ExecutionResult.failed(FailureKind.ESTIMATION, str(e), attempt)

        plan = plan_refund(
            balance=balance,
            gas_units=units or TRANSFER_GAS_UNITS,
            gas_price=fee_data.gas_price,
            priority_fee=fee_data.priority_fee,
            gas_buffer_percent=self._settings.gas_buffer_percent,
        )
        if plan.available <= 0:
            logger.info(f"Nothing to refund (balance={balance}, fee={plan.fee})")
            return ExecutionResult.failed(
                FailureKind.INSUFFICIENT_FUNDS, "balance does not cover the refund fee", attempt
            )

        attempt.gas_units = units
        attempt.gas_limit = plan.gas_limit
        attempt.max_fee_per_gas = plan.max_fee_per_gas
        attempt.priority_fee = plan.priority_fee
        logger.info(f"Refunding {plan.available} wei to {funding.address}")

        def build(nonce: int) -> Dict[str, Any]:
            return {
                "to": funding.address,
                "value": plan.available,
                "nonce": nonce,
                "gas": plan.gas_limit,
                "maxFeePerGas": plan.max_fee_per_gas,
                "maxPriorityFeePerGas": plan.priority_fee,
            }

        return await self._submit_with_retries(operating, build, max_retries, attempt, label="refund")

    async def _fund(self, funding: LocalAccount, to: str, plan: FeePlan) -> str:
        nonce = await self._nonces.next_nonce()
        tx_hash = await self._chain.send_transaction(
            funding,
            {
                "to": to,
                "value": plan.funding_required,
                "nonce": nonce,
                "gas": TRANSFER_GAS_UNITS,
                "maxFeePerGas": plan.max_fee_per_gas,
                "maxPriorityFeePerGas": plan.priority_fee,
            },
        )
        logger.info(f"Funding transfer {tx_hash} (nonce {nonce}, {plan.funding_required} wei)")
        try:
            await self._chain.wait_for_confirmation(
                tx_hash,
                self._settings.confirmations,
                self._settings.confirmation_timeout_seconds,
            )
        except ConfirmationTimeoutError:
            # Broadcast was accepted; attempts can proceed and land once it is mined.
            logger.warning(f"Funding transfer {tx_hash} not yet confirmed")
        return tx_hash

    async def _mined_broadcast(self, attempt: TransactionAttempt) -> Optional[str]:
        for tx_hash in attempt.broadcasts:
            try:
                receipt = await self._chain.get_receipt(tx_hash)
            except Exception as e:
                logger.debug(f"Receipt lookup for {tx_hash} failed: {e}")
                continue
            if receipt is not None and receipt_succeeded(receipt):
                return tx_hash
        return None

    async def _submit_with_retries(
        self,
        account: LocalAccount,
        build: Callable[[int], Dict[str, Any]],
        max_retries: int,
        attempt: TransactionAttempt,
        label: str,
        funding: Optional[FundingHandle] = None,
    ) -> ExecutionResult:
        while attempt.retries < max_retries:
            if funding is not None and not await funding.wait():
                attempt.failure = FailureKind.FUNDING
                logger.error(f"{label}: funding transfer failed, aborting: {funding.error}")
                return ExecutionResult.failed(FailureKind.FUNDING, str(funding.error), attempt)

            mined = await self._mined_broadcast(attempt)
            if mined:
                return self._succeeded(attempt, mined, label)

            try:
                # "latest" count reuses the nonce of a still-pending broadcast
                nonce = await self._chain.get_transaction_count(account.address, "latest")
                tx_hash = await self._chain.send_transaction(account, build(nonce))
                attempt.broadcasts.append(tx_hash)
                await self._chain.wait_for_confirmation(
                    tx_hash,
                    self._settings.confirmations,
                    self._settings.confirmation_timeout_seconds,
                )
                return self._succeeded(attempt, tx_hash, label)
            except ConfirmationTimeoutError as e:
                attempt.failure = FailureKind.CONFIRMATION_TIMEOUT
                logger.warning(f"{label}: attempt {attempt.retries + 1}/{max_retries} timed out: {e}")
            except Exception as e:
                attempt.failure = FailureKind.SUBMISSION
                logger.warning(f"{label}: attempt {attempt.retries + 1}/{max_retries} failed: {e}")
            attempt.retries += 1

        mined = await self._mined_broadcast(attempt)
        if mined:
            return self._succeeded(attempt, mined, label)

        failure = attempt.failure or FailureKind.SUBMISSION
        logger.error(f"{label}: giving up after {attempt.retries} attempts")
        return ExecutionResult.failed(failure, f"gave up after {attempt.retries} attempts", attempt)

    @staticmethod
    def _succeeded(attempt: TransactionAttempt, tx_hash: str, label: str) -> ExecutionResult:
        attempt.success = True
        attempt.tx_hash = tx_hash
        attempt.failure = None
        logger.info(f"{label}: confirmed {tx_hash}")
        return ExecutionResult(success=True, transaction=tx_hash, attempt=attempt)
