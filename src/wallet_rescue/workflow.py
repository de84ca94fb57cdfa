"""
Per-account recovery workflow.

States, in order, with optional skips::

    INIT -> AUTHENTICATED -> BALANCES_FETCHED -> [KNOTS_TOP_UP] -> [SERUM_CLAIM]
         -> [FIGHTER_CLAIM] -> [ASSET_TRANSFER] -> REFUNDED -> DONE

Once authenticated, every path goes through REFUNDED before DONE, including
one cut short by an unexpected exception. A pass
that had something to move ends not-completed; the account is declared
completed by a later pass that finds nothing left to recover.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Protocol

from eth_account.signers.local import LocalAccount

from .chain import ChainClient, ContractCall
from .config import RescueSettings
from .constants import INVENTORY_PAGE_LIMIT, MAX_UINT_APPROVAL, WEI_PER_TOKEN
from .contracts import GameContracts
from .exceptions import ChainError, ExternalAPIError
from .models import (
    AccountPatch,
    AuthTokens,
    ClaimRecord,
    ExecutionResult,
    ItemVoucher,
    SerumVoucher,
)

logger = logging.getLogger(__name__)


class WorkflowState(str, Enum):
    INIT = "init"
    AUTHENTICATED = "authenticated"
    BALANCES_FETCHED = "balances_fetched"
    KNOTS_TOP_UP = "knots_top_up"
    SERUM_CLAIM = "serum_claim"
    FIGHTER_CLAIM = "fighter_claim"
    ASSET_TRANSFER = "asset_transfer"
    REFUNDED = "refunded"
    DONE = "done"


class GameApi(Protocol):
    async def authenticate(self, account: LocalAccount) -> AuthTokens: ...

    async def get_on_chain_token_balance(self) -> int: ...

    async def get_in_game_token_balance(self) -> int: ...

    async def get_in_game_serum_balance(self) -> int: ...

    async def get_in_game_held_items(self) -> List[int]: ...

    async def list_owned_items(self, page: int = 0, limit: int = INVENTORY_PAGE_LIMIT) -> List[int]: ...

    async def pre_claim_items(self, item_ids: List[int]) -> ItemVoucher: ...

    async def pre_claim_serum(self, amount: int) -> SerumVoucher: ...


class Executor(Protocol):
    async def execute(
        self,
        call: ContractCall,
        funding: LocalAccount,
        operating: LocalAccount,
        max_retries: Optional[int] = None,
        priority_fee_override: Optional[int] = None,
    ) -> ExecutionResult: ...

    async def return_unused_funds(
        self,
        operating: LocalAccount,
        funding: LocalAccount,
        max_retries: Optional[int] = None,
    ) -> ExecutionResult: ...


@dataclass
class WorkflowOptions:
    read_only: bool = False
    claim_serum: bool = True
    claim_fighters: bool = True
    verify_knots: bool = True
    manual_voucher: Optional[ItemVoucher] = None
    manual_token_ids: Optional[List[int]] = None


@dataclass(frozen=True)
class Balances:
    knots: int
    serum: int
    in_game_knots: int
    in_game_serum: int
    in_game_fighters: List[int]
    wallet_fighters: List[int]

    def nothing_to_recover(self) -> bool:
        # In-game serum can only be withdrawn while fighters are in game,
        # so serum left behind without fighters is not recoverable.
        return not (self.serum or self.wallet_fighters or self.in_game_fighters)

    def describe(self) -> str:
        return (
            f"knots={self.knots / WEI_PER_TOKEN:g} serum={self.serum} "
            f"in-game knots={self.in_game_knots / WEI_PER_TOKEN:g} "
            f"in-game serum={self.in_game_serum} "
            f"in-game fighters={len(self.in_game_fighters)} "
            f"wallet fighters={len(self.wallet_fighters)}"
        )


def required_knots(fighter_count: int, batch: int = 20, per_batch: int = 10) -> int:
    """Knots (whole tokens) the game charges to withdraw ``fighter_count`` fighters."""
    return math.ceil(fighter_count / batch) * per_batch


def resolve_token_ids(
    claimed: Optional[List[int]],
    manual: Optional[List[int]],
) -> Optional[List[int]]:
    """Ids claimed this run win over manual ids; ``None`` means ask the API."""
    if claimed:
        return list(claimed)
    if manual:
        return list(manual)
    return None


@dataclass
class WorkflowOutcome:
    completed: bool
    detail: Optional[str] = None
    history: List[WorkflowState] = field(default_factory=list)
    balances: Optional[Balances] = None
    claim: Optional[ClaimRecord] = None
    transferred: List[int] = field(default_factory=list)
    failed_transfers: List[int] = field(default_factory=list)
    refund: Optional[ExecutionResult] = None

    def to_patch(self) -> Optional[AccountPatch]:
        if self.claim is None:
            return None
        return AccountPatch(claim=self.claim)


class _Stop(Exception):
    """Ends the recovery steps early; the refund still runs."""


class RecoveryWorkflow:
    """Recovers one account's serum and fighters into ``destination``."""

    def __init__(
        self,
        chain: ChainClient,
        api: GameApi,
        executor: Executor,
        contracts: GameContracts,
        settings: RescueSettings,
        options: Optional[WorkflowOptions] = None,
    ):
        self._chain = chain
        self._api = api
        self._executor = executor
        self._contracts = contracts
        self._settings = settings
        self._options = options or WorkflowOptions()
        self._outcome = WorkflowOutcome(completed=False)

    @property
    def history(self) -> List[WorkflowState]:
        return self._outcome.history

    def _enter(self, state: WorkflowState) -> None:
        self._outcome.history.append(state)
        logger.debug(f"-> {state.value}")

    def _done(self, completed: bool, detail: Optional[str] = None) -> WorkflowOutcome:
        self._enter(WorkflowState.DONE)
        self._outcome.completed = completed
        self._outcome.detail = detail
        level = logging.INFO if completed else logging.WARNING
        logger.log(level, f"Workflow done: completed={completed}" + (f" ({detail})" if detail else ""))
        return self._outcome

    async def run(
        self,
        operating: LocalAccount,
        funding: LocalAccount,
        destination: str,
    ) -> WorkflowOutcome:
        self._outcome = WorkflowOutcome(completed=False)
        self._enter(WorkflowState.INIT)

        try:
            await self._api.authenticate(operating)
        except ExternalAPIError as e:
            logger.warning(f"Authentication failed: {e}")
            return self._done(False, f"authentication failed: {e.message}")
        except Exception as e:
            logger.exception(f"Authentication failed unexpectedly: {e}")
            return self._done(False, f"authentication failed: {type(e).__name__}: {e}")
        self._enter(WorkflowState.AUTHENTICATED)

        detail: Optional[str] = None
        try:
            balances = await self._fetch_balances(operating.address)
            self._outcome.balances = balances
            self._enter(WorkflowState.BALANCES_FETCHED)
            logger.info(f"Balances: {balances.describe()}")

            if self._options.read_only:
                return self._done(False, "read-only")

            if balances.nothing_to_recover():
                logger.info("Nothing left to recover")
                await self._refund(operating, funding)
                return self._done(True)

            await self._recover(balances, operating, funding, destination)
            detail = "pass finished, completion is confirmed by the next pass"
        except _Stop as e:
            detail = str(e)
        except (ExternalAPIError, ChainError) as e:
            logger.error(f"Recovery interrupted: {e}")
            detail = e.message
        except Exception as e:
            # Gas may already sit on the wallet, so fall through to the refund.
            logger.exception(f"Recovery failed unexpectedly: {e}")
            detail = f"unexpected error: {type(e).__name__}: {e}"

        await self._refund(operating, funding)
        return self._done(False, detail)

    async def _fetch_balances(self, address: str) -> Balances:
        (knots,) = await self._chain.read(self._contracts.knot_balance_of(address), ["uint256"])
        return Balances(
            knots=int(knots),
            serum=await self._api.get_on_chain_token_balance(),
            in_game_knots=await self._api.get_in_game_token_balance(),
            in_game_serum=await self._api.get_in_game_serum_balance(),
            in_game_fighters=await self._api.get_in_game_held_items(),
            wallet_fighters=await self._api.list_owned_items(0, INVENTORY_PAGE_LIMIT),
        )

    async def _execute(self, call: ContractCall, funding: LocalAccount, operating: LocalAccount) -> ExecutionResult:
        return await self._executor.execute(call, funding, operating, self._settings.max_retries)

    async def _recover(
        self,
        balances: Balances,
        operating: LocalAccount,
        funding: LocalAccount,
        destination: str,
    ) -> None:
        if self._options.verify_knots:
            await self._top_up_knots(balances, operating, funding)

        await self._claim_serum(balances, operating, funding, destination)

        claimed = await self._claim_fighters(balances, operating, funding)

        token_ids = resolve_token_ids(claimed, self._options.manual_token_ids)
        if token_ids is None:
            token_ids = await self._api.list_owned_items(0, INVENTORY_PAGE_LIMIT)
            if token_ids:
                logger.info(f"Using fighters from inventory: {token_ids}")

        if token_ids:
            await self._transfer_fighters(token_ids, operating, funding, destination)

    async def _top_up_knots(self, balances: Balances, operating: LocalAccount, funding: LocalAccount) -> None:
        required = required_knots(
            len(balances.in_game_fighters),
            self._settings.fighter_claim_batch,
            self._settings.knots_per_batch,
        ) * WEI_PER_TOKEN
        missing = required - balances.in_game_knots
        if missing <= 0:
            return

        self._enter(WorkflowState.KNOTS_TOP_UP)
        logger.info(f"In-game knots short by {missing / WEI_PER_TOKEN:g}")
        if missing > balances.knots:
            raise _Stop("insufficient knots on wallet")

        vault = self._contracts.knot_vault
        (allowance,) = await self._chain.read(
            self._contracts.knot_allowance(operating.address, vault), ["uint256"]
        )
        if int(allowance) < missing:
            result = await self._execute(self._contracts.knot_approve(vault, MAX_UINT_APPROVAL), funding, operating)
            if not result.success:
                raise _Stop(f"knot approval failed: {result.detail}")

        result = await self._execute(self._contracts.knot_deposit(operating.address, missing), funding, operating)
        if not result.success:
            raise _Stop(f"knot deposit failed: {result.detail}")
        logger.info(f"Deposited {missing / WEI_PER_TOKEN:g} knots, waiting for the API to see it")
        await asyncio.sleep(self._settings.knots_settle_seconds)

    async def _claim_serum(
        self,
        balances: Balances,
        operating: LocalAccount,
        funding: LocalAccount,
        destination: str,
    ) -> None:
        net = 0
        if self._options.claim_serum and balances.in_game_serum >= self._settings.serum_min_claim:
            self._enter(WorkflowState.SERUM_CLAIM)
            voucher = await self._api.pre_claim_serum(balances.in_game_serum)
            if not voucher.success:
                raise _Stop(f"serum pre-claim rejected: {voucher.error_reason}")
            result = await self._execute(self._contracts.serum_withdraw(operating.address, voucher), funding, operating)
            if not result.success:
                # Fighters must stay in game until the serum is out, so stop here.
                raise _Stop(f"serum withdraw failed: {result.detail}")
            net = voucher.amount
            logger.info(f"Withdrew {net} serum")

        net = net or balances.serum
        if net > 0:
            result = await self._execute(self._contracts.serum_transfer(destination, net), funding, operating)
            if result.success:
                logger.info(f"Transferred {net} serum to {destination}")
            else:
                logger.warning(f"Serum transfer failed: {result.detail}")

    async def _claim_fighters(
        self,
        balances: Balances,
        operating: LocalAccount,
        funding: LocalAccount,
    ) -> Optional[List[int]]:
        if not (self._options.claim_fighters and balances.in_game_fighters):
            return None

        self._enter(WorkflowState.FIGHTER_CLAIM)
        if self._options.manual_voucher is not None:
            voucher = self._options.manual_voucher
            logger.info(f"Using supplied fighter voucher {voucher.transaction_id}")
        else:
            batch = balances.in_game_fighters[: self._settings.fighter_claim_batch]
            voucher = await self._api.pre_claim_items(batch)
            if not voucher.success:
                raise _Stop(f"fighter pre-claim rejected: {voucher.error_reason}")

        result = await self._execute(self._contracts.fighter_batch_claim(operating.address, voucher), funding, operating)
        if not result.success:
            logger.warning(f"Fighter claim failed: {result.detail}")
            return None
        self._outcome.claim = voucher.to_claim_record()
        logger.info(f"Claimed fighters {voucher.token_ids}")
        return list(voucher.token_ids)

    async def _transfer_fighters(
        self,
        token_ids: List[int],
        operating: LocalAccount,
        funding: LocalAccount,
        destination: str,
    ) -> None:
        self._enter(WorkflowState.ASSET_TRANSFER)
        for token_id in token_ids:
            call = self._contracts.fighter_transfer(operating.address, destination, token_id)
            result = await self._execute(call, funding, operating)
            if result.success:
                self._outcome.transferred.append(token_id)
            else:
                self._outcome.failed_transfers.append(token_id)

        if self._outcome.failed_transfers:
            logger.warning(
                f"Transferred {len(self._outcome.transferred)} of {len(token_ids)} fighters; "
                f"failed: {self._outcome.failed_transfers}"
            )
        else:
            logger.info(f"Transferred all {len(token_ids)} fighters")

    async def _refund(self, operating: LocalAccount, funding: LocalAccount) -> None:
        result = await self._executor.return_unused_funds(
            operating, funding, self._settings.max_retries_refund
        )
        self._outcome.refund = result
        self._enter(WorkflowState.REFUNDED)
        if result.success:
            logger.info(f"Refunded leftover gas money: {result.transaction}")
