"""Worker process: runs one account's workflow and reports once."""
from __future__ import annotations

import asyncio
import logging
import multiprocessing
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from eth_account import Account

from .chain import ChainClient, RPCChainClient
from .config import RescueSettings
from .contracts import GameContracts
from .executor import TransactionExecutor
from .game_api import GameApiClient
from .logging_config import set_account_context, set_worker_context, setup_logging
from .messages import Completed, Fatal, NotCompleted
from .models import AccountRecord
from .sequencer import NonceSource, SequencerClient
from .workflow import RecoveryWorkflow, WorkflowOptions, WorkflowOutcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerJob:
    """Everything a worker process needs; pickled across the spawn boundary."""
    worker_id: str
    account: AccountRecord
    settings: RescueSettings
    options: WorkflowOptions = field(default_factory=WorkflowOptions)


class WorkerHandle(Protocol):
    def is_alive(self) -> bool: ...

    def join(self, timeout: Optional[float] = None) -> None: ...


async def process_account(
    account: AccountRecord,
    settings: RescueSettings,
    nonces: NonceSource,
    options: Optional[WorkflowOptions] = None,
    chain: Optional[ChainClient] = None,
) -> WorkflowOutcome:
    """Run the recovery workflow for ``account`` in the current event loop."""
    own_chain = chain is None
    if chain is None:
        chain = RPCChainClient(settings.rpc_url, settings.chain_id)
    api = GameApiClient(settings.game_api, account.address, settings.contracts.fighter_nft)
    workflow = RecoveryWorkflow(
        chain=chain,
        api=api,
        executor=TransactionExecutor(chain, nonces, settings),
        contracts=GameContracts(settings.contracts),
        settings=settings,
        options=options,
    )
    funding = Account.from_key(settings.funding_private_key.get_secret_value())
    operating = Account.from_key(account.private_key)
    destination = account.new_address or funding.address
    try:
        return await workflow.run(operating, funding, destination)
    finally:
        await api.close()
        if own_chain:
            await chain.close()


async def _run(job: WorkerJob, outbox: Any, inbox: Any) -> WorkflowOutcome:
    nonces = SequencerClient(job.worker_id, outbox, inbox, job.settings.nonce_timeout_seconds)
    return await process_account(job.account, job.settings, nonces, job.options)


def run_worker(job: WorkerJob, outbox: Any, inbox: Any) -> None:
    """Process entrypoint. Posts exactly one terminal message to ``outbox``."""
    if multiprocessing.current_process().name != "MainProcess":
        settings = job.settings
        setup_logging(settings.log_level, settings.log_json, settings.log_dir)
    set_account_context(job.account.label)
    set_worker_context(job.worker_id)

    try:
        outcome = asyncio.run(_run(job, outbox, inbox))
    except Exception as e:
        logger.exception(f"Worker {job.worker_id} crashed: {e}")
        outbox.put(Fatal(worker_id=job.worker_id, detail=f"{type(e).__name__}: {e}"))
        return

    if outcome.completed:
        outbox.put(Completed(worker_id=job.worker_id, patch=outcome.to_patch()))
    else:
        outbox.put(NotCompleted(worker_id=job.worker_id, detail=outcome.detail, patch=outcome.to_patch()))


def spawn_process(job: WorkerJob, outbox: Any, inbox: Any) -> WorkerHandle:
    """Start ``run_worker`` in a fresh interpreter."""
    ctx = multiprocessing.get_context("spawn")
    process = ctx.Process(
        target=run_worker,
        args=(job, outbox, inbox),
        name=f"worker-{job.worker_id}",
    )
    process.start()
    return process
