"""
Job dispatcher: the main control loop.

Each round reads the pending accounts, provisions a vault for any account
without one, runs up to ``threads_count`` workers, serves their nonce
requests in arrival order and waits for every worker to settle before
persisting results. The loop ends when a fresh read finds nothing pending.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import multiprocessing
import queue
from typing import Any, Callable, Dict, List, Optional, Protocol

from .config import RescueSettings
from .custody import Vault
from .exceptions import ProvisioningError, StoreError
from .messages import Completed, Fatal, NonceRequest, NotCompleted, WorkerMessage
from .models import AccountPatch, AccountRecord, AccountStatus, BatchSummary, JobResult
from .sequencer import NonceSequencer
from .store import AccountStore
from .worker import WorkerHandle, WorkerJob, spawn_process
from .workflow import WorkflowOptions

logger = logging.getLogger(__name__)

Launcher = Callable[[WorkerJob, Any, Any], WorkerHandle]


class VaultProvisioner(Protocol):
    async def create_vault(
        self,
        name: str,
        hidden: Optional[bool] = None,
        reference_address: Optional[str] = None,
        auto_fuel: Optional[bool] = None,
    ) -> Vault: ...

    async def create_asset(self, vault_id: str, asset_id: Optional[str] = None) -> str: ...


class Dispatcher:
    """Owns the nonce sequencer and drives batches of workers."""

    def __init__(
        self,
        settings: RescueSettings,
        store: AccountStore,
        custody: VaultProvisioner,
        sequencer: NonceSequencer,
        options: Optional[WorkflowOptions] = None,
        launcher: Launcher = spawn_process,
        queue_factory: Optional[Callable[[], Any]] = None,
    ):
        self._settings = settings
        self._store = store
        self._custody = custody
        self._sequencer = sequencer
        self._options = options or WorkflowOptions()
        self._launcher = launcher
        self._queue_factory = queue_factory or multiprocessing.get_context("spawn").Queue

    @property
    def sequencer(self) -> NonceSequencer:
        return self._sequencer

    async def run(self) -> List[BatchSummary]:
        summaries: List[BatchSummary] = []
        pending = await self._store.read_pending()
        while pending:
            max_rounds = self._settings.max_rounds
            if max_rounds is not None and len(summaries) >= max_rounds:
                logger.warning(f"Stopping after {max_rounds} rounds with {len(pending)} accounts pending")
                break

            summary = BatchSummary(round=len(summaries) + 1)
            batch = pending[: self._settings.threads_count]
            prepared = [await self.prepare(account) for account in batch]

            results = await self.run_batch(prepared, summary.round)
            for result in results:
                summary.record(result)
            summary.dispatched = len(results)
            await self._persist(results)

            logger.info(
                f"Round {summary.round}: dispatched={summary.dispatched} completed={summary.completed} "
                f"not_completed={summary.not_completed} crashed={summary.crashed} "
                f"nonces_issued={self._sequencer.issued}"
            )
            summaries.append(summary)
            pending = await self._store.read_pending()

        if not pending:
            logger.info("No pending accounts left")
        return summaries

    async def prepare(self, account: AccountRecord) -> AccountRecord:
        """Bind a custodial vault to ``account`` if it has none.

        Raises:
            ProvisioningError: the vault could not be created or persisted
        """
        if account.is_provisioned:
            return account

        if account.vault_id:
            vault = Vault(id=account.vault_id, name=account.label)
        else:
            vault_number = await self._store.current_max_vault_id() + 1
            name = f"{self._settings.fireblocks.vault_name_prefix}{vault_number}"
            vault = await self._custody.create_vault(name, reference_address=account.address)
            # Record the vault before its asset so a failed create_asset is resumed, not re-created.
            await self._record(account.address, AccountPatch(vault_id=vault.id), vault.id)
        address = await self._custody.create_asset(vault.id)
        updated = await self._record(account.address, AccountPatch(new_address=address), vault.id)
        logger.info(f"Provisioned vault {vault.id} ({vault.name}) for {account.address} -> {address}")
        return updated

    async def _record(self, address: str, patch: AccountPatch, vault_id: str) -> AccountRecord:
        try:
            return await self._store.update(address, patch)
        except StoreError as e:
            raise ProvisioningError(
                f"Vault {vault_id} created but not recorded for {address}",
                details={"vault_id": vault_id, **patch.present()},
            ) from e

    async def run_batch(self, accounts: List[AccountRecord], round_number: int = 1) -> List[JobResult]:
        upstream = self._queue_factory()
        jobs: Dict[str, WorkerJob] = {}
        replies: Dict[str, Any] = {}
        handles: Dict[str, WorkerHandle] = {}

        for index, account in enumerate(accounts):
            job = WorkerJob(
                worker_id=f"{round_number}-{index}",
                account=account,
                settings=self._settings,
                options=self._options,
            )
            jobs[job.worker_id] = job
            replies[job.worker_id] = self._queue_factory()
            handles[job.worker_id] = self._launcher(job, upstream, replies[job.worker_id])
            logger.info(f"Started worker {job.worker_id} for {account.label}")

        results: Dict[str, JobResult] = {}
        while len(results) < len(jobs):
            try:
                message = await asyncio.to_thread(upstream.get, True, self._settings.dispatcher_poll_seconds)
            except queue.Empty:
                await self._reap(upstream, jobs, replies, handles, results)
                continue
            await self._handle(message, jobs, replies, results)

        for worker_id, handle in handles.items():
            await asyncio.to_thread(handle.join, self._settings.worker_join_seconds)
            if handle.is_alive():
                logger.warning(f"Worker {worker_id} still alive after reporting, terminating")
                terminate = getattr(handle, "terminate", None)
                if terminate is not None:
                    terminate()

        return [results[worker_id] for worker_id in jobs]

    async def _handle(
        self,
        message: WorkerMessage,
        jobs: Dict[str, WorkerJob],
        replies: Dict[str, Any],
        results: Dict[str, JobResult],
    ) -> None:
        job = jobs.get(message.worker_id)
        if job is None:
            logger.warning(f"Message from unknown worker {message.worker_id}: {message!r}")
            return

        if isinstance(message, NonceRequest):
            reply = await self._sequencer.handle(message)
            replies[message.worker_id].put(reply)
            return

        if message.worker_id in results:
            logger.warning(f"Duplicate terminal message from {message.worker_id}, ignoring")
            return

        address = job.account.address
        if isinstance(message, Completed):
            results[message.worker_id] = JobResult(address=address, completed=True, patch=message.patch)
        elif isinstance(message, NotCompleted):
            results[message.worker_id] = JobResult(
                address=address, completed=False, error=message.detail, patch=message.patch
            )
        elif isinstance(message, Fatal):
            logger.error(f"Worker {message.worker_id} ({job.account.label}) crashed: {message.detail}")
            results[message.worker_id] = JobResult(
                address=address, completed=False, error=message.detail, crashed=True
            )
        else:
            logger.warning(f"Unexpected message from {message.worker_id}: {message!r}")

    async def _reap(
        self,
        upstream: Any,
        jobs: Dict[str, WorkerJob],
        replies: Dict[str, Any],
        handles: Dict[str, WorkerHandle],
        results: Dict[str, JobResult],
    ) -> None:
        """Record workers that exited without a terminal message as crashed."""
        dead = [
            worker_id
            for worker_id, handle in handles.items()
            if worker_id not in results and not handle.is_alive()
        ]
        if not dead:
            return

        # A worker may have reported just before exiting
        while True:
            try:
                message = upstream.get_nowait()
            except queue.Empty:
                break
            await self._handle(message, jobs, replies, results)

        for worker_id in dead:
            if worker_id in results:
                continue
            exitcode = getattr(handles[worker_id], "exitcode", None)
            logger.error(f"Worker {worker_id} exited without reporting (exit code {exitcode})")
            results[worker_id] = JobResult(
                address=jobs[worker_id].account.address,
                completed=False,
                error=f"exited without reporting (exit code {exitcode})",
                crashed=True,
            )

    async def _persist(self, results: List[JobResult]) -> None:
        for result in results:
            patch = result.patch or AccountPatch()
            if result.completed:
                patch = dataclasses.replace(patch, status=AccountStatus.COMPLETED)
            elif result.crashed:
                logger.warning(f"{result.address} stays pending after crash: {result.error}")
            if patch.is_empty():
                continue
            try:
                await self._store.update(result.address, patch)
            except StoreError as e:
                logger.error(f"Could not persist result for {result.address}: {e}")
