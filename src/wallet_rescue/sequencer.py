"""
Funding wallet nonce sequencing.

Features:
- One counter for the funding wallet, lazily seeded from the chain
- Strict FIFO issuance under an asyncio lock
- A worker-side client that reaches the sequencer over queues, with a
  bounded receive instead of an open-ended wait
"""
from __future__ import annotations

import asyncio
import logging
import queue
import time
from typing import Any, Optional, Protocol

from .chain import ChainClient
from .exceptions import NonceTimeoutError, NonceUnavailableError
from .messages import NonceGranted, NonceRefused, NonceRequest, SequencerReply

logger = logging.getLogger(__name__)


class NonceSource(Protocol):
    async def next_nonce(self) -> int: ...


class NonceSequencer:
    """Sole issuer of funding wallet nonces.

    The first request reads the wallet's pending transaction count and seeds
    the counter with ``count - 1``; every request then increments it and
    returns the new value. Requests are served one at a time in arrival
    order.
    """

    def __init__(self, chain: ChainClient, address: str):
        self._chain = chain
        self._address = address
        self._lock = asyncio.Lock()
        self._counter: Optional[int] = None
        self._issued = 0

    @property
    def address(self) -> str:
        return self._address

    @property
    def issued(self) -> int:
        return self._issued

    @property
    def current(self) -> Optional[int]:
        return self._counter

    async def next_nonce(self) -> int:
        async with self._lock:
            if self._counter is None:
                count = await self._chain.get_transaction_count(self._address, "pending")
                self._counter = count - 1
                logger.info(f"Nonce sequencer seeded at {count} for {self._address}")
            self._counter += 1
            self._issued += 1
            return self._counter

    async def handle(self, request: NonceRequest) -> SequencerReply:
        """Answer one worker request; a failed chain read becomes a refusal."""
        try:
            nonce = await self.next_nonce()
        except Exception as e:
            logger.error(f"Nonce request {request.correlation_id} from {request.worker_id} failed: {e}")
            return NonceRefused(correlation_id=request.correlation_id, detail=str(e))
        logger.debug(f"Issued nonce {nonce} to {request.worker_id}")
        return NonceGranted(correlation_id=request.correlation_id, nonce=nonce)


class SequencerClient:
    """Worker-side handle on the dispatcher's sequencer.

    ``outbox`` is the shared worker-to-dispatcher queue and ``inbox`` the
    queue the dispatcher answers this worker on. Both only need ``put`` and
    ``get(block, timeout)``, so ``multiprocessing`` and ``queue`` queues work.
    """

    def __init__(self, worker_id: str, outbox: Any, inbox: Any, timeout: float = 120.0):
        self._worker_id = worker_id
        self._outbox = outbox
        self._inbox = inbox
        self._timeout = timeout

    async def next_nonce(self) -> int:
        request = NonceRequest(worker_id=self._worker_id)
        self._outbox.put(request)
        reply = await asyncio.to_thread(self._receive, request.correlation_id)
        if isinstance(reply, NonceRefused):
            raise NonceUnavailableError(
                f"Sequencer refused nonce: {reply.detail}",
                details={"worker_id": self._worker_id},
            )
        return reply.nonce

    def _receive(self, correlation_id: str) -> SequencerReply:
        deadline = time.monotonic() + self._timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise NonceTimeoutError(self._worker_id, self._timeout)
            try:
                reply = self._inbox.get(True, remaining)
            except queue.Empty:
                raise NonceTimeoutError(self._worker_id, self._timeout) from None
            if reply.correlation_id == correlation_id:
                return reply
            # Late answer to a request that already timed out
            logger.warning(f"Discarding stale nonce reply {reply.correlation_id}")
