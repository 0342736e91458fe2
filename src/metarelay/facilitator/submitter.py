"""
Transaction Submitter

Single writer for the relayer account. Exactly one worker task signs and
broadcasts transactions, so the relayer's account nonce is never handed out
twice. Handlers enqueue jobs on a bounded queue and await the resulting
transaction hash.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from ..adapters.bases import ChainGateway
from ..engine.exceptions import RelayError, RelayerBusy, StaleRelayerNonce
from ..schemas.bases import FacilitationRequest

logger = logging.getLogger(__name__)


@dataclass
class _Job:
    kind: str
    future: asyncio.Future
    request: Optional[FacilitationRequest] = None
    charge_amount: int = 0
    gas_limit: int = 0
    gas_price: int = 0
    recipient: Optional[str] = None
    amount: int = 0


class TransactionSubmitter:
    """
    Serializes every relayer-signed transaction through one queue.

    A job whose caller was cancelled before the worker picked it up is
    dropped; once broadcast, a transaction is never withdrawn or replaced.

    Args:
        gateway: Chain access holding the relayer key.
        queue_size: Jobs that may wait; a full queue fails fast with ``RelayerBusy``.
    """

    def __init__(self, gateway: ChainGateway, *, queue_size: int = 64):
        self._gateway = gateway
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._next_nonce: Optional[int] = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="metarelay-submitter")

    async def stop(self) -> None:
        """Stop the worker and fail every job still waiting in the queue."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        while not self._queue.empty():
            job = self._queue.get_nowait()
            if not job.future.done():
                job.future.set_exception(RelayerBusy("Submitter stopped before broadcast"))
        self._next_nonce = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit_execution(
        self,
        request: FacilitationRequest,
        charge_amount: int,
        *,
        gas_limit: int,
        gas_price: int,
    ) -> str:
        """
        Queue ``executeAuthorizedCall`` and wait for its broadcast.

        Returns:
            str: Transaction hash.

        Raises:
            RelayerBusy: If the queue is full.
            RelayTransactionFailed: If broadcasting failed.
        """
        job = _Job(
            kind="execute",
            future=asyncio.get_running_loop().create_future(),
            request=request,
            charge_amount=charge_amount,
            gas_limit=gas_limit,
            gas_price=gas_price,
        )
        return await self._enqueue(job)

    async def submit_mint(self, recipient: str, amount: int) -> str:
        job = _Job(
            kind="mint",
            future=asyncio.get_running_loop().create_future(),
            recipient=recipient,
            amount=amount,
        )
        return await self._enqueue(job)

    async def _enqueue(self, job: _Job) -> str:
        if not self.running:
            await self.start()
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            raise RelayerBusy(
                "Relayer submission queue is full",
                details={"queueSize": self._queue.maxsize},
            )
        return await job.future

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job.future.cancelled():
                    logger.info("Dropping %s job cancelled before broadcast", job.kind)
                    continue
                try:
                    tx_hash = await self._broadcast(job)
                except RelayError as e:
                    if not job.future.done():
                        job.future.set_exception(e)
                except Exception as e:
                    logger.exception("Unexpected submitter failure for %s job", job.kind)
                    self._next_nonce = None
                    if not job.future.done():
                        job.future.set_exception(e)
                else:
                    if not job.future.done():
                        job.future.set_result(tx_hash)
            finally:
                self._queue.task_done()

    async def _broadcast(self, job: _Job) -> str:
        if self._next_nonce is None:
            self._next_nonce = await self._gateway.relayer_tx_count()
        try:
            tx_hash = await self._send(job, self._next_nonce)
        except StaleRelayerNonce:
            logger.warning("Relayer nonce %d stale; resyncing from chain", self._next_nonce)
            self._next_nonce = await self._gateway.relayer_tx_count()
            try:
                tx_hash = await self._send(job, self._next_nonce)
            except RelayError:
                self._next_nonce = None
                raise
        except RelayError:
            # the node may or may not have accepted the nonce; re-read next time
            self._next_nonce = None
            raise
        self._next_nonce += 1
        return tx_hash

    async def _send(self, job: _Job, tx_nonce: int) -> str:
        if job.kind == "execute":
            return await self._gateway.submit_execution(
                job.request,
                job.charge_amount,
                tx_nonce=tx_nonce,
                gas_limit=job.gas_limit,
                gas_price=job.gas_price,
            )
        return await self._gateway.submit_mint(job.recipient, job.amount, tx_nonce=tx_nonce)
