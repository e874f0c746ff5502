"""Background queue that turns settled payments into receipts.

Callers hand over a :class:`ReceiptJob` and return immediately; the worker
task generates the document later and only ever logs its failures.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from payment_service.models.receipt import ReceiptType
from payment_service.services.receipt_service import ReceiptService


@dataclass
class ReceiptJob:
    payment_order_id: str
    receipt_type: ReceiptType = ReceiptType.PAYMENT_RECEIPT
    refund: Dict[str, Any] = field(default_factory=dict)


class ReceiptWorker:
    def __init__(self, receipt_service: ReceiptService):
        self.receipt_service = receipt_service
        self._queue: "asyncio.Queue[Optional[ReceiptJob]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, job: ReceiptJob) -> None:
        self._queue.put_nowait(job)
        logging.info("Queued %s for payment %s", job.receipt_type.value, job.payment_order_id)

    async def handle(self, job: ReceiptJob) -> bool:
        """Run one job; returns False when generation failed."""
        try:
            if job.receipt_type is ReceiptType.PAYMENT_RECEIPT:
                await self.receipt_service.generate_payment_receipt(job.payment_order_id)
            elif job.receipt_type is ReceiptType.REFUND_RECEIPT:
                await self.receipt_service.generate_refund_receipt(job.payment_order_id, job.refund)
            else:
                logging.warning("No generator for receipt type %s", job.receipt_type.value)
                return False
        except Exception:
            logging.exception(
                "Receipt generation failed for payment %s (%s)",
                job.payment_order_id,
                job.receipt_type.value,
            )
            return False
        return True

    async def drain(self) -> int:
        """Process everything queued right now. Returns the number of jobs run."""
        processed = 0
        while not self._queue.empty():
            job = self._queue.get_nowait()
            try:
                if job is not None:
                    await self.handle(job)
                    processed += 1
            finally:
                self._queue.task_done()
        return processed

    async def _run(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job is None:
                    return
                await self.handle(job)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Let the consumer finish its current and queued jobs, then exit."""
        if self._task is not None:
            # None is the stop marker; the job in progress is never cancelled
            self._queue.put_nowait(None)
            await self._task
            self._task = None
        # Jobs submitted after the stop marker
        await self.drain()
