"""
Worker Pool

N asyncio slots sharing one broker. Each slot loops
``deliver -> processor -> ack | nack``; any exception out of the processor,
domain or not, becomes a nack and the slot moves on to the next delivery.
"""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from pixelqueue.core.logging import clear_job_context, get_logger
from pixelqueue.queue.broker import Broker, BrokerClosedError, Delivery

logger = get_logger(__name__)

Processor = Callable[[Delivery], Awaitable[object]]


class WorkerPool:
    """Bounded-concurrency executor for broker deliveries."""

    def __init__(self, broker: Broker, processor: Processor, concurrency: int = 5):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self._broker = broker
        self._processor = processor
        self.concurrency = concurrency
        self._tasks: List[asyncio.Task] = []
        self._busy: Dict[int, bool] = {}
        self._stopping = False

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    @property
    def busy_slots(self) -> int:
        return sum(self._busy.values())

    async def start(self):
        if self._tasks:
            return
        self._stopping = False
        for index in range(self.concurrency):
            self._busy[index] = False
            self._tasks.append(asyncio.create_task(self._slot(index), name=f"worker-slot-{index}"))
        logger.info("worker_pool_started", concurrency=self.concurrency)

    async def _slot(self, index: int):
        while not self._stopping:
            try:
                delivery = await self._broker.deliver()
            except BrokerClosedError:
                break

            self._busy[index] = True
            try:
                await self._handle(delivery)
            finally:
                self._busy[index] = False
                clear_job_context()

        logger.debug("worker_slot_exited", slot=index)

    async def _handle(self, delivery: Delivery):
        try:
            await self._processor(delivery)
        except Exception as e:
            logger.warning(
                "delivery_failed",
                job_id=delivery.payload.job_id,
                attempt=delivery.attempt,
                error=str(e),
                error_type=type(e).__name__
            )
            try:
                await self._broker.nack(delivery.token, e)
            except Exception as nack_error:
                logger.exception("nack_failed", job_id=delivery.payload.job_id, error=str(nack_error))
            return

        try:
            await self._broker.ack(delivery.token)
        except Exception as ack_error:
            logger.exception("ack_failed", job_id=delivery.payload.job_id, error=str(ack_error))

    async def stop(self, drain: bool = True):
        """
        Stop the slots.

        With ``drain`` the slots holding a delivery finish it first; idle
        slots are cancelled while they wait for work.
        """
        self._stopping = True
        for index, task in enumerate(self._tasks):
            if not drain or not self._busy.get(index):
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._busy = {}
        logger.info("worker_pool_stopped", drained=drain)

    async def run_until_idle(self, poll_interval_s: float = 0.01, timeout_s: Optional[float] = None):
        """Start if needed and return once the broker and every slot are idle."""
        await self.start()

        async def _wait():
            while True:
                await asyncio.sleep(poll_interval_s)
                if self.busy_slots == 0 and await self._broker.is_idle():
                    return

        try:
            await asyncio.wait_for(_wait(), timeout_s)
        finally:
            await self.stop(drain=True)
