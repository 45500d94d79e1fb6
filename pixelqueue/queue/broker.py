"""
Priority Queue / Broker

Delivers job payloads to worker slots:
- FIFO within a priority class, lower weight first across classes
- every Nth delivery takes the oldest ready payload of any class, so a
  saturated high-priority stream cannot starve ``low`` forever
- per-job attempt budget with injected backoff between attempts
- a delivery is held exclusively until acked, nacked or its visibility
  timeout expires

Failed deliveries are classified here: retryable ones go back on the queue
after their backoff delay, everything else is handed to the dead-letter
callback exactly once.
"""

import asyncio
import heapq
import itertools
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from pixelqueue.core.exceptions import InternalError, InvalidInputError
from pixelqueue.core.logging import get_logger
from pixelqueue.core.metrics import queue_depth_gauge, record_dead_letter, record_retry
from pixelqueue.modules.jobs.models import JobPayload, Priority
from pixelqueue.queue.backoff import BackoffFn, make_backoff
from pixelqueue.queue.retry import FailureClassification, classify

logger = get_logger(__name__)

DEFAULT_PRIORITY_WEIGHTS = {"high": 1, "normal": 5, "low": 10}

RetryCallback = Callable[[JobPayload, BaseException, int, FailureClassification, float], Awaitable[None]]
DeadLetterCallback = Callable[[JobPayload, BaseException, int, FailureClassification], Awaitable[None]]


class BrokerClosedError(Exception):
    """Raised by ``deliver`` and ``enqueue`` once the broker is closed."""


@dataclass(frozen=True)
class Delivery:
    token: str          # receipt passed back to ack/nack
    queue_token: str    # stable token returned by enqueue
    payload: JobPayload
    attempt: int        # 1-based
    max_attempts: int


@dataclass(frozen=True)
class NackOutcome:
    requeued: bool
    delay_s: float
    classification: FailureClassification

    @property
    def dead_lettered(self) -> bool:
        return not self.requeued


def receipt_for(queue_token: str, attempt: int) -> str:
    return f"{queue_token}#{attempt}"


class Broker(ABC):
    """Interface for job brokers plus the failure policy they share."""

    def __init__(
        self,
        backoff: Optional[BackoffFn] = None,
        max_attempts: int = 3,
        priority_weights: Optional[Dict[str, int]] = None,
        fair_share_interval: int = 5,
        visibility_timeout_s: float = 600.0,
        on_retry: Optional[RetryCallback] = None,
        on_dead_letter: Optional[DeadLetterCallback] = None
    ):
        if max_attempts < 1:
            raise InvalidInputError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self._backoff = backoff or make_backoff()
        self._weights = dict(priority_weights or DEFAULT_PRIORITY_WEIGHTS)
        unknown = set(self._weights) - {p.value for p in Priority}
        if unknown:
            raise InvalidInputError(f"Unknown priority classes in weights: {sorted(unknown)}")
        self._fair_share_interval = fair_share_interval
        self._visibility_timeout_s = visibility_timeout_s
        self._on_retry = on_retry
        self._on_dead_letter = on_dead_letter

    def set_callbacks(
        self,
        on_retry: Optional[RetryCallback] = None,
        on_dead_letter: Optional[DeadLetterCallback] = None
    ):
        """Wire the retry / dead-letter hooks after construction."""
        if on_retry is not None:
            self._on_retry = on_retry
        if on_dead_letter is not None:
            self._on_dead_letter = on_dead_letter

    def weight_of(self, priority: Any) -> int:
        try:
            return self._weights[Priority(priority).value]
        except (ValueError, KeyError):
            raise InvalidInputError(f"Unknown priority class: {priority!r}")

    def _priorities_by_weight(self) -> List[str]:
        return sorted(self._weights, key=lambda p: self._weights[p])

    def _is_fair_share_turn(self, delivery_number: int) -> bool:
        return bool(self._fair_share_interval) and delivery_number % self._fair_share_interval == 0

    async def _call_hook(self, hook, *args):
        if hook is None:
            return
        try:
            await hook(*args)
        except Exception as e:
            logger.exception("broker_hook_failed", hook=getattr(hook, "__name__", str(hook)), error=str(e))

    async def _resolve_failure(
        self,
        payload: JobPayload,
        error: BaseException,
        attempt: int,
        max_attempts: int
    ) -> NackOutcome:
        """Classify a failed attempt and run the matching hook."""
        classification = classify(error, attempt, max_attempts)

        if classification.retryable:
            delay = self._backoff(attempt)
            record_retry(classification.code.value)
            logger.warning(
                "job_retry_scheduled",
                job_id=payload.job_id,
                attempt=attempt,
                max_attempts=max_attempts,
                error_code=classification.code.value,
                delay_s=round(delay, 3)
            )
            await self._call_hook(self._on_retry, payload, error, attempt, classification, delay)
            return NackOutcome(requeued=True, delay_s=delay, classification=classification)

        record_dead_letter(classification.code.value)
        logger.error(
            "job_dead_lettered",
            job_id=payload.job_id,
            attempt=attempt,
            max_attempts=max_attempts,
            error_code=classification.code.value,
            reason=classification.reason
        )
        await self._call_hook(self._on_dead_letter, payload, error, attempt, classification)
        return NackOutcome(requeued=False, delay_s=0.0, classification=classification)

    @abstractmethod
    async def enqueue(
        self,
        payload: JobPayload,
        priority: Optional[Priority] = None,
        max_attempts: Optional[int] = None
    ) -> str:
        """Queue a payload. Returns its queue token."""
        pass

    @abstractmethod
    async def deliver(self) -> Delivery:
        """Suspend until a payload is ready, then hand it out exclusively."""
        pass

    @abstractmethod
    async def ack(self, token: str) -> bool:
        """Mark a delivery done. Returns False for unknown or stale receipts."""
        pass

    @abstractmethod
    async def nack(self, token: str, error: BaseException) -> Optional[NackOutcome]:
        """Fail a delivery: requeue with backoff or dead-letter."""
        pass

    @abstractmethod
    async def pause(self):
        """Stop handing out deliveries. In-flight attempts are not interrupted."""
        pass

    @abstractmethod
    async def resume(self):
        pass

    @abstractmethod
    async def stats(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def is_idle(self) -> bool:
        """True when nothing is ready, delayed or in flight."""
        pass

    @abstractmethod
    async def close(self):
        pass


@dataclass
class _Entry:
    token: str
    payload: JobPayload
    priority: str
    max_attempts: int
    attempts: int = 0
    seq: int = 0


class InMemoryBroker(Broker):
    """
    Broker held in process memory, shared by the worker slots of one event loop.

    All bookkeeping happens under one ``asyncio.Condition``; hooks run
    outside it so a slow store write never blocks other slots.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, **kwargs):
        super().__init__(**kwargs)
        self._clock = clock
        self._cond = asyncio.Condition()
        self._ready: Dict[str, Deque[_Entry]] = {p: deque() for p in self._weights}
        self._delayed: List[Tuple[float, int, _Entry]] = []
        self._in_flight: Dict[str, Tuple[_Entry, float]] = {}
        self._by_job: Dict[str, str] = {}
        self._seq = itertools.count()
        self._deliveries = 0
        self._dead_lettered = 0
        self._paused = False
        self._closed = False

    # -------------------------------------------------------------------------
    # Internal helpers (call with the condition held)
    # -------------------------------------------------------------------------

    def _update_depth(self, priority: str):
        queue_depth_gauge.labels(priority=priority).set(len(self._ready[priority]))

    def _push_ready(self, entry: _Entry):
        entry.seq = next(self._seq)
        self._ready[entry.priority].append(entry)
        self._update_depth(entry.priority)

    def _promote_due(self, now: float):
        while self._delayed and self._delayed[0][0] <= now:
            _, _, entry = heapq.heappop(self._delayed)
            self._push_ready(entry)

    def _reclaim_expired(self, now: float) -> List[_Entry]:
        """Return timed-out deliveries to the queue; hand back exhausted ones."""
        exhausted = []
        expired = [receipt for receipt, (_, deadline) in self._in_flight.items() if deadline <= now]
        for receipt in expired:
            entry, _ = self._in_flight.pop(receipt)
            logger.warning(
                "delivery_visibility_expired",
                job_id=entry.payload.job_id,
                attempt=entry.attempts
            )
            if entry.attempts >= entry.max_attempts:
                exhausted.append(entry)
            else:
                self._push_ready(entry)
        return exhausted

    def _pick(self) -> Optional[_Entry]:
        candidates = [p for p in self._priorities_by_weight() if self._ready[p]]
        if not candidates:
            return None
        self._deliveries += 1
        if self._is_fair_share_turn(self._deliveries):
            priority = min(candidates, key=lambda p: self._ready[p][0].seq)
        else:
            priority = candidates[0]
        entry = self._ready[priority].popleft()
        self._update_depth(priority)
        return entry

    def _next_wakeup(self, now: float) -> Optional[float]:
        deadlines = [deadline for _, deadline in self._in_flight.values()]
        if self._delayed and not self._paused:
            deadlines.append(self._delayed[0][0])
        if not deadlines:
            return None
        return max(min(deadlines) - now, 0.0)

    # -------------------------------------------------------------------------
    # Broker API
    # -------------------------------------------------------------------------

    async def enqueue(self, payload, priority=None, max_attempts=None):
        priority = Priority(priority or payload.priority).value
        self.weight_of(priority)

        async with self._cond:
            if self._closed:
                raise BrokerClosedError("broker is closed")
            existing = self._by_job.get(payload.job_id)
            if existing is not None:
                logger.warning("duplicate_enqueue_ignored", job_id=payload.job_id)
                return existing

            entry = _Entry(
                token=uuid.uuid4().hex,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts or self.max_attempts,
            )
            self._by_job[payload.job_id] = entry.token
            self._push_ready(entry)
            self._cond.notify_all()

        logger.info("job_enqueued", job_id=payload.job_id, priority=priority, max_attempts=entry.max_attempts)
        return entry.token

    async def deliver(self):
        while True:
            async with self._cond:
                while True:
                    if self._closed:
                        raise BrokerClosedError("broker is closed")
                    now = self._clock()
                    self._promote_due(now)
                    exhausted = self._reclaim_expired(now)
                    if exhausted:
                        break

                    entry = None if self._paused else self._pick()
                    if entry is not None:
                        entry.attempts += 1
                        receipt = receipt_for(entry.token, entry.attempts)
                        self._in_flight[receipt] = (entry, now + self._visibility_timeout_s)
                        return Delivery(
                            token=receipt,
                            queue_token=entry.token,
                            payload=entry.payload,
                            attempt=entry.attempts,
                            max_attempts=entry.max_attempts,
                        )

                    try:
                        await asyncio.wait_for(self._cond.wait(), self._next_wakeup(now))
                    except asyncio.TimeoutError:
                        pass

            for entry in exhausted:
                error = InternalError(f"Attempt {entry.attempts} timed out", job_id=entry.payload.job_id)
                await self._resolve_failure(entry.payload, error, entry.attempts, entry.max_attempts)
                async with self._cond:
                    self._by_job.pop(entry.payload.job_id, None)
                    self._dead_lettered += 1

    async def ack(self, token):
        async with self._cond:
            item = self._in_flight.pop(token, None)
            if item is None:
                logger.warning("ack_unknown_delivery", token=token)
                return False
            entry, _ = item
            self._by_job.pop(entry.payload.job_id, None)
        return True

    async def nack(self, token, error):
        async with self._cond:
            item = self._in_flight.pop(token, None)
        if item is None:
            logger.warning("nack_unknown_delivery", token=token)
            return None
        entry, _ = item

        outcome = await self._resolve_failure(entry.payload, error, entry.attempts, entry.max_attempts)

        async with self._cond:
            if outcome.requeued:
                heapq.heappush(self._delayed, (self._clock() + outcome.delay_s, next(self._seq), entry))
            else:
                self._by_job.pop(entry.payload.job_id, None)
                self._dead_lettered += 1
            self._cond.notify_all()
        return outcome

    async def pause(self):
        async with self._cond:
            self._paused = True
        logger.info("broker_paused")

    async def resume(self):
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info("broker_resumed")

    async def stats(self):
        async with self._cond:
            return {
                "ready": {p: len(q) for p, q in self._ready.items()},
                "delayed": len(self._delayed),
                "in_flight": len(self._in_flight),
                "dead_lettered": self._dead_lettered,
                "paused": self._paused,
            }

    async def is_idle(self):
        async with self._cond:
            return not self._in_flight and not self._delayed and not any(self._ready.values())

    async def close(self):
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
