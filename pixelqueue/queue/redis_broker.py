"""
Redis-backed Broker

Same contract as the in-memory broker, but the queue outlives the worker
process and can be shared by several of them.

Key layout (``q`` is the queue name):
- ``{q}:ready:{priority}``  list of queue tokens, FIFO
- ``{q}:delayed``           zset token -> ready-at (epoch seconds)
- ``{q}:inflight``          zset token -> lease deadline
- ``{q}:entry:{token}``     hash with payload JSON, priority, attempts, seq,
                            state and due_at
- ``{q}:job:{job_id}``      token of the job's live entry (duplicate guard)

Every move of a token between structures is one MULTI/EXEC that WATCHes
the token's entry hash and rewrites its ``state``. A worker that loses the
race gets a WatchError and leaves the token alone, and a crash between
two commands cannot leave a token outside every structure.

Failed attempts are resolved in two steps. The token is first re-leased
in the in-flight set as ``resolving``; the retry / dead-letter hooks run;
then the token moves to the delayed set or is removed. If the process
dies while the hooks run, the lease expires and the token is reclaimed
like any other timed-out delivery.
"""

import asyncio
import time
import uuid
from typing import Callable, List, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import WatchError

from pixelqueue.core.exceptions import InternalError
from pixelqueue.core.logging import get_logger
from pixelqueue.core.metrics import queue_depth_gauge
from pixelqueue.modules.jobs.models import JobPayload, Priority
from pixelqueue.queue.broker import Broker, BrokerClosedError, Delivery, receipt_for

logger = get_logger(__name__)

READY = "ready"
DELAYED = "delayed"
INFLIGHT = "inflight"
RESOLVING = "resolving"


def _split_receipt(receipt: str) -> Tuple[str, Optional[int]]:
    token, _, attempt = receipt.rpartition("#")
    if not token or not attempt.isdigit():
        return receipt, None
    return token, int(attempt)


class RedisBroker(Broker):
    """
    Broker on Redis lists, sorted sets and hashes.

    The client must be created with ``decode_responses=True``.
    """

    def __init__(
        self,
        redis: Redis,
        queue_name: str = "pixelqueue:jobs",
        poll_interval_s: float = 0.1,
        clock: Callable[[], float] = time.time,
        **kwargs
    ):
        super().__init__(**kwargs)
        self._redis = redis
        self._q = queue_name
        self._poll_interval_s = poll_interval_s
        self._clock = clock
        self._lock = asyncio.Lock()
        self._closed = False

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def _ready_key(self, priority: str) -> str:
        return f"{self._q}:ready:{priority}"

    def _entry_key(self, token: str) -> str:
        return f"{self._q}:entry:{token}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._q}:job:{job_id}"

    @property
    def _delayed_key(self) -> str:
        return f"{self._q}:delayed"

    @property
    def _inflight_key(self) -> str:
        return f"{self._q}:inflight"

    # -------------------------------------------------------------------------
    # Atomic moves
    # -------------------------------------------------------------------------

    async def _move(
        self,
        token: str,
        check: Callable[[dict], bool],
        write: Callable[[Pipeline, dict], None]
    ) -> Optional[dict]:
        """
        Apply ``write`` to the token in one transaction if ``check`` holds.

        Returns the entry as it was read, or None when the entry is gone,
        the check failed, or another worker touched the entry first.
        """
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self._entry_key(token))
                entry = await pipe.hgetall(self._entry_key(token))
                if not entry or not check(entry):
                    return None
                pipe.multi()
                write(pipe, entry)
                await pipe.execute()
                return entry
            except WatchError:
                return None

    def _lease(self, pipe: Pipeline, token: str, state: str, deadline: float):
        pipe.zadd(self._inflight_key, {token: deadline})
        pipe.hset(self._entry_key(token), mapping={"state": state, "due_at": deadline})

    def _push_ready(self, pipe: Pipeline, token: str, priority: str, seq: int):
        pipe.rpush(self._ready_key(priority), token)
        pipe.hset(self._entry_key(token), mapping={"state": READY, "seq": seq, "due_at": 0})

    def _forget(self, pipe: Pipeline, token: str, entry: dict):
        pipe.zrem(self._inflight_key, token)
        pipe.delete(self._entry_key(token))
        payload = JobPayload.model_validate_json(entry["payload"])
        pipe.delete(self._job_key(payload.job_id))

    async def _next_seq(self) -> int:
        return await self._redis.incr(f"{self._q}:seq")

    async def _update_depth(self, priority: str):
        depth = await self._redis.llen(self._ready_key(priority))
        queue_depth_gauge.labels(priority=priority).set(depth)

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _promote_due(self, now: float):
        for token in await self._redis.zrangebyscore(self._delayed_key, "-inf", now):
            seq = await self._next_seq()

            def write(pipe, entry, token=token, seq=seq):
                pipe.zrem(self._delayed_key, token)
                self._push_ready(pipe, token, entry["priority"], seq)

            entry = await self._move(
                token,
                lambda e: e.get("state") == DELAYED and float(e["due_at"]) <= now,
                write,
            )
            if entry is not None:
                await self._update_depth(entry["priority"])

    async def _reclaim_expired(self, now: float) -> List[Tuple[str, dict]]:
        exhausted = []
        for token in await self._redis.zrangebyscore(self._inflight_key, "-inf", now):
            seq = await self._next_seq()
            lease_until = now + self._visibility_timeout_s

            def write(pipe, entry, token=token, seq=seq, lease_until=lease_until):
                if int(entry["attempts"]) >= int(entry["max_attempts"]):
                    self._lease(pipe, token, RESOLVING, lease_until)
                else:
                    pipe.zrem(self._inflight_key, token)
                    self._push_ready(pipe, token, entry["priority"], seq)

            entry = await self._move(
                token,
                lambda e: e.get("state") in (INFLIGHT, RESOLVING) and float(e["due_at"]) <= now,
                write,
            )
            if entry is None:
                continue
            attempts = int(entry["attempts"])
            logger.warning("delivery_visibility_expired", token=token, attempt=attempts)
            if attempts >= int(entry["max_attempts"]):
                exhausted.append((token, entry))
            else:
                await self._update_depth(entry["priority"])
        return exhausted

    async def _pick(self) -> Optional[Tuple[str, str]]:
        heads = []
        for priority in self._priorities_by_weight():
            token = await self._redis.lindex(self._ready_key(priority), 0)
            if token is not None:
                heads.append((priority, token))
        if not heads:
            return None

        deliveries = await self._redis.incr(f"{self._q}:deliveries")
        if self._is_fair_share_turn(deliveries):
            seqs = []
            for priority, token in heads:
                seq = await self._redis.hget(self._entry_key(token), "seq")
                seqs.append((int(seq or 0), priority, token))
            _, priority, token = min(seqs)
            return priority, token
        return heads[0]

    async def _try_deliver(self) -> Tuple[Optional[Delivery], List[Tuple[str, dict]]]:
        now = self._clock()
        await self._promote_due(now)
        exhausted = await self._reclaim_expired(now)
        if exhausted or await self._redis.exists(f"{self._q}:paused"):
            return None, exhausted

        picked = await self._pick()
        if picked is None:
            return None, exhausted
        priority, token = picked
        deadline = now + self._visibility_timeout_s

        def write(pipe, entry):
            pipe.lrem(self._ready_key(priority), 1, token)
            pipe.hincrby(self._entry_key(token), "attempts", 1)
            self._lease(pipe, token, INFLIGHT, deadline)

        entry = await self._move(token, lambda e: e.get("state") == READY, write)
        await self._update_depth(priority)
        if entry is None:
            return None, exhausted

        attempt = int(entry["attempts"]) + 1
        return Delivery(
            token=receipt_for(token, attempt),
            queue_token=token,
            payload=JobPayload.model_validate_json(entry["payload"]),
            attempt=attempt,
            max_attempts=int(entry["max_attempts"]),
        ), exhausted

    async def _locked_try_deliver(self):
        async with self._lock:
            return await self._try_deliver()

    async def _finish_failure(self, token: str, attempt: int, outcome) -> bool:
        """Second half of a failed attempt: park for retry or drop the entry."""
        ready_at = self._clock() + outcome.delay_s

        def write(pipe, entry):
            if outcome.requeued:
                pipe.zrem(self._inflight_key, token)
                pipe.zadd(self._delayed_key, {token: ready_at})
                pipe.hset(self._entry_key(token), mapping={"state": DELAYED, "due_at": ready_at})
            else:
                self._forget(pipe, token, entry)
                pipe.incr(f"{self._q}:dead_lettered")

        entry = await self._move(
            token,
            lambda e: e.get("state") == RESOLVING and int(e["attempts"]) == attempt,
            write,
        )
        if entry is None:
            logger.warning("failure_lease_lost", token=token, attempt=attempt)
            return False
        return True

    async def _dead_letter_expired(self, token: str, entry: dict):
        payload = JobPayload.model_validate_json(entry["payload"])
        attempts = int(entry["attempts"])
        error = InternalError(f"Attempt {attempts} timed out", job_id=payload.job_id)
        outcome = await self._resolve_failure(payload, error, attempts, int(entry["max_attempts"]))
        await self._finish_failure(token, attempts, outcome)

    # -------------------------------------------------------------------------
    # Broker API
    # -------------------------------------------------------------------------

    async def enqueue(self, payload, priority=None, max_attempts=None):
        if self._closed:
            raise BrokerClosedError("broker is closed")
        priority = Priority(priority or payload.priority).value
        self.weight_of(priority)
        max_attempts = max_attempts or self.max_attempts
        job_key = self._job_key(payload.job_id)

        while True:
            token = uuid.uuid4().hex
            seq = await self._next_seq()
            async with self._redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(job_key)
                    existing = await pipe.get(job_key)
                    if existing is not None:
                        logger.warning("duplicate_enqueue_ignored", job_id=payload.job_id)
                        return existing
                    pipe.multi()
                    pipe.set(job_key, token)
                    pipe.hset(self._entry_key(token), mapping={
                        "payload": payload.model_dump_json(),
                        "priority": priority,
                        "attempts": 0,
                        "max_attempts": max_attempts,
                    })
                    self._push_ready(pipe, token, priority, seq)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        await self._update_depth(priority)
        logger.info("job_enqueued", job_id=payload.job_id, priority=priority, max_attempts=max_attempts)
        return token

    async def deliver(self):
        while True:
            if self._closed:
                raise BrokerClosedError("broker is closed")
            # Shielded so a cancelled slot does not abandon a half-read poll
            delivery, exhausted = await asyncio.shield(self._locked_try_deliver())
            for token, entry in exhausted:
                await self._dead_letter_expired(token, entry)
            if delivery is not None:
                return delivery
            if not exhausted:
                await asyncio.sleep(self._poll_interval_s)

    async def ack(self, token):
        queue_token, attempt = _split_receipt(token)
        entry = await self._move(
            queue_token,
            lambda e: e.get("state") == INFLIGHT and int(e["attempts"]) == attempt,
            lambda pipe, e: self._forget(pipe, queue_token, e),
        )
        if entry is None:
            logger.warning("ack_unknown_delivery", token=token)
            return False
        return True

    async def nack(self, token, error):
        queue_token, attempt = _split_receipt(token)
        lease_until = self._clock() + self._visibility_timeout_s
        entry = await self._move(
            queue_token,
            lambda e: e.get("state") == INFLIGHT and int(e["attempts"]) == attempt,
            lambda pipe, e: self._lease(pipe, queue_token, RESOLVING, lease_until),
        )
        if entry is None:
            logger.warning("nack_unknown_delivery", token=token)
            return None

        payload = JobPayload.model_validate_json(entry["payload"])
        outcome = await self._resolve_failure(payload, error, attempt, int(entry["max_attempts"]))
        await self._finish_failure(queue_token, attempt, outcome)
        return outcome

    async def pause(self):
        await self._redis.set(f"{self._q}:paused", 1)
        logger.info("broker_paused", queue=self._q)

    async def resume(self):
        await self._redis.delete(f"{self._q}:paused")
        logger.info("broker_resumed", queue=self._q)

    async def stats(self):
        ready = {}
        for priority in self._weights:
            ready[priority] = await self._redis.llen(self._ready_key(priority))
        dead_lettered = await self._redis.get(f"{self._q}:dead_lettered")
        return {
            "ready": ready,
            "delayed": await self._redis.zcard(self._delayed_key),
            "in_flight": await self._redis.zcard(self._inflight_key),
            "dead_lettered": int(dead_lettered or 0),
            "paused": bool(await self._redis.exists(f"{self._q}:paused")),
        }

    async def is_idle(self):
        stats = await self.stats()
        return not stats["delayed"] and not stats["in_flight"] and not any(stats["ready"].values())

    async def close(self):
        self._closed = True
