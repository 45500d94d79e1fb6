import asyncio
from unittest.mock import AsyncMock

import fakeredis
import pytest
from fakeredis import aioredis

from pixelqueue.core.exceptions import ContentPolicyViolationError, InternalError, ProviderTransientError
from pixelqueue.modules.jobs.models import JobPayload, Priority
from pixelqueue.queue.redis_broker import RedisBroker


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def redis_client():
    return aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


def make_broker(redis_client, **kwargs) -> RedisBroker:
    kwargs.setdefault("backoff", lambda a: 0.0)
    return RedisBroker(redis_client, queue_name="test:jobs", poll_interval_s=0.005, **kwargs)


def payload(job_id: str, priority: Priority = Priority.NORMAL) -> JobPayload:
    return JobPayload(
        job_id=job_id,
        account_id="acct-1",
        correlation_id=f"corr-{job_id}",
        priority=priority,
        category="shoes",
        input_storage_key=f"uploads/acct-1/{job_id}.png",
    )


async def deliver_now(broker, timeout: float = 0.5):
    return await asyncio.wait_for(broker.deliver(), timeout)


@pytest.mark.asyncio
async def test_priority_then_fifo_order(redis_client):
    # Arrange
    broker = make_broker(redis_client, fair_share_interval=0)
    await broker.enqueue(payload("low", Priority.LOW))
    await broker.enqueue(payload("n1"))
    await broker.enqueue(payload("n2"))
    await broker.enqueue(payload("high", Priority.HIGH))

    # Act
    order = [(await deliver_now(broker)).payload.job_id for _ in range(4)]

    # Assert
    assert order == ["high", "n1", "n2", "low"]


@pytest.mark.asyncio
async def test_payload_survives_the_queue(redis_client):
    broker = make_broker(redis_client)
    original = payload("job-1", Priority.HIGH)
    await broker.enqueue(original)

    delivery = await deliver_now(broker)

    assert delivery.payload == original
    assert delivery.attempt == 1
    assert delivery.max_attempts == 3


@pytest.mark.asyncio
async def test_retry_then_dead_letter_after_budget(redis_client):
    # Arrange
    on_retry = AsyncMock()
    on_dead_letter = AsyncMock()
    broker = make_broker(redis_client, max_attempts=2, on_retry=on_retry, on_dead_letter=on_dead_letter)
    await broker.enqueue(payload("job-1"))

    # Act
    first = await deliver_now(broker)
    retried = await broker.nack(first.token, ProviderTransientError("503"))
    second = await deliver_now(broker)
    final = await broker.nack(second.token, ProviderTransientError("503"))

    # Assert
    assert retried.requeued is True
    assert second.attempt == 2
    assert final.dead_lettered is True
    on_retry.assert_awaited_once()
    on_dead_letter.assert_awaited_once()
    assert await broker.is_idle()
    assert (await broker.stats())["dead_lettered"] == 1


@pytest.mark.asyncio
async def test_non_retryable_error_skips_retry(redis_client):
    on_retry = AsyncMock()
    on_dead_letter = AsyncMock()
    broker = make_broker(redis_client, on_retry=on_retry, on_dead_letter=on_dead_letter)
    await broker.enqueue(payload("job-1"))

    delivery = await deliver_now(broker)
    outcome = await broker.nack(delivery.token, ContentPolicyViolationError("flagged"))

    assert outcome.dead_lettered is True
    on_retry.assert_not_awaited()
    on_dead_letter.assert_awaited_once()


@pytest.mark.asyncio
async def test_visibility_timeout_reclaims_delivery(redis_client):
    # Arrange
    clock = FakeClock()
    on_dead_letter = AsyncMock()
    broker = make_broker(
        redis_client, clock=clock, max_attempts=2, visibility_timeout_s=10.0, on_dead_letter=on_dead_letter
    )
    await broker.enqueue(payload("job-1"))
    first = await deliver_now(broker)

    # Act
    clock.now += 11.0
    second = await deliver_now(broker)

    # Assert
    assert second.attempt == 2
    assert await broker.ack(first.token) is False

    clock.now += 11.0
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(broker.deliver(), 0.05)
    on_dead_letter.assert_awaited_once()
    assert isinstance(on_dead_letter.await_args.args[1], InternalError)


@pytest.mark.asyncio
async def test_duplicate_enqueue_returns_existing_token(redis_client):
    broker = make_broker(redis_client)

    first = await broker.enqueue(payload("job-1"))
    second = await broker.enqueue(payload("job-1"))

    assert first == second
    assert (await broker.stats())["ready"]["normal"] == 1


@pytest.mark.asyncio
async def test_ack_clears_entry(redis_client):
    broker = make_broker(redis_client)
    await broker.enqueue(payload("job-1"))

    delivery = await deliver_now(broker)
    assert await broker.ack(delivery.token) is True

    assert await broker.is_idle()
    assert await redis_client.exists(f"test:jobs:entry:{delivery.queue_token}") == 0
    # The job may be enqueued again once its previous run is done
    assert await broker.enqueue(payload("job-1")) != delivery.queue_token


@pytest.mark.asyncio
async def test_pause_and_resume(redis_client):
    broker = make_broker(redis_client)
    await broker.enqueue(payload("job-1"))
    await broker.pause()

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(broker.deliver(), 0.05)
    assert (await broker.stats())["paused"] is True

    await broker.resume()
    assert (await deliver_now(broker)).payload.job_id == "job-1"


@pytest.mark.asyncio
async def test_worker_dying_mid_nack_leaves_job_recoverable(redis_client):
    # Arrange
    clock = FakeClock()
    dying = make_broker(
        redis_client,
        clock=clock,
        visibility_timeout_s=10.0,
        on_retry=AsyncMock(side_effect=asyncio.CancelledError),
    )
    await dying.enqueue(payload("job-1"))
    first = await deliver_now(dying)

    # Act
    with pytest.raises(asyncio.CancelledError):
        await dying.nack(first.token, ProviderTransientError("503"))

    # Assert
    assert (await dying.stats())["in_flight"] == 1

    restarted = make_broker(redis_client, clock=clock, visibility_timeout_s=10.0)
    clock.now += 11.0
    second = await deliver_now(restarted)
    assert second.payload.job_id == "job-1"
    assert second.attempt == 2


@pytest.mark.asyncio
async def test_exhausted_job_dying_mid_dead_letter_is_dead_lettered_later(redis_client):
    clock = FakeClock()
    dying = make_broker(
        redis_client,
        clock=clock,
        max_attempts=1,
        visibility_timeout_s=10.0,
        on_dead_letter=AsyncMock(side_effect=asyncio.CancelledError),
    )
    await dying.enqueue(payload("job-1"))
    first = await deliver_now(dying)
    with pytest.raises(asyncio.CancelledError):
        await dying.nack(first.token, ProviderTransientError("503"))

    on_dead_letter = AsyncMock()
    restarted = make_broker(
        redis_client, clock=clock, max_attempts=1, visibility_timeout_s=10.0, on_dead_letter=on_dead_letter
    )
    clock.now += 11.0
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(restarted.deliver(), 0.05)

    on_dead_letter.assert_awaited_once()
    assert await restarted.is_idle()


@pytest.mark.asyncio
async def test_two_workers_never_share_a_delivery(redis_client):
    first_worker = make_broker(redis_client)
    second_worker = make_broker(redis_client)
    await first_worker.enqueue(payload("job-1"))

    results = await asyncio.gather(
        asyncio.wait_for(first_worker.deliver(), 0.2),
        asyncio.wait_for(second_worker.deliver(), 0.2),
        return_exceptions=True,
    )

    deliveries = [r for r in results if not isinstance(r, BaseException)]
    assert len(deliveries) == 1
    assert deliveries[0].payload.job_id == "job-1"


@pytest.mark.asyncio
async def test_stale_receipt_cannot_settle_new_attempt(redis_client):
    broker = make_broker(redis_client)
    await broker.enqueue(payload("job-1"))
    first = await deliver_now(broker)
    await broker.nack(first.token, ProviderTransientError("503"))
    second = await deliver_now(broker)

    assert await broker.nack(first.token, ProviderTransientError("503")) is None
    assert await broker.ack(first.token) is False
    assert await broker.ack(second.token) is True
