import asyncio
from unittest.mock import AsyncMock

import pytest

from pixelqueue.core.exceptions import (
    ContentPolicyViolationError,
    ErrorKind,
    InternalError,
    InvalidInputError,
    ProviderTransientError,
)
from pixelqueue.modules.jobs.models import JobPayload, Priority
from pixelqueue.queue.broker import BrokerClosedError, InMemoryBroker


def payload(job_id: str, priority: Priority = Priority.NORMAL) -> JobPayload:
    return JobPayload(job_id=job_id, account_id="acct-1", correlation_id=f"corr-{job_id}", priority=priority)


async def deliver_now(broker, timeout: float = 0.5):
    return await asyncio.wait_for(broker.deliver(), timeout)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_higher_priority_is_delivered_first():
    # Arrange
    broker = InMemoryBroker(backoff=lambda a: 0.0, fair_share_interval=0)
    await broker.enqueue(payload("low", Priority.LOW))
    await broker.enqueue(payload("normal", Priority.NORMAL))
    await broker.enqueue(payload("high", Priority.HIGH))

    # Act
    order = [(await deliver_now(broker)).payload.job_id for _ in range(3)]

    # Assert
    assert order == ["high", "normal", "low"]


@pytest.mark.asyncio
async def test_fifo_within_a_priority_class():
    broker = InMemoryBroker(backoff=lambda a: 0.0, fair_share_interval=0)
    for job_id in ("a", "b", "c"):
        await broker.enqueue(payload(job_id))

    order = [(await deliver_now(broker)).payload.job_id for _ in range(3)]

    assert order == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_fair_share_turn_serves_oldest_payload():
    # Arrange: one old low-priority job behind a stream of high-priority ones
    broker = InMemoryBroker(backoff=lambda a: 0.0, fair_share_interval=3)
    await broker.enqueue(payload("old-low", Priority.LOW))
    for i in range(4):
        await broker.enqueue(payload(f"high-{i}", Priority.HIGH))

    # Act
    order = [(await deliver_now(broker)).payload.job_id for _ in range(5)]

    # Assert
    assert order == ["high-0", "high-1", "old-low", "high-2", "high-3"]


@pytest.mark.asyncio
async def test_retryable_failure_is_redelivered_with_next_attempt():
    on_retry = AsyncMock()
    broker = InMemoryBroker(backoff=lambda a: 0.0, on_retry=on_retry)
    await broker.enqueue(payload("job-1"))

    first = await deliver_now(broker)
    outcome = await broker.nack(first.token, ProviderTransientError("503"))
    second = await deliver_now(broker)

    assert outcome.requeued is True
    assert first.attempt == 1
    assert second.attempt == 2
    assert second.queue_token == first.queue_token
    on_retry.assert_awaited_once()
    assert on_retry.await_args.args[2] == 1


@pytest.mark.asyncio
async def test_attempt_budget_is_never_exceeded():
    # Arrange
    on_retry = AsyncMock()
    on_dead_letter = AsyncMock()
    broker = InMemoryBroker(
        backoff=lambda a: 0.0, max_attempts=3, on_retry=on_retry, on_dead_letter=on_dead_letter
    )
    await broker.enqueue(payload("job-1"))

    # Act
    outcomes = []
    for _ in range(3):
        delivery = await deliver_now(broker)
        outcomes.append(await broker.nack(delivery.token, ProviderTransientError("503")))

    # Assert
    assert [o.requeued for o in outcomes] == [True, True, False]
    assert outcomes[-1].classification.reason == "max_attempts_exhausted"
    assert on_retry.await_count == 2
    on_dead_letter.assert_awaited_once()
    _, _, attempt, classification = on_dead_letter.await_args.args
    assert attempt == 3
    assert classification.code == ErrorKind.PROVIDER_TRANSIENT

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(broker.deliver(), 0.05)
    assert await broker.is_idle()
    assert (await broker.stats())["dead_lettered"] == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_dead_letters_on_first_attempt():
    on_retry = AsyncMock()
    on_dead_letter = AsyncMock()
    broker = InMemoryBroker(backoff=lambda a: 0.0, on_retry=on_retry, on_dead_letter=on_dead_letter)
    await broker.enqueue(payload("job-1"))

    delivery = await deliver_now(broker)
    error = ContentPolicyViolationError("flagged")
    outcome = await broker.nack(delivery.token, error)

    assert outcome.dead_lettered is True
    assert outcome.classification.reason == "non_retryable_error"
    on_retry.assert_not_awaited()
    on_dead_letter.assert_awaited_once()
    assert on_dead_letter.await_args.args[1] is error
    assert on_dead_letter.await_args.args[2] == 1


@pytest.mark.asyncio
async def test_failing_dead_letter_hook_does_not_break_nack():
    on_dead_letter = AsyncMock(side_effect=RuntimeError("db down"))
    broker = InMemoryBroker(backoff=lambda a: 0.0, on_dead_letter=on_dead_letter)
    await broker.enqueue(payload("job-1"))

    delivery = await deliver_now(broker)
    outcome = await broker.nack(delivery.token, InvalidInputError("bad"))

    assert outcome.dead_lettered is True
    assert await broker.is_idle()


@pytest.mark.asyncio
async def test_backoff_delay_holds_payload_until_due():
    # Arrange
    clock = FakeClock()
    broker = InMemoryBroker(backoff=lambda a: 5.0, clock=clock)
    await broker.enqueue(payload("job-1"))
    delivery = await deliver_now(broker)

    # Act
    outcome = await broker.nack(delivery.token, ProviderTransientError("503"))

    # Assert
    assert outcome.delay_s == 5.0
    stats = await broker.stats()
    assert stats["delayed"] == 1
    assert stats["ready"]["normal"] == 0

    clock.now = 6.0
    redelivered = await deliver_now(broker)
    assert redelivered.attempt == 2


@pytest.mark.asyncio
async def test_visibility_timeout_redelivers_and_then_dead_letters():
    # Arrange
    clock = FakeClock()
    on_dead_letter = AsyncMock()
    broker = InMemoryBroker(
        backoff=lambda a: 0.0,
        clock=clock,
        max_attempts=2,
        visibility_timeout_s=10.0,
        on_dead_letter=on_dead_letter,
    )
    await broker.enqueue(payload("job-1"))
    first = await deliver_now(broker)

    # Act: the first holder goes silent past its deadline
    clock.now = 11.0
    second = await deliver_now(broker)

    # Assert
    assert second.attempt == 2
    assert await broker.ack(first.token) is False

    clock.now = 22.0
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(broker.deliver(), 0.05)
    on_dead_letter.assert_awaited_once()
    error = on_dead_letter.await_args.args[1]
    assert isinstance(error, InternalError)
    assert on_dead_letter.await_args.args[2] == 2
    assert await broker.is_idle()


@pytest.mark.asyncio
async def test_pause_stops_deliveries_until_resume():
    broker = InMemoryBroker(backoff=lambda a: 0.0)
    await broker.pause()
    await broker.enqueue(payload("job-1"))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(broker.deliver(), 0.05)
    assert (await broker.stats())["paused"] is True

    await broker.resume()
    delivery = await deliver_now(broker)
    assert delivery.payload.job_id == "job-1"


@pytest.mark.asyncio
async def test_waiting_slot_wakes_on_enqueue():
    broker = InMemoryBroker(backoff=lambda a: 0.0)
    waiter = asyncio.create_task(broker.deliver())
    await asyncio.sleep(0)

    await broker.enqueue(payload("job-1"))
    delivery = await asyncio.wait_for(waiter, 0.5)

    assert delivery.payload.job_id == "job-1"


@pytest.mark.asyncio
async def test_duplicate_enqueue_is_ignored():
    broker = InMemoryBroker(backoff=lambda a: 0.0)

    first = await broker.enqueue(payload("job-1"))
    second = await broker.enqueue(payload("job-1"))

    assert first == second
    assert (await broker.stats())["ready"]["normal"] == 1


@pytest.mark.asyncio
async def test_ack_and_nack_of_unknown_receipts():
    broker = InMemoryBroker(backoff=lambda a: 0.0)
    await broker.enqueue(payload("job-1"))
    delivery = await deliver_now(broker)

    assert await broker.ack(delivery.token) is True
    assert await broker.ack(delivery.token) is False
    assert await broker.nack("missing#1", RuntimeError("x")) is None


@pytest.mark.asyncio
async def test_closed_broker_rejects_work():
    broker = InMemoryBroker(backoff=lambda a: 0.0)
    await broker.close()

    with pytest.raises(BrokerClosedError):
        await broker.deliver()
    with pytest.raises(BrokerClosedError):
        await broker.enqueue(payload("job-1"))


def test_unknown_priority_weights_are_rejected():
    with pytest.raises(InvalidInputError):
        InMemoryBroker(priority_weights={"urgent": 0})
    with pytest.raises(InvalidInputError):
        InMemoryBroker(max_attempts=0)
