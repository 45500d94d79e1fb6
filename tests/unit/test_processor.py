from unittest.mock import AsyncMock

import pytest

from pixelqueue.core.exceptions import ProviderTransientError
from pixelqueue.modules.jobs.models import JobStatus
from pixelqueue.pipeline.notify import LoggingNotifier
from pixelqueue.pipeline.runner import PipelineResult
from pixelqueue.queue.broker import Delivery
from pixelqueue.queue.processor import JobProcessor
from pixelqueue.queue.retry import classify

RESULT = PipelineResult(
    output_keys={"square": "gallery/acct-1/j/v1/square.webp"},
    model_used="primary/model",
    provider_used="openrouter",
    compression={},
)


async def queued_job(store):
    job, _ = await store.create(
        "mobile_app:req-1", {"account_id": "acct-1", "source_channel": "mobile_app"}, debit_amount=1
    )
    return await store.update_status(job.id, JobStatus.QUEUED)


def delivery_for(job, attempt=1) -> Delivery:
    return Delivery(
        token=f"tok#{attempt}", queue_token="tok", payload=job.to_payload(), attempt=attempt, max_attempts=3
    )


def fake_pipeline(result=RESULT, error=None):
    pipeline = AsyncMock()

    async def run(payload, timer):
        await timer.with_stage("preprocess", lambda: None)
        if error is not None:
            raise error
        return result

    pipeline.run.side_effect = run
    return pipeline


@pytest.mark.asyncio
async def test_success_completes_job_and_notifies(store):
    # Arrange
    job = await queued_job(store)
    notifier = LoggingNotifier()
    processor = JobProcessor(store, fake_pipeline(), notifier)

    # Act
    result = await processor(delivery_for(job, attempt=2))

    # Assert
    assert result is RESULT
    stored = await store.get(job.id)
    assert stored.status == JobStatus.COMPLETED.value
    assert stored.attempt_count == 2
    assert stored.output_keys == RESULT.output_keys
    assert stored.model_used == "primary/model"
    assert "preprocess" in stored.stage_durations
    assert notifier.sent[0].kind == "job_completed"
    assert notifier.sent[0].route == "push"


@pytest.mark.asyncio
async def test_failure_records_error_and_reraises(store):
    job = await queued_job(store)
    processor = JobProcessor(store, fake_pipeline(error=ProviderTransientError("503")))

    with pytest.raises(ProviderTransientError):
        await processor(delivery_for(job))

    stored = await store.get(job.id)
    assert stored.status == JobStatus.PROCESSING.value
    assert stored.last_error_code == "PROVIDER_TRANSIENT"
    assert "preprocess" in stored.stage_durations


@pytest.mark.asyncio
async def test_retry_hook_requeues_job(store):
    job = await queued_job(store)
    processor = JobProcessor(store, fake_pipeline(error=ProviderTransientError("503")))
    error = ProviderTransientError("503")
    with pytest.raises(ProviderTransientError):
        await processor(delivery_for(job))

    await processor.on_retry(job.to_payload(), error, 1, classify(error, 1, 3), 1.2)

    stored = await store.get(job.id)
    assert stored.status == JobStatus.QUEUED.value
    assert stored.attempt_count == 1


@pytest.mark.asyncio
async def test_terminal_job_is_skipped(store):
    job = await queued_job(store)
    await store.update_status(job.id, JobStatus.FAILED)
    pipeline = fake_pipeline()
    processor = JobProcessor(store, pipeline)

    result = await processor(delivery_for(job, attempt=2))

    assert result is None
    pipeline.run.assert_not_called()
    assert (await store.get(job.id)).status == JobStatus.FAILED.value
