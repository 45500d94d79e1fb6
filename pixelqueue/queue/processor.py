"""
Job Processor

What a worker slot runs for each delivery:

1. skip deliveries for jobs already in a terminal state
2. mark the job ``processing`` with the delivery's attempt number
3. run the pipeline under a fresh StageTimer
4. flush stage durations
5. mark ``completed`` with the output keys and notify the user

On failure the durations are still flushed and the error is recorded on
the job before it is re-raised for the slot to nack. Whether the job goes
back to ``queued`` or to the dead-letter handler is the broker's call.
"""

import time
from typing import Optional

from pixelqueue.core.logging import LogContext, get_logger
from pixelqueue.core.metrics import active_jobs_gauge, pipeline_total_duration, record_job_completion
from pixelqueue.modules.jobs.models import JobPayload, JobStatus
from pixelqueue.pipeline.notify import Notifier, success_message
from pixelqueue.pipeline.runner import Pipeline, PipelineResult
from pixelqueue.queue.broker import Delivery
from pixelqueue.queue.retry import FailureClassification, error_kind_of
from pixelqueue.queue.stage_timer import StageTimer

logger = get_logger(__name__)

TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class JobProcessor:
    """Runs one delivery through the pipeline and keeps the job record in step."""

    def __init__(self, store, pipeline: Pipeline, notifier: Optional[Notifier] = None, locale: str = "en"):
        self._store = store
        self._pipeline = pipeline
        self._notifier = notifier
        self._locale = locale

    async def __call__(self, delivery: Delivery) -> Optional[PipelineResult]:
        return await self.process(delivery)

    async def process(self, delivery: Delivery) -> Optional[PipelineResult]:
        payload = delivery.payload
        with LogContext(job_id=payload.job_id, correlation_id=payload.correlation_id):
            job = await self._store.get(payload.job_id)
            if job is not None and job.status in TERMINAL_STATUSES:
                logger.warning("delivery_skipped_terminal_job", status=job.status, attempt=delivery.attempt)
                return None

            await self._store.update_status(payload.job_id, JobStatus.PROCESSING, attempt_count=delivery.attempt)
            logger.info("job_processing_started", attempt=delivery.attempt, max_attempts=delivery.max_attempts)

            timer = StageTimer(payload.job_id, payload.correlation_id, self._store)
            active_jobs_gauge.inc()
            start = time.perf_counter()
            try:
                result = await self._pipeline.run(payload, timer)
            except Exception as e:
                pipeline_total_duration.labels(status="error").observe(time.perf_counter() - start)
                await timer.flush()
                await self._record_error(payload, e)
                raise
            finally:
                active_jobs_gauge.dec()

            pipeline_total_duration.labels(status="success").observe(time.perf_counter() - start)
            await timer.flush()
            await self._store.update_status(
                payload.job_id,
                JobStatus.COMPLETED,
                output_keys=result.output_keys,
                model_used=result.model_used,
                provider_used=result.provider_used,
            )
            record_job_completion("completed")
            logger.info(
                "job_completed",
                attempt=delivery.attempt,
                duration_ms_total=timer.get_total(),
                outputs=len(result.output_keys)
            )
            await self._notify_success(payload, result)
            return result

    async def on_retry(
        self,
        payload: JobPayload,
        error: BaseException,
        attempt: int,
        classification: FailureClassification,
        delay_s: float
    ):
        """Broker retry hook: the job waits in ``queued`` until redelivered."""
        await self._store.update_status(
            payload.job_id,
            JobStatus.QUEUED,
            error_code=classification.code.value,
            error_message=str(error) or type(error).__name__,
            attempt_count=attempt,
        )

    async def _record_error(self, payload: JobPayload, error: BaseException):
        try:
            await self._store.update_status(
                payload.job_id,
                JobStatus.PROCESSING,
                error_code=error_kind_of(error).value,
                error_message=str(error) or type(error).__name__,
            )
        except Exception as e:
            logger.error("job_error_record_failed", error=str(e))

    async def _notify_success(self, payload: JobPayload, result: PipelineResult):
        if self._notifier is None:
            return
        try:
            await self._notifier.notify(
                payload.account_id,
                payload.job_id,
                success_message(self._locale),
                channel=payload.source_channel,
                kind="job_completed",
                metadata={"output_keys": result.output_keys},
            )
        except Exception as e:
            logger.error("job_success_notify_failed", error=str(e))
