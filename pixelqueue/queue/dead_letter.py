"""
Dead-Letter Handler

Runs once per permanently failed job:
1. write the dead-letter record (keyed by job id); a repeat keeps the first
2. mark the job ``failed``; the store refunds the debit on that transition
3. tell the user

Each step is attempted even when an earlier one failed, and a notification
failure never undoes the first two.
"""

import traceback
from dataclasses import dataclass
from typing import Optional

from pixelqueue.core.exceptions import ErrorKind, PixelQueueError
from pixelqueue.core.logging import LogContext, get_logger
from pixelqueue.core.metrics import record_job_completion
from pixelqueue.modules.jobs.models import DeadLetterRecord, JobPayload, JobStatus
from pixelqueue.pipeline.notify import Notifier, failure_message
from pixelqueue.queue.retry import FailureClassification

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeadLetterOutcome:
    recorded: bool
    status_updated: bool
    notified: bool
    violation_recorded: bool = False


def _format_stack(error: BaseException) -> Optional[str]:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


class DeadLetterHandler:
    """Broker dead-letter callback."""

    def __init__(self, store, notifier: Optional[Notifier] = None, locale: str = "en"):
        self._store = store
        self._notifier = notifier
        self._locale = locale

    async def __call__(self, payload, error, attempt_count, classification):
        return await self.handle(payload, error, attempt_count, classification)

    async def handle(
        self,
        payload: JobPayload,
        error: BaseException,
        attempt_count: int,
        classification: FailureClassification
    ) -> DeadLetterOutcome:
        code = classification.code.value
        message = str(error) or type(error).__name__
        failed_stage = error.stage if isinstance(error, PixelQueueError) else None

        with LogContext(job_id=payload.job_id, correlation_id=payload.correlation_id):
            recorded = await self._record(payload, code, message, attempt_count, failed_stage, error)
            status_updated = await self._mark_failed(payload, code, message, attempt_count)

            violation_recorded = False
            if classification.code == ErrorKind.CONTENT_POLICY_VIOLATION:
                violation_recorded = await self._record_violation(payload)

            notified = await self._notify(payload, code)

            record_job_completion("failed", failed_stage or "unknown")
            logger.error(
                "dead_letter_handled",
                error_code=code,
                reason=classification.reason,
                attempt_count=attempt_count,
                recorded=recorded,
                status_updated=status_updated,
                notified=notified
            )

        return DeadLetterOutcome(
            recorded=recorded,
            status_updated=status_updated,
            notified=notified,
            violation_recorded=violation_recorded,
        )

    async def _record(self, payload, code, message, attempt_count, failed_stage, error) -> bool:
        record = DeadLetterRecord(
            job_id=payload.job_id,
            account_id=payload.account_id,
            correlation_id=payload.correlation_id,
            error_code=code,
            error_message=message,
            attempt_count=attempt_count,
            failed_stage=failed_stage,
            stack_trace=_format_stack(error),
            payload=payload.model_dump(mode="json"),
        )
        try:
            await self._store.insert_dead_letter(record)
            return True
        except Exception as e:
            logger.error("dead_letter_record_failed", error=str(e))
            return False

    async def _mark_failed(self, payload, code, message, attempt_count) -> bool:
        try:
            await self._store.update_status(
                payload.job_id,
                JobStatus.FAILED,
                error_code=code,
                error_message=message,
                attempt_count=attempt_count,
            )
            return True
        except Exception as e:
            logger.error("dead_letter_status_update_failed", error=str(e))
            return False

    async def _record_violation(self, payload) -> bool:
        try:
            strikes = await self._store.record_violation(payload.account_id)
            logger.warning("content_policy_violation_recorded", account_id=payload.account_id, strikes=strikes)
            return True
        except Exception as e:
            logger.error("violation_record_failed", error=str(e))
            return False

    async def _notify(self, payload, code) -> bool:
        if self._notifier is None:
            return False
        try:
            await self._notifier.notify(
                payload.account_id,
                payload.job_id,
                failure_message(self._locale),
                channel=payload.source_channel,
                kind="job_failed",
                metadata={"error_code": code, "refunded": True},
            )
            return True
        except Exception as e:
            logger.error("dead_letter_notify_failed", error=str(e))
            return False
