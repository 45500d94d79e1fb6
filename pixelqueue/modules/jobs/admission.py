"""
Job Admission

Entry point for new work. One call:
1. derives the idempotency key from the channel's natural dedup token
2. creates the job and debits the account in one atomic step (or finds
   the job that already owns the key, without a second debit)
3. marks it queued and hands the payload to the broker

A duplicate submission returns the original job untouched. If the broker
rejects the payload the job is failed, which refunds the debit.
"""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, field_validator

from pixelqueue.core.exceptions import ErrorKind, InsufficientCreditsError, InvalidInputError
from pixelqueue.core.logging import LogContext, get_logger
from pixelqueue.core.metrics import record_admission
from pixelqueue.modules.jobs.idempotency import derive_key, is_valid_key
from pixelqueue.modules.jobs.models import (
    AccountTier,
    Job,
    JobStatus,
    Priority,
    SourceChannel,
    TemplateLayout,
)

logger = get_logger(__name__)


class AdmissionRequest(BaseModel):
    """A job submission as received from an ingress channel."""
    account_id: str
    source_channel: SourceChannel
    message_id: Optional[str] = None
    client_request_id: Optional[str] = None
    correlation_id: Optional[str] = None

    category: str = "clothing"
    background_style: str = "studio_white"
    template_layout: TemplateLayout = TemplateLayout.A
    mannequin_mode: str = "none"
    priority: Priority = Priority.NORMAL
    account_tier: AccountTier = AccountTier.FREE
    input_storage_key: Optional[str] = None

    @field_validator("account_id")
    @classmethod
    def account_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("account_id must not be blank")
        return value


@dataclass(frozen=True)
class AdmissionResult:
    job: Job
    created: bool

    @property
    def duplicate(self) -> bool:
        return not self.created


class AdmissionService:
    """Admits jobs: idempotency check, atomic create + debit, enqueue."""

    def __init__(self, store, broker, cost_credits: int = 1, max_attempts: int = 3):
        self._store = store
        self._broker = broker
        self._cost_credits = cost_credits
        self._max_attempts = max_attempts

    @classmethod
    def from_settings(cls, store, broker, config) -> "AdmissionService":
        return cls(store, broker, cost_credits=config.JOB_COST_CREDITS, max_attempts=config.MAX_ATTEMPTS)

    async def admit(self, request: AdmissionRequest) -> AdmissionResult:
        key = derive_key(request.source_channel, request.message_id, request.client_request_id)
        return await self._admit(key, request)

    async def regenerate(self, job_id: str, client_request_id: str) -> AdmissionResult:
        """
        Admit a fresh run of a finished job with the same selectors.

        Keyed on the original job id plus the caller's request id, so a
        repeated regenerate request is itself deduplicated.
        """
        original = await self._store.get(job_id)
        if original is None:
            raise InvalidInputError(f"Job not found: {job_id}")
        if original.status not in (JobStatus.FAILED.value, JobStatus.COMPLETED.value):
            raise InvalidInputError(f"Job {job_id} is still {original.status}")

        request = AdmissionRequest(
            account_id=original.account_id,
            source_channel=SourceChannel(original.source_channel),
            category=original.category,
            background_style=original.background_style,
            template_layout=TemplateLayout(original.template_layout),
            mannequin_mode=original.mannequin_mode,
            priority=Priority(original.priority),
            account_tier=AccountTier(original.account_tier),
            input_storage_key=original.input_storage_key,
        )
        key = derive_key(SourceChannel.API, client_request_id=f"regenerate:{job_id}:{client_request_id}")
        return await self._admit(key, request)

    async def _admit(self, key: str, request: AdmissionRequest) -> AdmissionResult:
        if not is_valid_key(key):
            raise InvalidInputError(f"Invalid idempotency key: {key!r}")

        attrs = {
            "account_id": request.account_id,
            "source_channel": request.source_channel.value,
            "category": request.category,
            "background_style": request.background_style,
            "template_layout": request.template_layout.value,
            "mannequin_mode": request.mannequin_mode,
            "priority": request.priority.value,
            "account_tier": request.account_tier.value,
            "input_storage_key": request.input_storage_key,
        }
        if request.correlation_id:
            attrs["correlation_id"] = request.correlation_id

        try:
            job, created = await self._store.create(key, attrs, debit_amount=self._cost_credits)
        except InsufficientCreditsError:
            record_admission("rejected")
            logger.warning("admission_rejected", idempotency_key=key, account_id=request.account_id)
            raise

        with LogContext(job_id=job.id, correlation_id=job.correlation_id):
            if not created:
                record_admission("duplicate")
                logger.info("admission_duplicate", idempotency_key=key, status=job.status)
                return AdmissionResult(job=job, created=False)

            job = await self._enqueue(job)
            record_admission("created")
            logger.info("job_admitted", idempotency_key=key, priority=job.priority)
            return AdmissionResult(job=job, created=True)

    async def _enqueue(self, job: Job) -> Job:
        # Status first: a fast worker may pick the payload up before we return
        job = await self._store.update_status(job.id, JobStatus.QUEUED)
        try:
            await self._broker.enqueue(job.to_payload(), Priority(job.priority), self._max_attempts)
        except Exception as e:
            logger.error("enqueue_failed", error=str(e))
            await self._store.update_status(
                job.id,
                JobStatus.FAILED,
                error_code=ErrorKind.INTERNAL_ERROR.value,
                error_message=f"Enqueue failed: {e}",
            )
            raise
        return job
