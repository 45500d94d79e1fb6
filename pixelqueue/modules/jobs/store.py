"""
Job Record Store

Durable record of each job: identity, status, attempts, last error and
stage timings. The store is the single source of truth for "has this
logical request already been admitted" and enforces:

- exactly one job per idempotency key
- job creation and credit debit commit together or not at all
- monotonic status transitions
- a ledger refund on the first transition to ``failed``
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from pixelqueue.core.exceptions import InternalError, InvalidStatusTransition
from pixelqueue.core.logging import get_logger
from pixelqueue.modules.jobs.models import (
    AccountViolation,
    DeadLetterRecord,
    Job,
    JobStatus,
    can_transition,
)
from pixelqueue.modules.ledger.ledger import InMemoryCreditLedger, SqlCreditLedger

logger = get_logger(__name__)


class JobRecordStore(ABC):
    """Interface for job persistence."""

    @abstractmethod
    async def create(
        self,
        idempotency_key: str,
        attrs: Dict[str, Any],
        debit_amount: int = 0
    ) -> Tuple[Job, bool]:
        """
        Create a job and debit its account atomically.

        Returns:
            (job, created). ``created`` is False when the key already exists;
            no debit happens in that case.

        Raises:
            InsufficientCreditsError: neither the job nor the debit persists
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def get_by_key(self, idempotency_key: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        attempt_count: Optional[int] = None,
        **fields: Any
    ) -> Job:
        """Move a job to ``status``. Raises InvalidStatusTransition."""
        pass

    @abstractmethod
    async def append_stage_durations(self, job_id: str, durations: Dict[str, int], total_ms: int):
        """Replace the stage timings with those of the latest attempt."""
        pass

    @abstractmethod
    async def insert_dead_letter(self, record: DeadLetterRecord) -> bool:
        """
        Store the dead-letter row unless one exists for the job.

        The first record wins and is never rewritten. Returns True if this
        call inserted it.
        """
        pass

    @abstractmethod
    async def get_dead_letter(self, job_id: str) -> Optional[DeadLetterRecord]:
        pass

    @abstractmethod
    async def list_dead_letters(
        self,
        limit: int = 50,
        offset: int = 0,
        account_id: Optional[str] = None
    ) -> List[DeadLetterRecord]:
        pass

    @abstractmethod
    async def record_violation(self, account_id: str) -> int:
        """Increment the account's content-policy strike count."""
        pass


def _check_transition(job: Job, status: JobStatus):
    if not can_transition(job.status, status.value):
        raise InvalidStatusTransition(job.id, job.status, status.value)


def _apply_update(
    job: Job,
    status: JobStatus,
    error_code: Optional[str],
    error_message: Optional[str],
    attempt_count: Optional[int],
    fields: Dict[str, Any]
):
    job.apply_status(status.value)
    if error_code is not None:
        job.last_error_code = error_code
    if error_message is not None:
        job.last_error_message = error_message
    if attempt_count is not None:
        job.attempt_count = attempt_count
    for name, value in fields.items():
        if not hasattr(job, name):
            raise InternalError(f"Unknown job field: {name}", job_id=job.id)
        setattr(job, name, value)


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryJobStore(JobRecordStore):
    """
    Job store held in process memory.

    Methods never suspend between reading and writing shared state, so a
    single event loop serializes them; concurrent duplicate admissions see
    each other's rows.
    """

    def __init__(self, ledger: Optional[InMemoryCreditLedger] = None):
        self._ledger = ledger
        self._jobs: Dict[str, Job] = {}
        self._keys: Dict[str, str] = {}
        self._dead_letters: Dict[str, DeadLetterRecord] = {}
        self._violations: Dict[str, int] = {}

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise InternalError(f"Job not found: {job_id}", job_id=job_id)
        return job

    async def create(self, idempotency_key, attrs, debit_amount=0):
        existing_id = self._keys.get(idempotency_key)
        if existing_id is not None:
            return self._jobs[existing_id], False

        job = Job(idempotency_key=idempotency_key, credits_debited=debit_amount, **attrs)
        if debit_amount and self._ledger is not None:
            self._ledger.debit_now(job.account_id, debit_amount, job.id)

        self._jobs[job.id] = job
        self._keys[idempotency_key] = job.id
        return job, True

    async def get(self, job_id):
        return self._jobs.get(job_id)

    async def get_by_key(self, idempotency_key):
        job_id = self._keys.get(idempotency_key)
        return self._jobs.get(job_id) if job_id else None

    async def update_status(self, job_id, status, error_code=None, error_message=None, attempt_count=None, **fields):
        job = self._require(job_id)
        status = JobStatus(status)
        _check_transition(job, status)
        newly_failed = status == JobStatus.FAILED and job.status != JobStatus.FAILED.value
        _apply_update(job, status, error_code, error_message, attempt_count, fields)
        if newly_failed and self._ledger is not None:
            self._ledger.refund_now(job.id)
        return job

    async def append_stage_durations(self, job_id, durations, total_ms):
        job = self._require(job_id)
        job.stage_durations = dict(durations)
        job.duration_ms_total = total_ms
        job.updated_at = datetime.utcnow()

    async def insert_dead_letter(self, record):
        if record.job_id in self._dead_letters:
            return False
        self._dead_letters[record.job_id] = record
        return True

    async def get_dead_letter(self, job_id):
        return self._dead_letters.get(job_id)

    async def list_dead_letters(self, limit=50, offset=0, account_id=None):
        records = [
            r for r in self._dead_letters.values()
            if account_id is None or r.account_id == account_id
        ]
        records.sort(key=lambda r: r.last_attempt_at, reverse=True)
        return records[offset:offset + limit]

    async def record_violation(self, account_id):
        self._violations[account_id] = self._violations.get(account_id, 0) + 1
        return self._violations[account_id]


# =============================================================================
# SQL implementation
# =============================================================================

class SqlJobStore(JobRecordStore):
    """
    Job store on SQLModel tables.

    Uniqueness of the idempotency key is a database constraint; a losing
    concurrent insert surfaces as IntegrityError and resolves to the
    winner's row.
    """

    def __init__(self, session_maker, ledger: Optional[SqlCreditLedger] = None):
        self._session_maker = session_maker
        self._ledger = ledger

    async def _by_key(self, session: AsyncSession, idempotency_key: str) -> Optional[Job]:
        result = await session.execute(select(Job).where(Job.idempotency_key == idempotency_key))
        return result.scalars().first()

    async def _require(self, session: AsyncSession, job_id: str) -> Job:
        result = await session.execute(select(Job).where(Job.id == job_id).with_for_update())
        job = result.scalars().first()
        if job is None:
            raise InternalError(f"Job not found: {job_id}", job_id=job_id)
        return job

    async def create(self, idempotency_key, attrs, debit_amount=0):
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    existing = await self._by_key(session, idempotency_key)
                    if existing is not None:
                        return existing, False

                    job = Job(idempotency_key=idempotency_key, credits_debited=debit_amount, **attrs)
                    session.add(job)
                    await session.flush()

                    if debit_amount and self._ledger is not None:
                        await self._ledger.debit_in_session(session, job.account_id, debit_amount, job.id)
                return job, True
        except IntegrityError:
            logger.info("admission_race_resolved", idempotency_key=idempotency_key)

        existing = await self.get_by_key(idempotency_key)
        if existing is None:
            raise InternalError(f"Job for key {idempotency_key} vanished after unique violation")
        return existing, False

    async def get(self, job_id):
        async with self._session_maker() as session:
            return await session.get(Job, job_id)

    async def get_by_key(self, idempotency_key):
        async with self._session_maker() as session:
            return await self._by_key(session, idempotency_key)

    async def update_status(self, job_id, status, error_code=None, error_message=None, attempt_count=None, **fields):
        status = JobStatus(status)
        async with self._session_maker() as session:
            async with session.begin():
                job = await self._require(session, job_id)
                _check_transition(job, status)
                newly_failed = status == JobStatus.FAILED and job.status != JobStatus.FAILED.value
                _apply_update(job, status, error_code, error_message, attempt_count, fields)
                session.add(job)
                if newly_failed and self._ledger is not None:
                    await self._ledger.refund_in_session(session, job.id)
            return job

    async def append_stage_durations(self, job_id, durations, total_ms):
        async with self._session_maker() as session:
            async with session.begin():
                job = await self._require(session, job_id)
                job.stage_durations = dict(durations)
                job.duration_ms_total = total_ms
                job.updated_at = datetime.utcnow()
                session.add(job)

    async def insert_dead_letter(self, record):
        try:
            async with self._session_maker() as session:
                async with session.begin():
                    if await session.get(DeadLetterRecord, record.job_id) is not None:
                        return False
                    session.add(record)
            return True
        except IntegrityError:
            logger.info("dead_letter_already_recorded", job_id=record.job_id)
            return False

    async def get_dead_letter(self, job_id):
        async with self._session_maker() as session:
            return await session.get(DeadLetterRecord, job_id)

    async def list_dead_letters(self, limit=50, offset=0, account_id=None):
        statement = select(DeadLetterRecord)
        if account_id is not None:
            statement = statement.where(DeadLetterRecord.account_id == account_id)
        statement = statement.order_by(DeadLetterRecord.last_attempt_at.desc()).offset(offset).limit(limit)
        async with self._session_maker() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def record_violation(self, account_id):
        async with self._session_maker() as session:
            async with session.begin():
                violation = await session.get(AccountViolation, account_id)
                if violation is None:
                    violation = AccountViolation(account_id=account_id, count=0)
                violation.count += 1
                violation.last_violation_at = datetime.utcnow()
                session.add(violation)
                await session.flush()
                return violation.count
