"""
Job Models with Pipeline Status Tracking

Tracks the full lifecycle of an image job:
- Idempotent identity (one row per idempotency key)
- Monotonic status transitions
- Per-stage timing of the latest attempt
- Dead-letter records for permanently failed jobs
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from pydantic import BaseModel, ConfigDict
from typing import Optional, Dict, Any
from datetime import datetime


class JobStatus(str, Enum):
    """Job status states."""
    PENDING = "pending"        # Row created, credits debited
    QUEUED = "queued"          # Payload handed to the broker
    PROCESSING = "processing"  # A worker slot holds the job
    COMPLETED = "completed"    # Pipeline finished, outputs uploaded
    FAILED = "failed"          # Dead-lettered, refund triggered


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class SourceChannel(str, Enum):
    MOBILE_APP = "mobile_app"
    TELEGRAM_BOT = "telegram_bot"
    WHATSAPP_BOT = "whatsapp_bot"
    WEB_APP = "web_app"
    API = "api"


# Channels whose natural dedup token is the platform message id
BOT_CHANNELS = frozenset({SourceChannel.TELEGRAM_BOT, SourceChannel.WHATSAPP_BOT})


class AccountTier(str, Enum):
    FREE = "free"
    PRO = "pro"


class TemplateLayout(str, Enum):
    A = "A"
    B = "B"
    C = "C"


class PipelineStage(str, Enum):
    """Pipeline stages, in execution order."""
    PREPROCESS = "preprocess"
    BACKGROUND_REMOVAL = "background_removal"
    GENERATION = "generation"
    TEMPLATE = "template"
    WATERMARK = "watermark"
    COMPRESSION = "compression"
    UPLOAD = "upload"


# Allowed moves. Same-state writes are allowed for queued/processing so a
# redelivery can bump the attempt count; terminal states accept only
# themselves (a repeated dead-letter is a no-op).
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.QUEUED, JobStatus.FAILED},
    JobStatus.QUEUED: {JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.QUEUED, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: {JobStatus.COMPLETED},
    JobStatus.FAILED: {JobStatus.FAILED},
}


def can_transition(current: str, target: str) -> bool:
    """Check whether a job may move from ``current`` to ``target``."""
    return JobStatus(target) in _TRANSITIONS[JobStatus(current)]


class Job(SQLModel, table=True):
    """
    One logical image-transformation request.

    Stores:
    - Identity and idempotency key
    - Selectors copied into the queue payload
    - Status, attempt count and last error
    - Stage durations of the latest attempt
    """
    __tablename__ = "jobs"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )
    idempotency_key: str = Field(unique=True, index=True)

    account_id: str = Field(index=True)
    correlation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    account_tier: str = Field(default=AccountTier.FREE.value)

    # Selectors
    source_channel: str = Field(default=SourceChannel.API.value)
    category: str = Field(default="clothing")
    background_style: str = Field(default="studio_white")
    template_layout: str = Field(default=TemplateLayout.A.value)
    mannequin_mode: str = Field(default="none")
    priority: str = Field(default=Priority.NORMAL.value)

    input_storage_key: Optional[str] = None

    # Status
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    attempt_count: int = Field(default=0)
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None

    # Timing
    stage_durations: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    duration_ms_total: int = Field(default=0)

    # Outputs
    output_keys: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    model_used: Optional[str] = None
    provider_used: Optional[str] = None
    credits_debited: int = Field(default=0)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    queued_at: Optional[datetime] = None
    processing_started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def apply_status(self, status: str):
        """Set status and the matching timestamp. Caller validates the move."""
        now = datetime.utcnow()
        self.status = status
        self.updated_at = now
        if status == JobStatus.QUEUED.value:
            self.queued_at = now
        elif status == JobStatus.PROCESSING.value:
            self.processing_started_at = now
        elif status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
            self.completed_at = now

    def to_payload(self) -> "JobPayload":
        return JobPayload(
            job_id=self.id,
            account_id=self.account_id,
            correlation_id=self.correlation_id,
            priority=Priority(self.priority),
            category=self.category,
            background_style=self.background_style,
            template_layout=self.template_layout,
            mannequin_mode=self.mannequin_mode,
            source_channel=self.source_channel,
            account_tier=self.account_tier,
            input_storage_key=self.input_storage_key,
        )

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to a plain dict for status reporting."""
        return {
            "id": self.id,
            "idempotency_key": self.idempotency_key,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "error": {
                "code": self.last_error_code,
                "message": self.last_error_message
            } if self.last_error_code else None,
            "stage_durations": self.stage_durations,
            "duration_ms_total": self.duration_ms_total,
            "output_keys": self.output_keys,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None
        }


class JobPayload(BaseModel):
    """Immutable projection of a Job handed to the broker."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    account_id: str
    correlation_id: str
    priority: Priority = Priority.NORMAL
    category: str = "clothing"
    background_style: str = "studio_white"
    template_layout: str = TemplateLayout.A.value
    mannequin_mode: str = "none"
    source_channel: str = SourceChannel.API.value
    account_tier: str = AccountTier.FREE.value
    input_storage_key: Optional[str] = None


class DeadLetterRecord(SQLModel, table=True):
    """One row per permanently failed job, written once and never updated."""
    __tablename__ = "dead_letter_jobs"

    job_id: str = Field(primary_key=True)
    account_id: str = Field(index=True)
    correlation_id: Optional[str] = None
    error_code: str
    error_message: str
    attempt_count: int = Field(default=0)
    failed_stage: Optional[str] = None
    stack_trace: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    last_attempt_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class AccountViolation(SQLModel, table=True):
    """Content-policy strikes per account."""
    __tablename__ = "account_violations"

    account_id: str = Field(primary_key=True)
    count: int = Field(default=0)
    last_violation_at: datetime = Field(default_factory=datetime.utcnow)
