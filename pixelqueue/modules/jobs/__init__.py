"""
Jobs Module

Job records, idempotency keys and admission.
"""

from pixelqueue.modules.jobs.models import Job, JobPayload, JobStatus, DeadLetterRecord

__all__ = ["Job", "JobPayload", "JobStatus", "DeadLetterRecord"]
