"""
Stage Timer

Per-attempt bookkeeping of how long each pipeline stage took. A stage is
timed whether it succeeds or raises; the durations of the latest attempt
are flushed to the job record.
"""

import inspect
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pixelqueue.core.logging import LogContext, get_logger
from pixelqueue.core.metrics import track_stage_latency

logger = get_logger(__name__)


class StageTimer:
    """
    Times named pipeline stages for one job attempt.

    Usage:
        timer = StageTimer(job_id, correlation_id, store)
        cutout = await timer.with_stage("background_removal", remove)
        await timer.flush()
    """

    def __init__(self, job_id: str, correlation_id: Optional[str] = None, store=None):
        self.job_id = job_id
        self.correlation_id = correlation_id
        self._store = store
        self._durations: Dict[str, int] = {}

    async def with_stage(self, name: str, fn: Callable[[], Union[Any, Awaitable[Any]]]) -> Any:
        """Run ``fn`` as stage ``name``, recording its wall-clock duration."""
        start = time.perf_counter()
        with LogContext(job_id=self.job_id, correlation_id=self.correlation_id, stage=name):
            logger.debug("stage_started")
            try:
                with track_stage_latency(name):
                    result = fn()
                    if inspect.isawaitable(result):
                        result = await result
            except Exception as e:
                duration_ms = self._record(name, start)
                logger.warning("stage_failed", duration_ms=duration_ms, error=str(e), error_type=type(e).__name__)
                raise
            duration_ms = self._record(name, start)
            logger.info("stage_completed", duration_ms=duration_ms)
        return result

    def _record(self, name: str, start: float) -> int:
        duration_ms = int((time.perf_counter() - start) * 1000)
        self._durations[name] = duration_ms
        return duration_ms

    def get_durations(self) -> Dict[str, int]:
        return dict(self._durations)

    def get_total(self) -> int:
        return sum(self._durations.values())

    async def flush(self):
        """Persist durations to the job record. Never raises."""
        if self._store is None:
            return
        try:
            await self._store.append_stage_durations(self.job_id, self.get_durations(), self.get_total())
        except Exception as e:
            logger.error("stage_durations_flush_failed", job_id=self.job_id, error=str(e))
