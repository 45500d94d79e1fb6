"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, queue depth, retries and dead letters.
The worker entrypoint exposes them over HTTP for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pixelqueue_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pixelqueue_pipeline_duration_seconds",
    "Total time for one pipeline attempt",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# Jobs Counter
jobs_total = Counter(
    "pixelqueue_jobs_total",
    "Total number of jobs reaching a terminal state",
    labelnames=["status", "failure_stage"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "pixelqueue_active_jobs",
    "Number of jobs currently held by a worker slot"
)

# Queue
queue_depth_gauge = Gauge(
    "pixelqueue_queue_depth",
    "Payloads waiting for delivery",
    labelnames=["priority"]
)

job_retries_total = Counter(
    "pixelqueue_job_retries_total",
    "Failed attempts that were re-enqueued",
    labelnames=["error_code"]
)

dead_letters_total = Counter(
    "pixelqueue_dead_letters_total",
    "Jobs moved to the dead-letter table",
    labelnames=["error_code"]
)

admissions_total = Counter(
    "pixelqueue_admissions_total",
    "Admission attempts by outcome",
    labelnames=["outcome"]  # created, duplicate, rejected
)

# Pipeline internals
halo_flags_total = Counter(
    "pixelqueue_halo_flags_total",
    "Background removal results flagged by the halo check",
    labelnames=["reason"]
)

compression_quality = Histogram(
    "pixelqueue_compression_quality",
    "Encoder quality chosen by the compression stage",
    labelnames=["format"],
    buckets=[50, 55, 60, 65, 70, 75, 80, 85, 90, 95]
)

provider_calls_total = Counter(
    "pixelqueue_provider_calls_total",
    "Generative provider calls",
    labelnames=["model", "status"]
)

# Application Info
app_info = Info(
    "pixelqueue_worker",
    "Worker information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("preprocess"):
            # do work
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_job_completion(status: str, failure_stage: str = "none"):
    """Record a job reaching a terminal state."""
    jobs_total.labels(status=status, failure_stage=failure_stage).inc()


def record_retry(error_code: str):
    job_retries_total.labels(error_code=error_code).inc()


def record_dead_letter(error_code: str):
    dead_letters_total.labels(error_code=error_code).inc()


def record_admission(outcome: str):
    admissions_total.labels(outcome=outcome).inc()


def record_provider_call(model: str, status: str):
    provider_calls_total.labels(model=model, status=status).inc()
