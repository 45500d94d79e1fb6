"""
PixelQueue Worker - Entry Point

Builds every collaborator from settings, exposes Prometheus metrics and
runs the worker pool until SIGINT / SIGTERM, then drains in-flight jobs.

Usage:
    python -m pixelqueue.main
"""

import asyncio
import signal
import time

import httpx
import redis.asyncio as redis
from prometheus_client import start_http_server

from pixelqueue.core.config import Settings, settings
from pixelqueue.core.database import create_db_and_tables, create_engine_and_sessionmaker
from pixelqueue.core.exceptions import CircuitBreaker
from pixelqueue.core.logging import get_logger, setup_logging
from pixelqueue.core.metrics import set_app_info
from pixelqueue.core.storage import LocalStorage
from pixelqueue.modules.jobs.store import SqlJobStore
from pixelqueue.modules.ledger.ledger import SqlCreditLedger
from pixelqueue.pipeline.background import RembgSegmenter
from pixelqueue.pipeline.generation import ModelRouting, OpenRouterProvider, SimulatedProvider
from pixelqueue.pipeline.notify import LoggingNotifier
from pixelqueue.pipeline.runner import Pipeline, PipelineOptions
from pixelqueue.queue.backoff import make_backoff
from pixelqueue.queue.broker import Broker, InMemoryBroker
from pixelqueue.queue.dead_letter import DeadLetterHandler
from pixelqueue.queue.processor import JobProcessor
from pixelqueue.queue.redis_broker import RedisBroker
from pixelqueue.queue.worker import WorkerPool

logger = get_logger(__name__)


def build_broker(config: Settings, redis_client=None) -> Broker:
    common = dict(
        backoff=make_backoff(config.BACKOFF_DELAYS_MS, config.JITTER_MAX_MS),
        max_attempts=config.MAX_ATTEMPTS,
        priority_weights=config.PRIORITY_WEIGHTS,
        fair_share_interval=config.FAIR_SHARE_INTERVAL,
        visibility_timeout_s=config.VISIBILITY_TIMEOUT_S,
    )
    if config.QUEUE_BACKEND == "redis":
        return RedisBroker(redis_client, queue_name=config.QUEUE_NAME, **common)
    if config.QUEUE_BACKEND == "memory":
        return InMemoryBroker(**common)
    raise ValueError(f"Unknown QUEUE_BACKEND: {config.QUEUE_BACKEND}")


def build_provider(config: Settings, http_client: httpx.AsyncClient):
    if config.PROVIDER_BACKEND == "openrouter":
        routing = ModelRouting(
            model=config.GENERATION_MODEL,
            fallback_model=config.GENERATION_FALLBACK_MODEL,
            timeout_ms=config.GENERATION_TIMEOUT_MS,
        )
        return OpenRouterProvider(
            api_key=config.OPENROUTER_API_KEY,
            routing=routing,
            base_url=config.OPENROUTER_BASE_URL,
            client=http_client,
            circuit_breaker=CircuitBreaker("generation", failure_threshold=5, recovery_timeout=60),
        )
    if config.PROVIDER_BACKEND == "simulated":
        return SimulatedProvider()
    raise ValueError(f"Unknown PROVIDER_BACKEND: {config.PROVIDER_BACKEND}")


async def run_worker(config: Settings):
    if config.QUEUE_BACKEND == "memory":
        # Nothing outside this process could enqueue into it
        raise ValueError("The worker needs a shared queue; set QUEUE_BACKEND=redis")

    startup_start = time.time()
    logger.info(
        "worker_starting",
        app_name=config.APP_NAME,
        version=config.APP_VERSION,
        environment=config.ENVIRONMENT,
        queue_backend=config.QUEUE_BACKEND
    )

    engine, session_maker = create_engine_and_sessionmaker(config.DATABASE_URL)
    await create_db_and_tables(engine)
    logger.info("database_initialized")

    ledger = SqlCreditLedger(session_maker)
    store = SqlJobStore(session_maker, ledger)

    redis_client = None
    if config.QUEUE_BACKEND == "redis":
        redis_client = redis.from_url(config.REDIS_URL, encoding="utf-8", decode_responses=True)
        logger.info("redis_connected", url=config.REDIS_URL)
    broker = build_broker(config, redis_client)

    http_client = httpx.AsyncClient()
    storage = LocalStorage(config.LOCAL_STORAGE_PATH)
    pipeline = Pipeline(
        storage=storage,
        provider=build_provider(config, http_client),
        segmenter=RembgSegmenter(config.BACKGROUND_MODEL),
        options=PipelineOptions.from_settings(config),
    )
    notifier = LoggingNotifier()
    processor = JobProcessor(store, pipeline, notifier)
    broker.set_callbacks(on_retry=processor.on_retry, on_dead_letter=DeadLetterHandler(store, notifier))

    start_http_server(config.METRICS_PORT)
    set_app_info(version=config.APP_VERSION, environment=config.ENVIRONMENT)
    logger.info("metrics_server_started", port=config.METRICS_PORT)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    pool = WorkerPool(broker, processor, concurrency=config.WORKER_CONCURRENCY)
    await pool.start()
    logger.info("worker_ready", startup_time_seconds=round(time.time() - startup_start, 3))

    await stop_event.wait()

    logger.info("worker_shutting_down")
    await pool.stop(drain=True)
    await broker.close()
    await http_client.aclose()
    if redis_client is not None:
        await redis_client.aclose()
    await engine.dispose()
    logger.info("worker_shutdown_complete")


def main():
    setup_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_FORMAT_JSON)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
