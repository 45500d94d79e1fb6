import httpx
import pytest
from fakeredis import aioredis

from pixelqueue.core.config import Settings
from pixelqueue.main import build_broker, build_provider, run_worker
from pixelqueue.pipeline.generation import OpenRouterProvider, SimulatedProvider
from pixelqueue.pipeline.runner import PipelineOptions
from pixelqueue.queue.broker import InMemoryBroker
from pixelqueue.queue.redis_broker import RedisBroker


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TEMPLATE_CANVASES", '["portrait"]')
    monkeypatch.setenv("QUEUE_BACKEND", "redis")

    config = Settings()

    assert config.MAX_ATTEMPTS == 5
    assert config.TEMPLATE_CANVASES == ["portrait"]
    assert config.QUEUE_BACKEND == "redis"


def test_pipeline_options_follow_settings():
    config = Settings(TARGET_SIZE_KB=150, PORTRAIT_WIDTH=600, PORTRAIT_HEIGHT=800, TEMPLATE_CANVASES=["story"])

    options = PipelineOptions.from_settings(config)

    assert options.target_size_kb == 150
    assert options.portrait_size == (600, 800)
    assert options.canvases == ("story",)


def test_build_broker_by_backend():
    memory = build_broker(Settings(QUEUE_BACKEND="memory", MAX_ATTEMPTS=4))
    redis_broker = build_broker(Settings(QUEUE_BACKEND="redis"), aioredis.FakeRedis(decode_responses=True))

    assert isinstance(memory, InMemoryBroker)
    assert memory.max_attempts == 4
    assert isinstance(redis_broker, RedisBroker)
    with pytest.raises(ValueError):
        build_broker(Settings(QUEUE_BACKEND="kafka"))


@pytest.mark.asyncio
async def test_build_provider_by_backend():
    async with httpx.AsyncClient() as client:
        simulated = build_provider(Settings(PROVIDER_BACKEND="simulated"), client)
        remote = build_provider(
            Settings(PROVIDER_BACKEND="openrouter", OPENROUTER_API_KEY="key", GENERATION_FALLBACK_MODEL="b/m"),
            client,
        )

    assert isinstance(simulated, SimulatedProvider)
    assert isinstance(remote, OpenRouterProvider)
    assert remote.routing.fallback_model == "b/m"


def test_worker_defaults_to_shared_queue(monkeypatch):
    monkeypatch.delenv("QUEUE_BACKEND", raising=False)

    assert Settings().QUEUE_BACKEND == "redis"


@pytest.mark.asyncio
async def test_worker_refuses_process_local_queue():
    with pytest.raises(ValueError, match="QUEUE_BACKEND=redis"):
        await run_worker(Settings(QUEUE_BACKEND="memory"))
