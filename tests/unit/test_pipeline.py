import asyncio
import io

import pytest
from PIL import Image

from pixelqueue.core.exceptions import (
    BadImageError,
    ContentPolicyViolationError,
    InvalidInputError,
    ProviderTransientError,
)
from pixelqueue.modules.jobs.models import JobPayload, PipelineStage
from pixelqueue.pipeline.generation import SimulatedProvider
from pixelqueue.pipeline.runner import Pipeline, PipelineOptions
from pixelqueue.pipeline.upload import THUMBNAIL_VARIANT
from pixelqueue.queue.retry import classify
from pixelqueue.queue.stage_timer import StageTimer

INPUT_KEY = "uploads/acct-1/job-1.png"


def job_payload(**overrides) -> JobPayload:
    fields = dict(job_id="job-1", account_id="acct-1", correlation_id="corr-1", input_storage_key=INPUT_KEY)
    fields.update(overrides)
    return JobPayload(**fields)


@pytest.mark.asyncio
async def test_pipeline_runs_all_stages_and_uploads(storage, segmenter, make_image):
    # Arrange
    await storage.put(INPUT_KEY, make_image((500, 500)))
    pipeline = Pipeline(storage, SimulatedProvider(), segmenter)
    timer = StageTimer("job-1")

    # Act
    result = await pipeline.run(job_payload(template_layout="C"), timer)

    # Assert
    assert list(timer.get_durations()) == [stage.value for stage in PipelineStage]
    assert set(result.output_keys) == {"square", "story", THUMBNAIL_VARIANT}
    for variant, key in result.output_keys.items():
        assert key.startswith(f"gallery/acct-1/job-1/v1/{variant}.")
        assert await storage.exists(key)
    assert result.model_used == "simulated"

    square = Image.open(io.BytesIO(await storage.get(result.output_keys["square"])))
    assert square.size == (1080, 1080)
    thumb = Image.open(io.BytesIO(await storage.get(result.output_keys[THUMBNAIL_VARIANT])))
    assert thumb.size == (256, 256)


@pytest.mark.asyncio
async def test_retried_attempt_overwrites_same_keys(storage, segmenter, make_image):
    await storage.put(INPUT_KEY, make_image())
    pipeline = Pipeline(storage, SimulatedProvider(), segmenter, PipelineOptions(canvases=("portrait",)))

    first = await pipeline.run(job_payload(), StageTimer("job-1"))
    second = await pipeline.run(job_payload(), StageTimer("job-1"))

    assert first.output_keys == second.output_keys
    assert set(first.output_keys) == {"portrait", THUMBNAIL_VARIANT}


@pytest.mark.asyncio
async def test_missing_input_fails_in_preprocess(storage, segmenter):
    pipeline = Pipeline(storage, SimulatedProvider(), segmenter)
    timer = StageTimer("job-1")

    with pytest.raises(BadImageError) as exc_info:
        await pipeline.run(job_payload(input_storage_key="uploads/acct-1/nothing.png"), timer)

    assert exc_info.value.stage == "preprocess"
    assert list(timer.get_durations()) == ["preprocess"]


@pytest.mark.asyncio
async def test_provider_error_is_tagged_with_generation_stage(storage, segmenter, make_image, flaky_provider):
    await storage.put(INPUT_KEY, make_image())
    pipeline = Pipeline(storage, flaky_provider([ContentPolicyViolationError("flagged")]), segmenter)
    timer = StageTimer("job-1")

    with pytest.raises(ContentPolicyViolationError) as exc_info:
        await pipeline.run(job_payload(), timer)

    assert exc_info.value.stage == "generation"
    assert list(timer.get_durations()) == ["preprocess", "background_removal", "generation"]


@pytest.mark.asyncio
async def test_input_key_outside_storage_root_fails_fast(storage, segmenter):
    pipeline = Pipeline(storage, SimulatedProvider(), segmenter)

    with pytest.raises(InvalidInputError) as exc_info:
        await pipeline.run(job_payload(input_storage_key="../../etc/passwd"), StageTimer("job-1"))

    assert exc_info.value.stage == "preprocess"
    assert exc_info.value.retryable is False
    assert classify(exc_info.value, 1, 3).retryable is False


class StalledProvider:
    async def transform(self, cutout, profile, timeout_ms=None):
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_generation_deadline_bounds_a_stalled_provider(storage, segmenter, make_image):
    await storage.put(INPUT_KEY, make_image())
    pipeline = Pipeline(storage, StalledProvider(), segmenter, PipelineOptions(generation_deadline_ms=50))

    with pytest.raises(ProviderTransientError) as exc_info:
        await pipeline.run(job_payload(), StageTimer("job-1"))

    assert exc_info.value.stage == "generation"
    assert exc_info.value.retryable is True
