"""
Pipeline Runner

Executes the ordered stage list for one job attempt:

1. preprocess          - decode, orient, downscale, denoise
2. background_removal  - segment, erode, feather
3. generation          - styled product shot from the cutout
4. template            - social canvases for the chosen layout
5. watermark           - free-tier text stamp
6. compression         - WebP / JPEG under the size target
7. upload              - variants + thumbnail to object storage

Every stage runs under the attempt's StageTimer. The first failing stage
aborts the rest; its error propagates to the processor unchanged apart
from being tagged with the stage name.
"""

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pixelqueue.core.exceptions import BadImageError, PixelQueueError, ProviderTransientError
from pixelqueue.core.logging import get_logger
from pixelqueue.core.metrics import compression_quality, halo_flags_total
from pixelqueue.core.storage import IStorage
from pixelqueue.modules.jobs.models import JobPayload, PipelineStage
from pixelqueue.pipeline.background import Segmenter, remove_background, validate_no_halo
from pixelqueue.pipeline.generation import GenerativeProvider, profile_for_job
from pixelqueue.pipeline.stages import CompressionResult, apply_watermark, compress_image, preprocess_image
from pixelqueue.pipeline.templates import compose_template
from pixelqueue.pipeline.upload import upload_outputs

logger = get_logger(__name__)


@dataclass
class PipelineOptions:
    max_dimension: int = 1024
    portrait_size: Tuple[int, int] = (768, 1024)
    denoise: bool = True
    erosion_px: int = 2
    feather_px: int = 2
    canvases: Tuple[str, ...] = ("square", "story")
    watermark_text: str = "PIXELQUEUE"
    watermark_opacity: float = 0.4
    watermark_position: str = "bottom-right"
    target_size_kb: int = 300
    max_quality: int = 85
    min_quality: int = 65
    quality_step: int = 5
    storage_namespace: str = "gallery"
    pipeline_version: int = 1
    generation_timeout_ms: int = 30000
    generation_deadline_ms: int = 65000

    @classmethod
    def from_settings(cls, settings) -> "PipelineOptions":
        return cls(
            max_dimension=settings.MAX_DIMENSION,
            portrait_size=(settings.PORTRAIT_WIDTH, settings.PORTRAIT_HEIGHT),
            denoise=settings.DENOISE,
            erosion_px=settings.EROSION_PX,
            feather_px=settings.FEATHER_PX,
            canvases=tuple(settings.TEMPLATE_CANVASES),
            watermark_text=settings.WATERMARK_TEXT,
            watermark_opacity=settings.WATERMARK_OPACITY,
            watermark_position=settings.WATERMARK_POSITION,
            target_size_kb=settings.TARGET_SIZE_KB,
            max_quality=settings.MAX_QUALITY,
            min_quality=settings.MIN_QUALITY,
            quality_step=settings.QUALITY_STEP,
            storage_namespace=settings.STORAGE_NAMESPACE,
            pipeline_version=settings.PIPELINE_VERSION,
            generation_timeout_ms=settings.GENERATION_TIMEOUT_MS,
            generation_deadline_ms=settings.GENERATION_DEADLINE_MS,
        )


@dataclass
class PipelineContext:
    """Buffers handed from stage to stage within one attempt."""
    payload: JobPayload
    image: Optional[bytes] = None
    cutout: Optional[bytes] = None
    mask: Optional[bytes] = None
    generated: Optional[bytes] = None
    variants: Dict[str, bytes] = field(default_factory=dict)
    compressed: Dict[str, CompressionResult] = field(default_factory=dict)
    output_keys: Dict[str, str] = field(default_factory=dict)
    model_used: Optional[str] = None
    provider_used: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineResult:
    output_keys: Dict[str, str]
    model_used: Optional[str]
    provider_used: Optional[str]
    compression: Dict[str, Dict[str, Any]]


StageFn = Callable[[PipelineContext], Awaitable[None]]


class Pipeline:
    """Ordered image stages driven by the job processor."""

    def __init__(
        self,
        storage: IStorage,
        provider: GenerativeProvider,
        segmenter: Segmenter,
        options: Optional[PipelineOptions] = None
    ):
        self.storage = storage
        self.provider = provider
        self.segmenter = segmenter
        self.options = options or PipelineOptions()
        self.stages: List[Tuple[str, StageFn]] = [
            (PipelineStage.PREPROCESS.value, self.preprocess),
            (PipelineStage.BACKGROUND_REMOVAL.value, self.remove_background),
            (PipelineStage.GENERATION.value, self.generate),
            (PipelineStage.TEMPLATE.value, self.template),
            (PipelineStage.WATERMARK.value, self.watermark),
            (PipelineStage.COMPRESSION.value, self.compress),
            (PipelineStage.UPLOAD.value, self.upload),
        ]

    async def run(self, payload: JobPayload, timer) -> PipelineResult:
        ctx = PipelineContext(payload=payload)
        for name, stage in self.stages:
            try:
                await timer.with_stage(name, partial(stage, ctx))
            except PixelQueueError as e:
                if e.stage is None:
                    e.stage = name
                raise

        return PipelineResult(
            output_keys=dict(ctx.output_keys),
            model_used=ctx.model_used,
            provider_used=ctx.provider_used,
            compression={
                name: {"format": r.format, "quality": r.quality, "size_bytes": r.size_bytes}
                for name, r in ctx.compressed.items()
            },
        )

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def load_input(self, payload: JobPayload) -> bytes:
        if not payload.input_storage_key:
            raise BadImageError("Job has no input image", job_id=payload.job_id)
        try:
            return await self.storage.get(payload.input_storage_key)
        except FileNotFoundError:
            raise BadImageError(f"Input image missing: {payload.input_storage_key}", job_id=payload.job_id)

    async def preprocess(self, ctx: PipelineContext):
        source = await self.load_input(ctx.payload)
        opts = self.options
        ctx.image, ctx.metadata["preprocess"] = await asyncio.to_thread(
            preprocess_image, source, opts.max_dimension, opts.portrait_size, opts.denoise
        )

    async def remove_background(self, ctx: PipelineContext):
        ctx.cutout, ctx.mask, ctx.metadata["background_removal"] = await asyncio.to_thread(
            remove_background, ctx.image, self.segmenter, self.options.erosion_px, self.options.feather_px
        )
        report = await asyncio.to_thread(validate_no_halo, ctx.cutout)
        if not report.ok:
            halo_flags_total.labels(reason=report.reason).inc()
            logger.warning(
                "halo_detected",
                reason=report.reason,
                channels=report.channels,
                semi_transparent_ratio=report.semi_transparent_ratio
            )

    async def generate(self, ctx: PipelineContext):
        payload = ctx.payload
        profile = profile_for_job(payload.category, payload.background_style)
        deadline_s = self.options.generation_deadline_ms / 1000.0
        try:
            result = await asyncio.wait_for(
                self.provider.transform(ctx.cutout, profile, self.options.generation_timeout_ms),
                timeout=deadline_s,
            )
        except asyncio.TimeoutError:
            raise ProviderTransientError(
                f"Generation exceeded {self.options.generation_deadline_ms}ms", job_id=payload.job_id
            )
        ctx.generated = result.image
        ctx.model_used = result.model_used
        ctx.provider_used = result.provider_used

    async def template(self, ctx: PipelineContext):
        ctx.variants, ctx.metadata["template"] = await asyncio.to_thread(
            compose_template, ctx.generated, ctx.payload.template_layout, self.options.canvases
        )

    async def watermark(self, ctx: PipelineContext):
        opts = self.options
        for name, data in list(ctx.variants.items()):
            ctx.variants[name], _ = await asyncio.to_thread(
                apply_watermark,
                data,
                ctx.payload.account_tier,
                opts.watermark_text,
                opts.watermark_opacity,
                opts.watermark_position,
            )

    async def compress(self, ctx: PipelineContext):
        opts = self.options
        for name, data in ctx.variants.items():
            result = await asyncio.to_thread(
                compress_image, data, opts.target_size_kb, opts.max_quality, opts.min_quality, opts.quality_step
            )
            compression_quality.labels(format=result.format).observe(result.quality)
            ctx.compressed[name] = result

    async def upload(self, ctx: PipelineContext):
        ctx.output_keys = await upload_outputs(
            self.storage,
            ctx.payload,
            ctx.compressed,
            self.options.storage_namespace,
            self.options.pipeline_version,
        )
