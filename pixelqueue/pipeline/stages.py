"""
Pipeline Stage Implementations

Pure image operations on bytes. Each function is synchronous and CPU-bound;
the pipeline runner calls them through ``asyncio.to_thread``.

- preprocess: EXIF orientation, downscale, light denoise
- watermark: semi-transparent text for the free tier
- compression: WebP / JPEG quality search under a size target
"""

import io
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps, UnidentifiedImageError

from pixelqueue.core.exceptions import BadImageError, InvalidInputError
from pixelqueue.core.logging import get_logger
from pixelqueue.core.storage import CONTENT_TYPES
from pixelqueue.modules.jobs.models import AccountTier

logger = get_logger(__name__)


def open_image(image_bytes: bytes) -> Image.Image:
    """Decode bytes into a fully loaded image. Raises BadImageError."""
    if not image_bytes:
        raise BadImageError("Empty image buffer")
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise BadImageError(f"Cannot decode image: {e}")
    return image


def to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


# =============================================================================
# Stage 1: Preprocess
# =============================================================================

def preprocess_image(
    image_bytes: bytes,
    max_dimension: int = 1024,
    portrait_size: Tuple[int, int] = (768, 1024),
    denoise: bool = True
) -> Tuple[bytes, Dict[str, Any]]:
    """
    Normalize a raw upload for the rest of the pipeline.

    Square and landscape images are capped at ``max_dimension`` on the long
    side; portraits are fit into ``portrait_size``. Images are never
    upscaled. Output is lossless PNG.

    Returns:
        Tuple of (png_bytes, metadata)
    """
    image = open_image(image_bytes)
    image = ImageOps.exif_transpose(image)
    original_size = image.size
    width, height = original_size

    has_alpha = image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info)
    image = image.convert("RGBA" if has_alpha else "RGB")

    is_portrait = height > width
    if is_portrait:
        scale = min(portrait_size[0] / width, portrait_size[1] / height, 1.0)
    else:
        scale = min(max_dimension / max(width, height), 1.0)

    if scale < 1.0:
        target = (max(1, round(width * scale)), max(1, round(height * scale)))
        image = image.resize(target, Image.Resampling.LANCZOS)

    if denoise:
        image = image.filter(ImageFilter.MedianFilter(3))

    output = to_png_bytes(image)
    metadata = {
        "stage": "preprocess",
        "original_dimensions": original_size,
        "output_dimensions": image.size,
        "is_portrait": is_portrait,
        "resized": scale < 1.0,
        "denoised": denoise,
    }
    return output, metadata


# =============================================================================
# Stage 5: Watermark
# =============================================================================

WATERMARK_POSITIONS = ("bottom-right", "bottom-left", "top-right", "top-left", "center")


def _watermark_origin(position: str, size: Tuple[int, int], box: Tuple[int, int], padding: int) -> Tuple[int, int]:
    width, height = size
    text_width, text_height = box
    if position == "bottom-left":
        return padding, height - text_height - padding
    if position == "top-right":
        return width - text_width - padding, padding
    if position == "top-left":
        return padding, padding
    if position == "center":
        return (width - text_width) // 2, (height - text_height) // 2
    return width - text_width - padding, height - text_height - padding


def apply_watermark(
    image_bytes: bytes,
    account_tier: str = AccountTier.FREE.value,
    text: str = "PIXELQUEUE",
    opacity: float = 0.4,
    position: str = "bottom-right"
) -> Tuple[bytes, Dict[str, Any]]:
    """
    Stamp semi-transparent text on free-tier outputs.

    Pro accounts get their input back untouched (same bytes).
    """
    if account_tier == AccountTier.PRO.value:
        return image_bytes, {"stage": "watermark", "applied": False}

    if position not in WATERMARK_POSITIONS:
        raise InvalidInputError(f"Unknown watermark position: {position}")

    image = open_image(image_bytes).convert("RGBA")
    width, _ = image.size
    font_size = max(10, int(width * 0.04))
    padding = int(width * 0.03)

    font = ImageFont.load_default(size=font_size)
    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)

    left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
    origin = _watermark_origin(position, image.size, (right - left, bottom - top), padding)
    alpha = int(255 * max(0.0, min(opacity, 1.0)))

    # 1px drop shadow at half the text opacity
    shadow = (origin[0] - left + 1, origin[1] - top + 1)
    draw.text(shadow, text, font=font, fill=(0, 0, 0, alpha // 2))
    draw.text((origin[0] - left, origin[1] - top), text, font=font, fill=(255, 255, 255, alpha))

    output = to_png_bytes(Image.alpha_composite(image, overlay))
    return output, {"stage": "watermark", "applied": True, "font_size": font_size, "position": position}


# =============================================================================
# Stage 6: Compression
# =============================================================================

@dataclass(frozen=True)
class CompressionResult:
    data: bytes
    format: str       # webp | jpeg
    quality: int
    size_bytes: int
    original_size_bytes: int
    was_compressed: bool

    @property
    def ext(self) -> str:
        return self.format

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.format]

    @property
    def size_kb(self) -> int:
        return round(self.size_bytes / 1024)


def _encode(image: Image.Image, fmt: str, quality: int) -> bytes:
    buffer = io.BytesIO()
    if fmt == "jpeg":
        if image.mode != "RGB":
            flattened = Image.new("RGB", image.size, (255, 255, 255))
            rgba = image.convert("RGBA")
            flattened.paste(rgba, mask=rgba.getchannel("A"))
            image = flattened
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
    else:
        image.save(buffer, format="WEBP", quality=quality, method=4)
    return buffer.getvalue()


def _search_quality(
    image: Image.Image,
    fmt: str,
    target_bytes: int,
    max_quality: int,
    min_quality: int,
    quality_step: int,
    original_size: int
) -> CompressionResult:
    """Walk quality down from max to the floor, stopping at the first fit."""
    data = b""
    quality = max_quality
    for quality in range(max_quality, min_quality - 1, -quality_step):
        data = _encode(image, fmt, quality)
        if len(data) <= target_bytes:
            break
    else:
        # Floor not on the step grid: encode it once so we never stop above it
        if quality != min_quality:
            quality = min_quality
            data = _encode(image, fmt, quality)

    return CompressionResult(
        data=data,
        format=fmt,
        quality=quality,
        size_bytes=len(data),
        original_size_bytes=original_size,
        was_compressed=quality < max_quality,
    )


def compress_image(
    image_bytes: bytes,
    target_size_kb: int = 300,
    max_quality: int = 85,
    min_quality: int = 65,
    quality_step: int = 5
) -> CompressionResult:
    """
    Encode as WebP and JPEG under a size target and keep the smaller.

    Each codec gets at most ``(max - min) / step + 1`` encodes and quality
    never drops below ``min_quality``. If nothing fits the target the
    floor-quality encode is returned anyway.
    """
    if not (0 < min_quality <= max_quality <= 100) or quality_step < 1:
        raise InvalidInputError(
            f"Invalid quality range {min_quality}..{max_quality} step {quality_step}"
        )

    image = open_image(image_bytes)
    if image.mode not in ("RGB", "RGBA"):
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")

    target_bytes = target_size_kb * 1024
    candidates = [
        _search_quality(image, fmt, target_bytes, max_quality, min_quality, quality_step, len(image_bytes))
        for fmt in ("webp", "jpeg")
    ]
    best = min(candidates, key=lambda c: c.size_bytes)

    logger.debug(
        "compression_selected",
        format=best.format,
        quality=best.quality,
        size_kb=best.size_kb,
        target_kb=target_size_kb
    )
    return best


def make_thumbnail(image_bytes: bytes, size: int = 256, quality: int = 80) -> bytes:
    """Square WebP thumbnail, center-cropped."""
    image = open_image(image_bytes).convert("RGB")
    thumb = ImageOps.fit(image, (size, size), Image.Resampling.LANCZOS)
    buffer = io.BytesIO()
    thumb.save(buffer, format="WEBP", quality=quality)
    return buffer.getvalue()
