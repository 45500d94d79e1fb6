"""
Background Removal

Segments the subject, shrinks and softens the mask edge, and applies it as
alpha. The segmentation model runs through rembg (u2net by default,
birefnet-general as the higher quality option); tests inject their own
segmenter.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from pixelqueue.core.exceptions import InvalidInputError
from pixelqueue.core.logging import get_logger
from pixelqueue.pipeline.stages import open_image, to_png_bytes

logger = get_logger(__name__)

SUPPORTED_MODELS = ("u2net", "birefnet-general")

# Returns an L-mode mask (255 = subject) for an RGB image
Segmenter = Callable[[Image.Image], Image.Image]


class RembgSegmenter:
    """Segmenter backed by a cached rembg session."""

    def __init__(self, model_name: str = "u2net"):
        if model_name not in SUPPORTED_MODELS:
            raise InvalidInputError(f"Unsupported background model: {model_name}")
        self.model_name = model_name
        self._session = None

    def _get_session(self):
        if self._session is None:
            # Import rembg (lazy import, pulls onnxruntime)
            from rembg import new_session

            logger.info("rembg_session_loading", model=self.model_name)
            self._session = new_session(self.model_name)
        return self._session

    def __call__(self, image: Image.Image) -> Image.Image:
        from rembg import remove

        return remove(image, session=self._get_session(), only_mask=True)


def erode_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Shrink the subject region by ``radius`` pixels (elliptical kernel)."""
    if radius <= 0:
        return mask
    size = 2 * radius + 1
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (size, size))
    return cv2.erode(mask, kernel, iterations=1)


def feather_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Soften the mask edge with a Gaussian blur of the given radius."""
    if radius <= 0:
        return mask
    size = 2 * radius + 1
    return cv2.GaussianBlur(mask, (size, size), 0)


def remove_background(
    image_bytes: bytes,
    segmenter: Segmenter,
    erosion_px: int = 2,
    feather_px: int = 2
) -> Tuple[bytes, bytes, Dict[str, Any]]:
    """
    Cut the subject out of an image.

    Returns:
        Tuple of (rgba_cutout_png, mask_png, metadata)
    """
    image = open_image(image_bytes).convert("RGB")

    mask_image = segmenter(image).convert("L")
    if mask_image.size != image.size:
        mask_image = mask_image.resize(image.size, Image.Resampling.BILINEAR)

    mask = np.array(mask_image, dtype=np.uint8)
    mask = erode_mask(mask, erosion_px)
    mask = feather_mask(mask, feather_px)
    final_mask = Image.fromarray(mask)

    cutout = image.convert("RGBA")
    cutout.putalpha(final_mask)

    metadata = {
        "stage": "background_removal",
        "dimensions": image.size,
        "erosion_px": erosion_px,
        "feather_px": feather_px,
        "subject_ratio": round(float((mask > 127).mean()), 4),
    }
    return to_png_bytes(cutout), to_png_bytes(final_mask), metadata


@dataclass(frozen=True)
class HaloReport:
    ok: bool
    channels: int
    semi_transparent_ratio: float
    reason: Optional[str] = None


def validate_no_halo(cutout_bytes: bytes, max_semi_transparent_ratio: float = 0.35) -> HaloReport:
    """
    Check a cutout for a visible halo.

    Flags results without an alpha channel, with an empty mask, or where too
    many of the visible pixels are only partially opaque.
    """
    image = open_image(cutout_bytes)
    channels = len(image.getbands())
    if "A" not in image.getbands():
        return HaloReport(ok=False, channels=channels, semi_transparent_ratio=0.0, reason="no_alpha")

    alpha = np.array(image.getchannel("A"), dtype=np.uint8)
    visible = alpha > 0
    visible_count = int(visible.sum())
    if visible_count == 0:
        return HaloReport(ok=False, channels=channels, semi_transparent_ratio=0.0, reason="empty_mask")

    semi = int(((alpha > 0) & (alpha < 255)).sum())
    ratio = semi / visible_count
    if ratio > max_semi_transparent_ratio:
        return HaloReport(ok=False, channels=channels, semi_transparent_ratio=round(ratio, 4), reason="soft_edges")
    return HaloReport(ok=True, channels=channels, semi_transparent_ratio=round(ratio, 4))
