import io

import numpy as np
import pytest
from PIL import Image

from pixelqueue.core.exceptions import InvalidInputError
from pixelqueue.pipeline.background import (
    RembgSegmenter,
    erode_mask,
    feather_mask,
    remove_background,
    validate_no_halo,
)


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def square_mask() -> np.ndarray:
    mask = np.zeros((20, 20), dtype=np.uint8)
    mask[5:15, 5:15] = 255
    return mask


def test_erosion_shrinks_subject_edge():
    mask = square_mask()

    eroded = erode_mask(mask, 2)

    assert eroded[5, 5] == 0
    assert eroded[5, 10] == 0
    assert eroded[10, 10] == 255
    assert eroded.sum() < mask.sum()


def test_zero_radius_is_a_no_op():
    mask = square_mask()

    assert erode_mask(mask, 0) is mask
    assert feather_mask(mask, 0) is mask


def test_feathering_softens_the_edge_only():
    feathered = feather_mask(square_mask(), 2)

    assert 0 < feathered[5, 10] < 255
    assert feathered[10, 10] == 255
    assert feathered[0, 0] == 0


def test_remove_background_produces_alpha_cutout(make_image, segmenter):
    # Act
    cutout_bytes, mask_bytes, meta = remove_background(make_image((400, 400)), segmenter)

    # Assert
    cutout = Image.open(io.BytesIO(cutout_bytes))
    mask = Image.open(io.BytesIO(mask_bytes))
    assert cutout.mode == "RGBA"
    assert cutout.size == (400, 400)
    assert mask.mode == "L"
    alpha = np.asarray(cutout.getchannel("A"))
    assert alpha[0, 0] == 0
    assert alpha[200, 200] == 255
    assert 0 < meta["subject_ratio"] < 0.3

    report = validate_no_halo(cutout_bytes)
    assert report.ok is True
    assert report.channels == 4


def test_mask_is_resized_to_image(make_image):
    def small_segmenter(image):
        return Image.new("L", (10, 10), 255)

    cutout_bytes, _, _ = remove_background(make_image((64, 48)), small_segmenter, erosion_px=0, feather_px=0)

    assert Image.open(io.BytesIO(cutout_bytes)).size == (64, 48)


def test_halo_report_flags_missing_alpha():
    report = validate_no_halo(png_bytes(Image.new("RGB", (32, 32), "white")))

    assert report.ok is False
    assert report.reason == "no_alpha"
    assert report.channels == 3


def test_halo_report_flags_empty_mask():
    report = validate_no_halo(png_bytes(Image.new("RGBA", (32, 32), (0, 0, 0, 0))))

    assert report.ok is False
    assert report.reason == "empty_mask"


def test_halo_report_flags_soft_edges():
    report = validate_no_halo(png_bytes(Image.new("RGBA", (32, 32), (255, 0, 0, 128))))

    assert report.ok is False
    assert report.reason == "soft_edges"
    assert report.semi_transparent_ratio == 1.0


def test_unsupported_segmentation_model():
    with pytest.raises(InvalidInputError):
        RembgSegmenter("sam-xl")
