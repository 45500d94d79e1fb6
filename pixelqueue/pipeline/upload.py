"""
Output Upload

Writes every compressed variant plus a 256px thumbnail to object storage
under the deterministic key scheme, so a retried attempt overwrites its
own earlier uploads.
"""

import asyncio
from typing import Dict, Mapping

from pixelqueue.core.exceptions import StorageError
from pixelqueue.core.logging import get_logger
from pixelqueue.core.storage import CONTENT_TYPES, IStorage, build_object_key
from pixelqueue.modules.jobs.models import JobPayload
from pixelqueue.pipeline.stages import CompressionResult, make_thumbnail

logger = get_logger(__name__)

THUMBNAIL_VARIANT = "thumb_256"
THUMBNAIL_SIZE = 256


async def upload_outputs(
    storage: IStorage,
    payload: JobPayload,
    outputs: Mapping[str, CompressionResult],
    namespace: str = "gallery",
    pipeline_version: int = 1
) -> Dict[str, str]:
    """
    Upload variants and thumbnail.

    The thumbnail is cut from the first variant.

    Returns:
        Mapping of variant name to storage key
    """
    if not outputs:
        raise StorageError("Nothing to upload", job_id=payload.job_id)

    keys: Dict[str, str] = {}
    try:
        for variant, result in outputs.items():
            key = build_object_key(namespace, payload.account_id, payload.job_id, pipeline_version, variant, result.ext)
            keys[variant] = await storage.put(key, result.data, result.content_type)

        primary = next(iter(outputs.values()))
        thumbnail = await asyncio.to_thread(make_thumbnail, primary.data, THUMBNAIL_SIZE)
        thumb_key = build_object_key(
            namespace, payload.account_id, payload.job_id, pipeline_version, THUMBNAIL_VARIANT, "webp"
        )
        keys[THUMBNAIL_VARIANT] = await storage.put(thumb_key, thumbnail, CONTENT_TYPES["webp"])
    except StorageError:
        raise
    except OSError as e:
        raise StorageError(f"Upload failed: {e}", job_id=payload.job_id)

    logger.info("outputs_uploaded", job_id=payload.job_id, keys=list(keys.values()))
    return keys
