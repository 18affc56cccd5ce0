"""
Pipeline Stage Implementations

Each stage is a separate function that can be called independently and
returns its result together with a metadata dict for logging.
"""

from datetime import datetime
from typing import Any, Dict, Tuple

import httpx

from brickai.core.clock import utc_now
from brickai.core.exceptions import DownloadFailedError, NoResultUrlError
from brickai.core.logging import get_logger, set_stage
from brickai.core.metrics import track_stage_latency
from brickai.core.storage import IStorage, PROCESSED_FOLDER, make_asset_key
from brickai.pipeline.client import TransformationClient
from brickai.pipeline.stream import extract_result_url

logger = get_logger(__name__)

DEFAULT_RESULT_CONTENT_TYPE = "image/png"


def _elapsed_ms(start_time: datetime) -> int:
    return int((utc_now() - start_time).total_seconds() * 1000)


# =============================================================================
# Stage 1: Transformation Stream
# =============================================================================

async def transform_stage(
    client: TransformationClient,
    original_url: str,
    directive: str
) -> Tuple[str, Dict[str, Any]]:
    """Stream the transformation and return the accumulated text."""
    set_stage("transform")
    start_time = utc_now()

    with track_stage_latency("transform"):
        accumulator = await client.stream(original_url, directive)

    metadata = {
        "stage": "transform",
        "events": accumulator.events,
        "malformed_events": accumulator.malformed,
        "duration_ms": _elapsed_ms(start_time)
    }
    logger.info("transform_completed", **metadata)
    return accumulator.text, metadata


# =============================================================================
# Stage 2: Result Link Extraction
# =============================================================================

def extract_stage(text: str) -> str:
    set_stage("extract")
    url = extract_result_url(text)
    if url is None:
        logger.warning("result_url_missing", chars=len(text))
        raise NoResultUrlError()
    return url


# =============================================================================
# Stage 3: Result Download
# =============================================================================

async def download_stage(
    http_client: httpx.AsyncClient,
    url: str,
    timeout: float
) -> Tuple[bytes, str]:
    """Fetch the transformed asset. Returns (bytes, content type)."""
    set_stage("download")
    start_time = utc_now()

    with track_stage_latency("download"):
        try:
            response = await http_client.get(url, timeout=timeout, follow_redirects=True)
        except httpx.HTTPError as e:
            raise DownloadFailedError(f"Result download failed: {type(e).__name__}")

    if not response.is_success:
        raise DownloadFailedError(
            f"Result download returned HTTP {response.status_code}",
            http_status=response.status_code
        )
    if not response.content:
        raise DownloadFailedError("Result download returned an empty body", http_status=response.status_code)

    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
    if not content_type.startswith("image/"):
        content_type = DEFAULT_RESULT_CONTENT_TYPE

    logger.info(
        "download_completed",
        size_bytes=len(response.content),
        content_type=content_type,
        duration_ms=_elapsed_ms(start_time)
    )
    return response.content, content_type


# =============================================================================
# Stage 4: Store Processed Asset
# =============================================================================

async def store_stage(
    storage: IStorage,
    subject: str,
    data: bytes,
    content_type: str
) -> str:
    """Write the processed asset under a fresh key and return the key."""
    set_stage("store")
    key = make_asset_key(subject, content_type, folder=PROCESSED_FOLDER)

    with track_stage_latency("store"):
        await storage.put(data, key, content_type)

    logger.info("processed_asset_stored", key=key, size_bytes=len(data))
    return key
