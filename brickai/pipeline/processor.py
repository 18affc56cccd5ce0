"""
Image Processing Pipeline

Drives one image row through

    UPLOADED -> PROCESSING -> COMPLETED | FAILED

PROCESSING is persisted before the external call. Everything after it runs
under a wall-clock bound, and a single outer guard turns any failure into a
FAILED row with a short reason. Nothing is retried.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx

from brickai.core.config import Settings
from brickai.core.exceptions import PipelineFailure, RecordStateError
from brickai.core.logging import LogContext, get_logger, set_stage
from brickai.core.metrics import record_pipeline_finished, record_pipeline_started
from brickai.core.storage import IStorage
from brickai.modules.imagery.models import ImageStatus
from brickai.modules.imagery.repository import ImageRepository
from brickai.pipeline.client import TransformationClient
from brickai.pipeline.stages import download_stage, extract_stage, store_stage, transform_stage

logger = get_logger(__name__)

TIMEOUT_REASON = "Processing timed out"
CANCELLED_REASON = "Processing cancelled"
MAX_REASON_LENGTH = 500


@dataclass
class PipelineOutcome:
    image_id: int
    status: ImageStatus
    processed_key: Optional[str] = None
    error: Optional[str] = None


class ImagePipeline:

    def __init__(
        self,
        settings: Settings,
        images: ImageRepository,
        storage: IStorage,
        transform_client: TransformationClient,
        http_client: httpx.AsyncClient
    ):
        self.settings = settings
        self.images = images
        self.storage = storage
        self.transform_client = transform_client
        self._http = http_client

    def ensure_configured(self):
        """Raise ConfigurationError before any asset is stored, not mid-run."""
        self.settings.require("TRANSFORM_API_KEY")
        self.storage.ensure_configured()

    async def run(self, image_id: int, subject: str, original_url: str) -> PipelineOutcome:
        """
        Process one freshly ingested image to a terminal state.

        Never raises for processing failures; the outcome is persisted on the
        row and returned. A cancelled run is recorded as FAILED and the
        cancellation propagates.
        """
        directive = self.settings.TRANSFORM_DIRECTIVE

        with LogContext(image_id=str(image_id)):
            try:
                started = await self.images.transition(
                    image_id,
                    ImageStatus.UPLOADED,
                    ImageStatus.PROCESSING,
                    prompt=directive
                )
            except Exception as e:
                reason = self._reason_for(e)
                logger.error("pipeline_start_failed", error=reason)
                await self._persist_failure(image_id, reason)
                return PipelineOutcome(image_id, ImageStatus.FAILED, error=reason)

            if not started:
                logger.warning("pipeline_precondition_failed", expected=ImageStatus.UPLOADED.value)
                record = await self.images.get(image_id)
                status = ImageStatus(record.status) if record else ImageStatus.FAILED
                return PipelineOutcome(image_id, status, error="Record was not in UPLOADED")

            record_pipeline_started()
            logger.info("pipeline_started")

            try:
                processed_key = await asyncio.wait_for(
                    self._process(image_id, subject, original_url, directive),
                    timeout=self.settings.PIPELINE_TIMEOUT_SECONDS
                )
            except asyncio.CancelledError:
                logger.warning("pipeline_cancelled")
                set_stage(None)
                try:
                    await asyncio.shield(self._persist_failure(image_id, CANCELLED_REASON))
                finally:
                    record_pipeline_finished(ImageStatus.FAILED.value)
                raise
            except asyncio.TimeoutError:
                reason = TIMEOUT_REASON
            except Exception as e:
                reason = self._reason_for(e)
            else:
                set_stage(None)
                record_pipeline_finished(ImageStatus.COMPLETED.value)
                logger.info("pipeline_completed", processed_key=processed_key)
                return PipelineOutcome(image_id, ImageStatus.COMPLETED, processed_key=processed_key)

            logger.error("pipeline_stage_failed", reason=reason)
            set_stage(None)
            await self._persist_failure(image_id, reason)
            record_pipeline_finished(ImageStatus.FAILED.value)
            return PipelineOutcome(image_id, ImageStatus.FAILED, error=reason)

    async def _process(self, image_id: int, subject: str, original_url: str, directive: str) -> str:
        text, _ = await transform_stage(self.transform_client, original_url, directive)
        result_url = extract_stage(text)
        data, content_type = await download_stage(
            self._http,
            result_url,
            timeout=self.settings.DOWNLOAD_TIMEOUT_SECONDS
        )
        processed_key = await store_stage(self.storage, subject, data, content_type)

        set_stage("finalize")
        completed = await self.images.transition(
            image_id,
            ImageStatus.PROCESSING,
            ImageStatus.COMPLETED,
            processed_s3_key=processed_key
        )
        if not completed:
            raise RecordStateError("Record left PROCESSING before it could be completed")
        return processed_key

    async def _persist_failure(self, image_id: int, reason: str):
        try:
            applied = await self.images.mark_failed(image_id, reason)
        except Exception as e:
            # Row may stay in PROCESSING until an operator sweep picks it up
            logger.critical("pipeline_failure_not_persisted", reason=reason, error=str(e))
            return

        if not applied:
            logger.warning("pipeline_failure_not_applied", reason=reason)

    @staticmethod
    def _reason_for(exc: Exception) -> str:
        if isinstance(exc, PipelineFailure):
            reason = exc.message
        else:
            reason = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
        return reason[:MAX_REASON_LENGTH]
