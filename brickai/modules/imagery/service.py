"""
Image Ingestion and Listing

``ingest`` stores the original, creates the row and runs the pipeline to a
terminal state before returning. The upload succeeds whichever terminal
state the pipeline reaches; failures are read back through ``list_images``.
"""

from typing import Optional

from brickai.core.clock import as_utc
from brickai.core.config import Settings
from brickai.core.exceptions import (
    InsufficientCreditsError,
    NotFoundError,
    UploadRejectedError,
)
from brickai.core.logging import get_logger
from brickai.core.storage import IStorage, make_asset_key
from brickai.modules.imagery.models import ImageRecord
from brickai.modules.imagery.repository import ImageRepository
from brickai.modules.imagery.schemas import (
    ImageListResponseDTO,
    ImageSummaryDTO,
    IngestResponseDTO,
)
from brickai.modules.users.repository import UserRepository
from brickai.pipeline.processor import ImagePipeline

logger = get_logger(__name__)


def normalize_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


class ImageService:

    def __init__(
        self,
        settings: Settings,
        images: ImageRepository,
        users: UserRepository,
        storage: IStorage,
        pipeline: ImagePipeline
    ):
        self.settings = settings
        self.images = images
        self.users = users
        self.storage = storage
        self.pipeline = pipeline

    async def ingest(self, subject: str, content_type: Optional[str], body: bytes) -> IngestResponseDTO:
        mime = normalize_content_type(content_type)
        if not mime.startswith("image/"):
            raise UploadRejectedError(
                "Content-Type must be an image type",
                details={"content_type": mime or None}
            )
        if not body:
            raise UploadRejectedError("Request body is empty")
        if len(body) > self.settings.MAX_IMAGE_SIZE_BYTES:
            raise UploadRejectedError(
                f"Image exceeds the {self.settings.MAX_IMAGE_SIZE_BYTES} byte limit",
                details={"size_bytes": len(body)}
            )

        self.pipeline.ensure_configured()

        cost = self.settings.INGEST_CREDIT_COST
        if cost > 0:
            user = await self.users.get_by_subject(subject)
            if user is None:
                raise NotFoundError("User not found")
            if user.usage_credits < cost:
                raise InsufficientCreditsError(
                    "Not enough credits",
                    details={"credits": user.usage_credits, "required": cost}
                )

        key = make_asset_key(subject, mime)
        await self.storage.put(body, key, mime)
        original_url = self.storage.public_url(key)

        record = await self.images.create(subject, key)
        if cost > 0:
            await self.users.modify_credits(subject, -cost)

        logger.info("image_ingested", image_id=record.id, size_bytes=len(body), content_type=mime)

        outcome = await self.pipeline.run(record.id, subject, original_url)
        logger.info("image_ingest_finished", image_id=record.id, status=outcome.status.value)

        return IngestResponseDTO(
            message="Image uploaded successfully",
            url=original_url,
            image_id=record.id
        )

    async def list_images(self, subject: str) -> ImageListResponseDTO:
        user = await self.users.get_by_subject(subject)
        if user is None:
            raise NotFoundError("User not found")

        records = await self.images.list_for_subject(subject)
        return ImageListResponseDTO(
            images=[self._summarize(record) for record in records],
            credits=user.usage_credits
        )

    def _summarize(self, record: ImageRecord) -> ImageSummaryDTO:
        return ImageSummaryDTO(
            id=record.id,
            status=record.status,
            prompt=record.prompt,
            created_at=as_utc(record.created_at).isoformat(),
            original_image_url=self.storage.public_url(record.original_s3_key),
            processed_image_url=(
                self.storage.public_url(record.processed_s3_key)
                if record.processed_s3_key else None
            ),
            error_message=record.error_message
        )
