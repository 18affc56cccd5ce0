"""
Image Repository

Async data access over the images table. Status writes are conditional
updates (``WHERE status = :expected``) so a row only ever moves along the
state machine from the state the caller believes it is in.
"""

from typing import Optional, List, Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from brickai.core.clock import utc_now
from brickai.core.logging import get_logger
from brickai.modules.imagery.models import (
    ImageRecord,
    ImageStatus,
    TERMINAL_STATUSES,
    ensure_transition,
)

logger = get_logger(__name__)

_MUTABLE_FIELDS = {"processed_s3_key", "prompt", "error_message"}


class ImageRepository:
    """Repository for image rows."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def create(self, subject: str, original_key: str, prompt: Optional[str] = None) -> ImageRecord:
        """Insert a row in UPLOADED for a freshly stored original asset."""
        record = ImageRecord(
            apple_user_id=subject,
            original_s3_key=original_key,
            status=ImageStatus.UPLOADED.value,
            prompt=prompt
        )
        async with self._session_maker() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)

        logger.info("image_record_created", image_id=record.id, status=record.status)
        return record

    async def get(self, image_id: int) -> Optional[ImageRecord]:
        async with self._session_maker() as session:
            result = await session.execute(select(ImageRecord).where(ImageRecord.id == image_id))
            return result.scalar_one_or_none()

    async def transition(
        self,
        image_id: int,
        from_status: ImageStatus,
        to_status: ImageStatus,
        **fields: Any
    ) -> bool:
        """Move a row from ``from_status`` to ``to_status``.

        Returns False when the row is missing or no longer in ``from_status``.
        Raises InvalidTransitionError for a move the state machine forbids.
        """
        ensure_transition(from_status, to_status)
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update image fields: {sorted(unknown)}")

        async with self._session_maker() as session:
            result = await session.execute(
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .where(ImageRecord.status == from_status.value)
                .values(status=to_status.value, updated_at=utc_now(), **fields)
            )
            await session.commit()
            moved = result.rowcount > 0

        logger.info(
            "image_status_transition",
            image_id=image_id,
            from_status=from_status.value,
            to_status=to_status.value,
            applied=moved
        )
        return moved

    async def mark_failed(self, image_id: int, reason: str) -> bool:
        """Force FAILED unless the row already reached a terminal state."""
        terminal = [status.value for status in TERMINAL_STATUSES]
        async with self._session_maker() as session:
            result = await session.execute(
                update(ImageRecord)
                .where(ImageRecord.id == image_id)
                .where(ImageRecord.status.not_in(terminal))
                .values(
                    status=ImageStatus.FAILED.value,
                    error_message=reason,
                    updated_at=utc_now()
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def list_for_subject(self, subject: str) -> List[ImageRecord]:
        """All rows of a subject, newest first."""
        async with self._session_maker() as session:
            result = await session.execute(
                select(ImageRecord)
                .where(ImageRecord.apple_user_id == subject)
                .order_by(ImageRecord.created_at.desc(), ImageRecord.id.desc())
            )
            return list(result.scalars().all())
