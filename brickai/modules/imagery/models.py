"""
ImageRecord Model with Processing Status Tracking

One row per ingested upload. Status moves along

    UPLOADED -> PROCESSING -> COMPLETED | FAILED

COMPLETED and FAILED are terminal. UPLOADED -> FAILED is only taken when
the pipeline cannot even start.
"""

from enum import Enum
from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Set
from datetime import datetime

from sqlalchemy import DateTime

from brickai.core.clock import utc_now
from brickai.core.exceptions import InvalidTransitionError


class ImageStatus(str, Enum):
    """Processing status states."""
    UPLOADED = "UPLOADED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES: Set[ImageStatus] = {ImageStatus.COMPLETED, ImageStatus.FAILED}

ALLOWED_TRANSITIONS: Dict[ImageStatus, Set[ImageStatus]] = {
    ImageStatus.UPLOADED: {ImageStatus.PROCESSING, ImageStatus.FAILED},
    ImageStatus.PROCESSING: {ImageStatus.COMPLETED, ImageStatus.FAILED},
    ImageStatus.COMPLETED: set(),
    ImageStatus.FAILED: set(),
}


def ensure_transition(current: ImageStatus, new: ImageStatus):
    """Validate a status change against the state machine."""
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(current.value, new.value)


class ImageRecord(SQLModel, table=True):
    """
    Tracks one uploaded image through processing.

    Stores:
    - Owner subject id
    - Original and processed asset keys
    - Status, directive used and failure reason
    """
    __tablename__ = "images"

    id: Optional[int] = Field(default=None, primary_key=True)

    apple_user_id: str = Field(index=True, nullable=False)

    # Storage Keys (object keys in the asset store)
    original_s3_key: str = Field(nullable=False)
    processed_s3_key: Optional[str] = None

    status: str = Field(default=ImageStatus.UPLOADED.value, index=True)
    prompt: Optional[str] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
