from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class IngestResponseDTO(BaseModel):
    """Upload accepted; the processing outcome is observed via the listing."""
    model_config = ConfigDict(populate_by_name=True)

    message: str
    url: str = Field(..., description="Public URL of the stored original")
    image_id: int = Field(..., alias="imageId")


class ImageSummaryDTO(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    status: str = Field(..., description="UPLOADED, PROCESSING, COMPLETED, or FAILED")
    prompt: Optional[str] = None
    created_at: str = Field(..., alias="createdAt")
    original_image_url: str = Field(..., alias="originalImageUrl")
    processed_image_url: Optional[str] = Field(None, alias="processedImageUrl")
    error_message: Optional[str] = Field(None, alias="errorMessage")


class ImageListResponseDTO(BaseModel):
    images: List[ImageSummaryDTO]
    credits: int
