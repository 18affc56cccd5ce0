"""
Image Endpoints

POST /images - Raw image upload, processed before the response returns
GET  /images - The caller's images (newest first) and credit balance
"""

from fastapi import APIRouter, Depends, Request

from brickai.api.dependencies import get_current_subject, get_image_service
from brickai.modules.imagery.schemas import ImageListResponseDTO, IngestResponseDTO
from brickai.modules.imagery.service import ImageService

router = APIRouter()


@router.post("", response_model=IngestResponseDTO)
async def upload_image(
    request: Request,
    subject: str = Depends(get_current_subject),
    image_service: ImageService = Depends(get_image_service)
):
    """
    Upload an image as the raw request body with an ``image/*`` Content-Type.

    The response is sent once processing reached a terminal state; a failed
    transformation still returns 200 and shows up as FAILED in the listing.
    """
    body = await request.body()
    return await image_service.ingest(subject, request.headers.get("content-type"), body)


@router.get("", response_model=ImageListResponseDTO)
async def list_images(
    subject: str = Depends(get_current_subject),
    image_service: ImageService = Depends(get_image_service)
):
    return await image_service.list_images(subject)
