"""
Imagery Module

Image rows and their processing state machine, ingestion and listing.
"""

from brickai.modules.imagery.models import ImageRecord, ImageStatus

__all__ = ["ImageRecord", "ImageStatus"]
