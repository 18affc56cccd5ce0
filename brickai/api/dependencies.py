"""
FastAPI Dependencies

Provides dependency injection for:
- The service container built in the application lifespan
- Bearer token extraction and session verification
"""

from typing import Optional

from fastapi import Depends, Header, Request

from brickai.core.container import ServiceContainer
from brickai.core.exceptions import InvalidTokenError
from brickai.engines.auth.services import AuthService
from brickai.modules.imagery.service import ImageService


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_auth_service(container: ServiceContainer = Depends(get_container)) -> AuthService:
    return container.auth_service


def get_image_service(container: ServiceContainer = Depends(get_container)) -> ImageService:
    return container.image_service


def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    """Token from ``Authorization: Bearer <token>``."""
    if not authorization:
        raise InvalidTokenError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("Authorization header must be a Bearer token")
    return token.strip()


def get_current_subject(
    token: str = Depends(get_bearer_token),
    container: ServiceContainer = Depends(get_container)
) -> str:
    """Subject of a valid, unexpired session token."""
    return container.session_tokens.verify(token, allow_expired=False)
