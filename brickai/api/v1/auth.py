"""
Auth Endpoints

POST /auth/exchange - Authorization code -> session token (first login)
POST /auth/refresh  - Expired session token -> fresh session token
"""

from fastapi import APIRouter, Depends

from brickai.api.dependencies import get_auth_service, get_bearer_token
from brickai.engines.auth.schemas import (
    AuthExchangeRequestDTO,
    AuthExchangeResponseDTO,
    AuthRefreshResponseDTO,
)
from brickai.engines.auth.services import AuthService

router = APIRouter()


@router.post("/exchange", response_model=AuthExchangeResponseDTO, response_model_exclude_none=True)
async def exchange_code(
    request: AuthExchangeRequestDTO,
    auth_service: AuthService = Depends(get_auth_service)
):
    """
    Exchange a Sign in with Apple authorization code for a session token.

    Codes are single use: replaying one fails with 401 and changes nothing.
    """
    return await auth_service.exchange(request.authorization_code)


@router.post("/refresh", response_model=AuthRefreshResponseDTO)
async def refresh_session(
    token: str = Depends(get_bearer_token),
    auth_service: AuthService = Depends(get_auth_service)
):
    """
    Re-issue a session token from an expired (but authentic) one.

    Returns 401 Unauthorized when the stored Apple refresh token is gone or
    revoked, and 502 when Apple cannot be reached.
    """
    return await auth_service.refresh(token)
