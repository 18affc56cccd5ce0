"""
Global Exception Handling

Provides the error taxonomy shared by the auth flows, the ingestion
handlers and the processing pipeline, plus the FastAPI handlers that turn
those errors into structured JSON responses.
"""

import traceback
from typing import Optional, Dict, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from brickai.core.clock import utc_isoformat
from brickai.core.logging import get_logger, image_id_var, request_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class BrickAIError(Exception):
    """Base exception for the BrickAI backend."""

    error: str = "InternalError"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ConfigurationError(BrickAIError):
    """Raised when a required setting is absent or malformed."""

    error = "ConfigurationError"
    status_code = 500

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        if setting:
            self.details["setting"] = setting


# -----------------------------------------------------------------------------
# Session credential errors
# -----------------------------------------------------------------------------

class InvalidTokenError(BrickAIError):
    """Session token is malformed, badly signed, or carries the wrong issuer."""

    error = "InvalidToken"
    status_code = 401


class SessionExpiredError(BrickAIError):
    """Session token is structurally valid but past its expiry."""

    error = "SessionExpired"
    status_code = 401


class UnauthorizedError(BrickAIError):
    """Subject is unknown or its stored refresh token is no longer usable."""

    error = "Unauthorized"
    status_code = 401


# -----------------------------------------------------------------------------
# Identity provider errors
# -----------------------------------------------------------------------------

class ProviderUnreachableError(BrickAIError):
    """Transport failure (or provider outage) talking to the identity provider."""

    error = "ProviderUnreachable"
    status_code = 502


class ProviderRejectedError(BrickAIError):
    """The identity provider answered with an error code."""

    error = "ProviderRejected"
    status_code = 401

    def __init__(self, message: str, provider_error: Optional[str] = None,
                 http_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.provider_error = provider_error
        self.details["provider_error"] = provider_error
        self.details["http_status"] = http_status


class InvalidGrantError(ProviderRejectedError):
    """The code or refresh token is dead (used, revoked or expired)."""

    error = "InvalidGrant"


class IdentityAssertionInvalidError(BrickAIError):
    """The provider's identity token failed signature, issuer, audience or subject checks."""

    error = "IdentityAssertionInvalid"
    status_code = 401


# -----------------------------------------------------------------------------
# Ingestion / listing errors
# -----------------------------------------------------------------------------

class UploadRejectedError(BrickAIError):
    """Raised when an upload has a non-image content type or no body."""

    error = "UploadRejected"
    status_code = 400


class InsufficientCreditsError(BrickAIError):
    """Raised when the ingestion credit gate does not pass."""

    error = "InsufficientCredits"
    status_code = 402


class NotFoundError(BrickAIError):
    error = "NotFound"
    status_code = 404


class InvalidTransitionError(BrickAIError):
    """Raised when a record status change is not allowed by the state machine."""

    error = "InvalidTransition"
    status_code = 409

    def __init__(self, current_status: str, attempted_status: str, **kwargs):
        super().__init__(
            f"Invalid status transition {current_status} -> {attempted_status}",
            **kwargs
        )
        self.details["current_status"] = current_status
        self.details["attempted_status"] = attempted_status


# -----------------------------------------------------------------------------
# Pipeline errors (recorded on the image row, never returned to the uploader)
# -----------------------------------------------------------------------------

class PipelineFailure(BrickAIError):
    """Raised when a pipeline stage fails."""

    error = "PipelineFailure"
    status_code = 500

    def __init__(self, message: str, stage: str, **kwargs):
        super().__init__(message, **kwargs)
        self.stage = stage
        self.details["stage"] = stage


class TransformStreamError(PipelineFailure):
    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, stage="transform", **kwargs)
        self.details["http_status"] = http_status


class NoResultUrlError(PipelineFailure):
    def __init__(self, message: str = "Transformation output contained no image link", **kwargs):
        super().__init__(message, stage="extract", **kwargs)


class DownloadFailedError(PipelineFailure):
    def __init__(self, message: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, stage="download", **kwargs)
        self.details["http_status"] = http_status


class RecordStateError(PipelineFailure):
    """The image row was not in the state a pipeline step expected."""

    def __init__(self, message: str, stage: str = "finalize", **kwargs):
        super().__init__(message, stage=stage, **kwargs)


# =============================================================================
# Exception Handlers
# =============================================================================

def _request_id(request: Request) -> Optional[str]:
    # The catch-all handler runs after the request middleware has unbound the
    # context variable; the id is also kept on the request state.
    return request_id_var.get() or getattr(request.state, "request_id", None)


def _error_body(request: Request, error: str, message: str, status_code: int,
                details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "error": error,
        "message": message,
        "code": status_code,
        "details": details or {},
        "request_id": _request_id(request),
        "timestamp": utc_isoformat()
    }


def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(BrickAIError)
    async def brickai_exception_handler(request: Request, exc: BrickAIError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request_failed",
            error=exc.error,
            message=exc.message,
            code=exc.status_code,
            path=str(request.url.path),
            image_id=image_id_var.get()
        )

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.error, exc.message, exc.status_code, exc.details)
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning("request_invalid", path=str(request.url.path))
        return JSONResponse(
            status_code=400,
            content=_error_body(
                request,
                "BadRequest",
                "Invalid request payload",
                400,
                {"errors": [err.get("msg") for err in exc.errors()]}
            )
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            request_id=_request_id(request),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content=_error_body(request, "InternalError", "Internal server error", 500)
        )


__all__ = [
    "BrickAIError",
    "ConfigurationError",
    "InvalidTokenError",
    "SessionExpiredError",
    "UnauthorizedError",
    "ProviderUnreachableError",
    "ProviderRejectedError",
    "InvalidGrantError",
    "IdentityAssertionInvalidError",
    "UploadRejectedError",
    "InsufficientCreditsError",
    "NotFoundError",
    "InvalidTransitionError",
    "PipelineFailure",
    "TransformStreamError",
    "NoResultUrlError",
    "DownloadFailedError",
    "RecordStateError",
    "register_exception_handlers",
]
