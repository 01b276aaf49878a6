"""Maps collaboration errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.services.collaboration.errors import (
    CollaborationError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    UnknownError,
)

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    ForbiddenError: status.HTTP_403_FORBIDDEN,
    ExpiredError: status.HTTP_410_GONE,
    InvalidTransitionError: status.HTTP_400_BAD_REQUEST,
    UnknownError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(exc: CollaborationError) -> int:
    for error_type, code in STATUS_BY_ERROR.items():
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def init_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CollaborationError)
    async def collaboration_error_handler(request: Request, exc: CollaborationError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=code, content={"detail": exc.message, "code": exc.code})
