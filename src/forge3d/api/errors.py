"""Translation of service errors into HTTP responses."""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from forge3d.models.generation_request import InvalidStateTransition
from forge3d.services.exceptions import (
    InsufficientCreditsError,
    PermanentProviderError,
    RecordNotFoundError,
    StorageError,
    TransientError,
    ValidationError,
)

logger = structlog.get_logger()

# Most specific class wins: Starlette resolves handlers along the exception's MRO
STATUS_BY_ERROR: dict[type[Exception], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    InsufficientCreditsError: status.HTTP_402_PAYMENT_REQUIRED,
    RecordNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateTransition: status.HTTP_409_CONFLICT,
    StorageError: status.HTTP_502_BAD_GATEWAY,
    PermanentProviderError: status.HTTP_502_BAD_GATEWAY,
    TransientError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def service_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a service error as {"detail": message} with its mapped status."""
    status_code = next(
        (code for cls in type(exc).__mro__ if (code := STATUS_BY_ERROR.get(cls)) is not None),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    log = logger.warning if status_code < 500 else logger.error
    log(
        "api.request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def register_exception_handlers(app: FastAPI) -> None:
    """Register service error handlers on the application."""
    for error_class in STATUS_BY_ERROR:
        app.add_exception_handler(error_class, service_error_handler)
