"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Webhook signature validation
- Caller identity
- Access to services built in the application lifespan
"""

from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from forge3d.core.config import Settings
from forge3d.services.orchestrator import GenerationOrchestrator
from forge3d.services.reconciler import JobReconciler
from forge3d.services.webhook_signature import validate_webhook_signature
from forge3d.uow import UnitOfWorkFactory

logger = structlog.get_logger()


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


async def validate_replicate_signature(
    request: Request,
    x_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate Replicate webhook signature before processing request.

    Reads the raw request body and checks the HMAC-SHA256 hex digest from the
    X-Signature header. Fails with 401 before any processing happens.

    Args:
        request: FastAPI Request object (contains raw body)
        x_signature: Signature from X-Signature header
        settings: Application settings (injected via dependency)

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 500 if no webhook secret is configured,
            401 if the signature is missing or invalid
    """
    if not settings.replicate_webhook_secret:
        logger.error("webhook.secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="REPLICATE_WEBHOOK_SECRET not configured",
        )

    if not x_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Signature header"
        )

    # Exact bytes received; parsing first would change what was signed
    raw_body = await request.body()

    if not validate_webhook_signature(raw_body, x_signature, settings.replicate_webhook_secret):
        logger.warning("webhook.invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature"
        )

    return raw_body


def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> str:
    """Caller identity, as asserted by the upstream identity provider.

    Raises:
        HTTPException: 401 if the X-User-Id header is missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    return x_user_id.strip()


def get_uow_factory(request: Request) -> UnitOfWorkFactory:
    """Get UnitOfWork factory from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(uow_factory=Depends(get_uow_factory)):
        ...     async with await uow_factory() as uow:
        ...         await uow.credits.get_by_user(user_id)
    """
    return request.app.state.uow_factory


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Get the GenerationOrchestrator built in the application lifespan."""
    return request.app.state.orchestrator


def get_reconciler(request: Request) -> JobReconciler:
    """Get the JobReconciler built in the application lifespan."""
    return request.app.state.reconciler
