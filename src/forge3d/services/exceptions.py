"""Service error hierarchy for generation, storage and credit operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (validation, content, provider rejection)
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Missing required input
    """

    pass


# Request-level errors
class ValidationError(PermanentError):
    """Required input missing or malformed (e.g. no front photo)."""

    pass


class InsufficientCreditsError(PermanentError):
    """Credit reservation rejected because the balance would go negative."""

    def __init__(self, user_id: str):
        super().__init__(f"Insufficient credits for user {user_id}")
        self.user_id = user_id


class RecordNotFoundError(PermanentError):
    """Generation request does not exist or is not owned by the caller."""

    pass


# Provider errors
class TransientProviderError(TransientError):
    """Provider call failed for a transient reason (network blip, rate limit)."""

    pass


class PermanentProviderError(PermanentError):
    """Provider rejected the request (auth, validation).

    Attributes:
        detail: Human-readable reason reported by the provider, if any
    """

    def __init__(self, message: str, detail: str | None = None):
        super().__init__(message)
        self.detail = detail


# Processing errors
class ContentError(PermanentError):
    """Image content cannot be processed (e.g. background removal found no subject)."""

    pass


# Storage errors
class StorageError(ServiceError):
    """Object store or database unavailable.

    Retried on read paths; aborts the transition on write paths.
    """

    pass
