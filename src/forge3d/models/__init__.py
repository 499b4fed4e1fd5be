"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from forge3d.models.credit_account import CreditAccount
from forge3d.models.credit_transaction import CreditTransaction, CreditTransactionType
from forge3d.models.generation_request import (
    IN_FLIGHT_STATUSES,
    LEGACY_STATUS_MAP,
    PHOTO_VIEWS,
    TERMINAL_STATUSES,
    GenerationRequest,
    GenerationStatus,
    InvalidStateTransition,
    coerce_status,
)

__all__ = [
    "CreditAccount",
    "CreditTransaction",
    "CreditTransactionType",
    "GenerationRequest",
    "GenerationStatus",
    "InvalidStateTransition",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "LEGACY_STATUS_MAP",
    "PHOTO_VIEWS",
    "coerce_status",
]
