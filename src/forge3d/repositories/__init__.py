"""Repository layer for forge3d.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from forge3d.repositories.credit_account import CreditAccountRepository
from forge3d.repositories.generation_request import GenerationRequestRepository

__all__ = [
    "CreditAccountRepository",
    "GenerationRequestRepository",
]
