"""
Server-side draft persistence for the Hativon newsletter.

Design intent:
- One authoritative mutation point for drafts, guarded by a version check.
- Identity and ownership come from outside as a caller plus a predicate.
"""

from .authorization import Caller, OwnershipPolicy, author_owns_draft
from .errors import (
    AuthorizationError,
    AutosaveError,
    DraftConflictError,
    DraftNotFoundError,
    PayloadValidationError,
    SaveAbortedError,
    TransientSaveError,
)
from .gateway import FieldLimits, PersistenceGateway, SaveSuccess

__all__ = [
    "AuthorizationError",
    "AutosaveError",
    "Caller",
    "DraftConflictError",
    "DraftNotFoundError",
    "FieldLimits",
    "OwnershipPolicy",
    "PayloadValidationError",
    "PersistenceGateway",
    "SaveAbortedError",
    "SaveSuccess",
    "TransientSaveError",
    "author_owns_draft",
]
