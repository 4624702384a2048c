"""Error taxonomy shared by the review, retention and audit modules.

Modules raise these; the API layer maps each class to an HTTP status in
``intelreview.main``. No error here is retried automatically.
"""
from __future__ import annotations


class IntelReviewError(Exception):
    status_code = 500
    label = "Internal error"


class ValidationError(IntelReviewError):
    """Bad input or an illegal transition attempted by a non-privileged caller."""
    status_code = 422
    label = "Validation error"


class AuthorizationError(IntelReviewError):
    """Actor lacks the role or ownership required for the action."""
    status_code = 403
    label = "Forbidden"


class NotFoundError(IntelReviewError):
    status_code = 404
    label = "Not found"


class ConflictError(IntelReviewError):
    """Lost a race on a concurrent transition; caller must re-read and decide again."""
    status_code = 409
    label = "Conflict"


class PersistenceError(IntelReviewError):
    """Store unavailable or a write (including the audit write) failed."""
    status_code = 503
    label = "Persistence error"
