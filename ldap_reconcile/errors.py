"""
Error kinds raised by the reconciliation engine.

Every error carries the identifier of the entity being processed when it
was raised, so that callers can report which department or user failed.
"""

from typing import Optional


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""

    def __init__(self, message: str, entity_id: Optional[str] = None):
        self.entity_id = entity_id
        if entity_id:
            message = f"[{entity_id}] {message}"
        super().__init__(message)


class ValidationError(ReconcileError):
    """Raised when a source payload is missing required fields."""
    pass


class RemoteFetchError(ReconcileError):
    """Raised when an HR/IM platform API call fails."""
    pass


class DirectoryError(ReconcileError):
    """Raised when an LDAP operation fails."""
    pass


class PersistenceError(ReconcileError):
    """Raised when the relational store fails."""
    pass


class NotFoundError(PersistenceError):
    """Raised when a required store row does not exist."""
    pass


class InvariantError(ReconcileError):
    """Raised when an internal invariant is violated (e.g. parent missing mid-walk)."""
    pass
