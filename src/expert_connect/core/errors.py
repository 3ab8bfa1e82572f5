"""Error taxonomy shared by every component.

Expiry on accept and "no expert available" on dispatch are normal outcomes,
reported through result models rather than raised.
"""

from __future__ import annotations


class ExpertConnectError(Exception):
    """Base class for all domain errors."""


class InvalidInput(ExpertConnectError):
    """Raised for malformed ids, bad roles or out-of-range values."""


class NotAnExpert(InvalidInput):
    """Raised when an expert-only operation targets a non-expert user."""


class AccessDenied(ExpertConnectError):
    """Raised when the actor is neither a party to the request nor an admin."""


class NotFound(ExpertConnectError):
    """Raised when a request, user or availability row does not exist."""


class Conflict(ExpertConnectError):
    """Raised when the row's current state no longer allows the operation."""


class StoreError(ExpertConnectError):
    """Unexpected store failure. The transaction was rolled back; safe to retry."""


class UniqueViolation(StoreError):
    """A uniqueness constraint rejected the write."""
