"""
errors.py

Exception hierarchy shared by the sync, query and restriction layers.
"""


class StashAPIError(Exception):
    """Base exception for remote catalog API errors."""
    pass


class StashAuthError(StashAPIError):
    """Raised when the remote API rejects the configured API key."""
    pass


class StashNetworkError(StashAPIError):
    """Raised when network or connection to the remote API fails."""
    pass


class StashUnavailableError(StashAPIError):
    """Raised when the remote API is offline, overloaded or rate limiting."""
    pass


class QueryValidationError(ValueError):
    """Raised for malformed filters, unknown modifiers, unknown sort keys or bad paging."""

    def __init__(self, message: str, field: str = None):
        super().__init__(message)
        self.field = field


class ExclusionLimitError(QueryValidationError):
    """Raised when an ad-hoc exclusion list exceeds the inline NOT IN capacity."""
    pass


class RestrictionError(ValueError):
    """Raised for restriction rules naming an unknown entity type or mode."""
    pass


class SyncLockBusy(Exception):
    """Raised when the type-scoped sync lock cannot be acquired."""
    pass


class SyncCancelled(Exception):
    """Raised at a phase boundary when the running sync has been superseded."""
    pass


class RecomputeLockBusy(Exception):
    """Raised when another process holds a user's exclusion recompute lock past the wait limit."""
    pass
