"""
Sync Error Taxonomy
Domain exceptions raised by the provider client, store and orchestrator

Run-level errors (not found, already in progress, persistence, anything
raised while syncing members/containers) propagate out of run_sync.
Container-level errors (permission, transport, generic API) are caught
inside the content loop and only skip that container.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for all sync engine errors."""


# ============================================================================
# REQUEST-LEVEL ERRORS (no SyncRun is created)
# ============================================================================

class ConnectionNotFoundError(SyncError):
    """Connection missing, or it belongs to a different tenant."""

    def __init__(self, connection_id: str, tenant_id: str):
        self.connection_id = connection_id
        self.tenant_id = tenant_id
        super().__init__(f"Connection {connection_id} not found for tenant {tenant_id}")


class ConnectionInactiveError(SyncError):
    """Connection was soft-deactivated and cannot be synced."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Cannot sync inactive connection {connection_id}")


class SyncAlreadyInProgressError(SyncError):
    """A sync for the same connection is already running in this process."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Sync already in progress for connection {connection_id}")


# ============================================================================
# PROVIDER ERRORS
# ============================================================================

class ProviderError(SyncError):
    """Any failure reported by, or while talking to, the upstream provider."""

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class ProviderPermissionError(ProviderError):
    """Credential is not allowed to read a specific resource (e.g. not_in_channel)."""


class ProviderTransportError(ProviderError):
    """Network failure, 5xx or other transient upstream failure."""


class ProviderRateLimitError(ProviderTransportError):
    """Upstream throttled the request (HTTP 429 / ratelimited)."""

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        self.retry_after = retry_after
        super().__init__(message, **kwargs)


class ProviderApiError(ProviderError):
    """Upstream rejected the call for a non-permission, non-transient reason."""


# ============================================================================
# DATA ERRORS
# ============================================================================

class RecordValidationError(SyncError):
    """Provider payload is missing a mandatory field for its record kind."""

    def __init__(self, kind: str, reason: str, raw_id: Optional[str] = None):
        self.kind = kind
        self.reason = reason
        self.raw_id = raw_id
        super().__init__(f"Rejected {kind} record {raw_id or '<no id>'}: {reason}")


class PersistenceError(SyncError):
    """Storage read or write failed. Always fatal to the run."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {cause}")
