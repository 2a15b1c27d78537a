"""
Sync Error Taxonomy
Typed exceptions so the orchestrator can tell tenant-level failures
(fed to the circuit breaker) from entity-level and per-item failures.
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""

    code = "SYNC_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


# ============================================================================
# CONNECTIVITY (tenant level - recorded by the circuit breaker)
# ============================================================================

class ConnectivityError(SyncError):
    code = "CONNECTIVITY_ERROR"


class DnsResolutionError(ConnectivityError):
    code = "DNS_ERROR"


class TcpUnreachableError(ConnectivityError):
    code = "TCP_UNREACHABLE"


class SshHandshakeError(ConnectivityError):
    code = "SSH_HANDSHAKE_FAILED"


class ForwardingError(ConnectivityError):
    code = "FORWARDING_ERROR"


class TenantTimeoutError(ConnectivityError):
    code = "TENANT_TIMEOUT"


class ConfigurationError(SyncError):
    """Tenant row is missing what we need to reach it."""

    code = "CONFIGURATION_ERROR"


# ============================================================================
# ENTITY LEVEL (abort one pipeline, keep going with the others)
# ============================================================================

class SourceQueryError(SyncError):
    code = "SOURCE_QUERY_ERROR"


class DestinationWriteError(SyncError):
    code = "DESTINATION_WRITE_ERROR"


# ============================================================================
# ITEM LEVEL
# ============================================================================

class DuplicateRecordError(SyncError):
    """Natural key already present - counted as skipped, never as an error."""

    code = "DUPLICATE"


class TransformError(SyncError):
    code = "TRANSFORM_ERROR"


class TranscodeError(SyncError):
    code = "TRANSCODE_ERROR"


class FileTooLargeError(SyncError):
    code = "FILE_TOO_LARGE"


class RemoteFileError(SyncError):
    """One remote file could not be read."""

    code = "REMOTE_FILE_ERROR"


def is_tenant_failure(error: BaseException) -> bool:
    """True when the error should count against the tenant's circuit."""
    return isinstance(error, (ConnectivityError, ConfigurationError))
