import socket

import requests
from proxmoxer import AuthenticationError, ResourceException


class SyncError(Exception):
    """Base class for every error raised by the synchronization engine."""

    retryable = False

    def __init__(self, message, resource_type=None, resource_id=None):
        super().__init__(message)
        self.resource_type = resource_type
        self.resource_id = resource_id

    @property
    def kind(self):
        return type(self).__name__


class TransientRemoteError(SyncError):
    """Network/timeout style failure. Retried with backoff, then escalated."""

    retryable = True


class RemoteError(SyncError):
    """Terminal failure reported by the remote platform."""


class RemoteValidationError(RemoteError):
    """The platform rejected the request. Never retried."""


class RemoteAuthenticationError(RemoteError):
    pass


class OperationFailedError(RemoteError):
    """A remote task finished with a non-OK exit status."""


class OperationTimeoutError(SyncError):
    """An Operation never reached a terminal status within the tracker's budget."""


class ReferentialIntegrityError(SyncError):
    """A record references a Node that is not persisted yet."""


class ResourceValidationError(SyncError):
    """A discovered record cannot be stored as-is."""


class ConflictError(SyncError):
    """Remote and declared state both moved away from the last recorded snapshot."""

    def __init__(self, message, resource_type=None, resource_id=None, fields=None):
        super().__init__(message, resource_type, resource_id)
        self.fields = list(fields or [])


class SyncInProgressError(SyncError):
    """Another run holds the lock for an overlapping scope."""


# PVE messages for short-lived locks (config lock held by another task, busy worker)
_TRANSIENT_MARKERS = ('got timeout', 'can\'t lock file', 'is locked', 'temporarily unavailable')
_TRANSIENT_STATUS = (408, 429, 502, 503, 504)


def classify_remote_error(exc, resource_type=None, resource_id=None):
    """
    Maps any exception raised by the Resource Client onto the engine taxonomy.
    SyncError instances are returned untouched (only the target is filled in).
    """
    if isinstance(exc, SyncError):
        if exc.resource_type is None:
            exc.resource_type = resource_type
            exc.resource_id = resource_id
        return exc

    message = str(exc) or type(exc).__name__

    if isinstance(exc, AuthenticationError):
        return RemoteAuthenticationError(message, resource_type, resource_id)

    if isinstance(exc, ResourceException):
        status_code = getattr(exc, 'status_code', None)
        lowered = message.lower()
        if status_code in _TRANSIENT_STATUS or any(m in lowered for m in _TRANSIENT_MARKERS):
            return TransientRemoteError(message, resource_type, resource_id)
        return RemoteValidationError(message, resource_type, resource_id)

    if isinstance(exc, (requests.exceptions.ConnectionError,
                        requests.exceptions.Timeout,
                        socket.timeout,
                        TimeoutError,
                        ConnectionError)):
        return TransientRemoteError(message, resource_type, resource_id)

    return RemoteError(message, resource_type, resource_id)
