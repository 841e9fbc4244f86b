from pvesync.sync.engine import SyncEngine
from pvesync.sync.types import (
    DeclaredResource, DeclaredTarget, OperationHandle, RawResource, RemoteTaskStatus,
    Resolution, SyncResult, SyncScope,
)

__all__ = [
    'SyncEngine', 'DeclaredResource', 'DeclaredTarget', 'OperationHandle', 'RawResource',
    'RemoteTaskStatus', 'Resolution', 'SyncResult', 'SyncScope',
]
