from pvesync.extensions import db
from pvesync.models.base import utcnow
from pvesync.models.node import Node, NodeStatus
from pvesync.models.guest import VirtualMachine, Container, GuestStatus
from pvesync.models.storage import StoragePool, StorageStatus, storage_pool_nodes
from pvesync.models.operation import Operation, OperationStatus
from pvesync.models.history import HistoryEntry, ChangeKind
from pvesync.models.sync_run import SyncRun, SyncRunStatus

# Lookup table for polymorphic (resource_type, resource_id) references
RESOURCE_MODELS = {
    'node': Node,
    'vm': VirtualMachine,
    'container': Container,
    'storage': StoragePool,
    'operation': Operation,
}

# Discovery/commit order: parents first
INVENTORY_TYPES = ('node', 'storage', 'vm', 'container')
GUEST_TYPES = ('vm', 'container')


def model_for(resource_type):
    try:
        return RESOURCE_MODELS[resource_type]
    except KeyError:
        raise ValueError(f"Unknown resource type: {resource_type}")


def coerce_resource_id(resource_type, resource_id):
    """Polymorphic ids are stored as strings; guests are keyed by integer VMID."""
    if resource_type in GUEST_TYPES:
        return int(resource_id)
    return str(resource_id)


def resolve_resource(resource_type, resource_id):
    model = model_for(resource_type)
    return db.session.get(model, coerce_resource_id(resource_type, resource_id))


__all__ = [
    'Node', 'NodeStatus', 'VirtualMachine', 'Container', 'GuestStatus',
    'StoragePool', 'StorageStatus', 'storage_pool_nodes', 'Operation',
    'OperationStatus', 'HistoryEntry', 'ChangeKind', 'SyncRun', 'SyncRunStatus',
    'RESOURCE_MODELS', 'INVENTORY_TYPES', 'GUEST_TYPES', 'model_for',
    'coerce_resource_id', 'resolve_resource', 'utcnow',
]
