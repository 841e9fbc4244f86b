from pvesync.errors import RemoteValidationError
from pvesync.sync.client import ResourceClient

# 1. Base class (connection and helpers)
from .client import ProxmoxClient

# 2. Resource managers (mixins)
from .resources.nodes import NodeManager
from .resources.qemu import QEMUManager
from .resources.lxc import LXCManager
from .resources.storage import StorageManager
from .resources.tasks import TaskManager


# 3. Unified service (facade)
# Inheritance order matters: ProxmoxClient provides self.connection and the
# helpers the mixins rely on.
class ProxmoxService(ProxmoxClient,
                     NodeManager,
                     QEMUManager,
                     LXCManager,
                     StorageManager,
                     TaskManager,
                     ResourceClient):
    """
    Resource Client backed by the Proxmox VE API.

    Translates the engine's resource types and operation kinds onto the
    mixin methods above.
    """

    MUTATIONS = {
        ('vm', 'configure'): 'configure_vm',
        ('vm', 'resize'): 'resize_vm_disk',
        ('vm', 'start'): 'start_vm',
        ('vm', 'stop'): 'stop_vm',
        ('vm', 'destroy'): 'destroy_vm',
        ('container', 'configure'): 'configure_container',
        ('container', 'resize'): 'resize_container_disk',
        ('container', 'start'): 'start_container',
        ('container', 'stop'): 'stop_container',
        ('container', 'destroy'): 'destroy_container',
    }

    def discover(self, resource_type, scope):
        if resource_type == 'node':
            return self.discover_nodes(scope)
        if resource_type == 'storage':
            return self.discover_storage(scope)

        nodes = scope.nodes if scope.nodes is not None else self.online_nodes()
        records = []
        for node_id in nodes:
            if resource_type == 'vm':
                records.extend(self.discover_vms(node_id))
            elif resource_type == 'container':
                records.extend(self.discover_containers(node_id))
            else:
                raise ValueError(f"Unknown resource type: {resource_type}")
        return records

    def fetch(self, resource_type, resource_id):
        if resource_type == 'node':
            return self.fetch_node(resource_id)
        if resource_type == 'vm':
            return self.fetch_vm(int(resource_id))
        if resource_type == 'container':
            return self.fetch_container(int(resource_id))
        if resource_type == 'storage':
            return self.fetch_storage(resource_id)
        raise ValueError(f"Unknown resource type: {resource_type}")

    def mutate(self, kind, target, parameters):
        method = self.MUTATIONS.get((target.resource_type, kind))
        if method is None:
            raise RemoteValidationError(
                f"Operation '{kind}' is not supported for {target.resource_type}",
                target.resource_type, target.resource_id,
            )
        self.logger.info(f"{kind} {target.resource_type}:{target.resource_id} on {target.node} {parameters}")
        result = getattr(self, method)(target, parameters)
        return self._handle(result, target.node, kind, target, parameters)
