from pvesync.errors import RemoteValidationError
from pvesync.sync.types import RawResource
from pvesync.proxmox.client import config_digest

MB = 1024 * 1024

_GUEST_STATUS = {'running': 'running', 'stopped': 'stopped', 'paused': 'suspended', 'suspended': 'suspended'}


def guest_status(entry):
    return _GUEST_STATUS.get(entry.get('qmpstatus') or entry.get('status'), 'unknown')


class QEMUManager:
    """Mixin for virtual machines (KVM/QEMU)."""

    def _vm_record(self, node_id, entry, config):
        return RawResource('vm', int(entry['vmid']), {
            'node_name': node_id,
            'name': entry.get('name') or config.get('name'),
            'status': guest_status(entry),
            'template': bool(entry.get('template') or config.get('template')),
            'cores': config.get('cores') or entry.get('cpus'),
            'memory_bytes': entry.get('maxmem'),
            'disk_bytes': entry.get('maxdisk'),
            'cpu_usage': entry.get('cpu'),
            'memory_used': entry.get('mem'),
            'net_in': entry.get('netin'),
            'net_out': entry.get('netout'),
            'uptime': entry.get('uptime'),
            'config_digest': config_digest(config),
        })

    def discover_vms(self, node_id):
        vms = self.connection.nodes(node_id).qemu.get()
        records = []
        for entry in vms:
            config = self.connection.nodes(node_id).qemu(entry['vmid']).config.get()
            records.append(self._vm_record(node_id, entry, config))
        return records

    def fetch_vm(self, vmid, node_id=None):
        node_id = node_id or self._locate_guest(vmid, 'qemu')
        if node_id is None:
            return None
        api = self.connection.nodes(node_id).qemu(vmid)
        entry = dict(api.status.current.get(), vmid=vmid)
        return self._vm_record(node_id, entry, api.config.get())

    # --- Mutations (all return the task UPID) ---

    def configure_vm(self, target, parameters):
        params = {}
        if 'name' in parameters:
            params['name'] = parameters['name']
        if 'cores' in parameters:
            params['cores'] = parameters['cores']
        if 'memory_bytes' in parameters:
            params['memory'] = int(parameters['memory_bytes'] // MB)
        # POST config runs as a task, PUT would block until applied
        return self.connection.nodes(target.node).qemu(target.resource_id).config.post(**params)

    def resize_vm_disk(self, target, parameters):
        size = _checked_size(target, parameters)
        disk = parameters.get('disk') or 'scsi0'
        return self.connection.nodes(target.node).qemu(target.resource_id).resize.put(disk=disk, size=str(size))

    def start_vm(self, target, parameters):
        return self.connection.nodes(target.node).qemu(target.resource_id).status.start.post()

    def stop_vm(self, target, parameters):
        return self.connection.nodes(target.node).qemu(target.resource_id).status.stop.post()

    def destroy_vm(self, target, parameters):
        return self.connection.nodes(target.node).qemu(target.resource_id).delete(**parameters)


def _checked_size(target, parameters):
    """Disks only grow; PVE rejects shrinking anyway."""
    size = int(parameters['size_bytes'])
    current = target.fields.get('disk_bytes') or 0
    if size < current:
        raise RemoteValidationError(
            f"Cannot shrink disk from {current} to {size} bytes",
            target.resource_type, target.resource_id,
        )
    return size
