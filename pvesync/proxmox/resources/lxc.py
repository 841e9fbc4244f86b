from pvesync.sync.types import RawResource
from pvesync.proxmox.client import config_digest
from pvesync.proxmox.resources.qemu import MB, _checked_size, guest_status


class LXCManager:
    """Mixin for containers (LXC)."""

    def _container_record(self, node_id, entry, config):
        return RawResource('container', int(entry['vmid']), {
            'node_name': node_id,
            'name': entry.get('name') or config.get('hostname'),
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

    def discover_containers(self, node_id):
        cts = self.connection.nodes(node_id).lxc.get()
        records = []
        for entry in cts:
            config = self.connection.nodes(node_id).lxc(entry['vmid']).config.get()
            records.append(self._container_record(node_id, entry, config))
        return records

    def fetch_container(self, ctid, node_id=None):
        node_id = node_id or self._locate_guest(ctid, 'lxc')
        if node_id is None:
            return None
        api = self.connection.nodes(node_id).lxc(ctid)
        entry = dict(api.status.current.get(), vmid=ctid)
        return self._container_record(node_id, entry, api.config.get())

    # --- Mutations ---

    def configure_container(self, target, parameters):
        params = {}
        if 'name' in parameters:
            params['hostname'] = parameters['name']
        if 'cores' in parameters:
            params['cores'] = parameters['cores']
        if 'memory_bytes' in parameters:
            params['memory'] = int(parameters['memory_bytes'] // MB)
        # Synchronous: returns None once applied
        return self.connection.nodes(target.node).lxc(target.resource_id).config.put(**params)

    def resize_container_disk(self, target, parameters):
        size = _checked_size(target, parameters)
        disk = parameters.get('disk') or 'rootfs'
        return self.connection.nodes(target.node).lxc(target.resource_id).resize.put(disk=disk, size=str(size))

    def start_container(self, target, parameters):
        return self.connection.nodes(target.node).lxc(target.resource_id).status.start.post()

    def stop_container(self, target, parameters):
        return self.connection.nodes(target.node).lxc(target.resource_id).status.stop.post()

    def destroy_container(self, target, parameters):
        return self.connection.nodes(target.node).lxc(target.resource_id).delete(**parameters)
