from pvesync.sync.types import RawResource
from pvesync.proxmox.client import config_digest


class StorageManager:
    """Mixin for storage pools (cluster config merged with per-node usage)."""

    def _storage_usage(self):
        """{storage: {node: status entry}} for every online node."""
        usage = {}
        for node_id in self.online_nodes():
            for entry in self.connection.nodes(node_id).storage.get():
                usage.setdefault(entry['storage'], {})[node_id] = entry
        return usage

    def _storage_record(self, config, per_node):
        name = config['storage']
        shared = bool(config.get('shared') or any(e.get('shared') for e in per_node.values()))

        if config.get('nodes'):
            node_names = sorted(n.strip() for n in config['nodes'].split(',') if n.strip())
        else:
            node_names = sorted(per_node)

        entries = list(per_node.values())
        if shared:
            # Same backing store seen from every node: count it once
            entries = entries[:1]
        total = sum(e.get('total') or 0 for e in entries) if entries else None
        used = sum(e.get('used') or 0 for e in entries) if entries else None
        avail = sum(e.get('avail') or 0 for e in entries) if entries else None

        return RawResource('storage', name, {
            'type': config.get('type'),
            'content': config.get('content', ''),
            'shared': shared,
            'enabled': not config.get('disable'),
            'status': 'available',
            'total_bytes': total,
            'used_bytes': used,
            'available_bytes': avail,
            'config_digest': config_digest(config),
            'node_names': node_names,
        })

    def discover_storage(self, scope=None):
        usage = self._storage_usage()
        return [self._storage_record(config, usage.get(config['storage'], {}))
                for config in self.connection.storage.get()]

    def fetch_storage(self, name):
        for config in self.connection.storage.get():
            if config['storage'] == name:
                return self._storage_record(config, self._storage_usage().get(name, {}))
        return None
