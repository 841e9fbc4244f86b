from pvesync.sync.types import RawResource

_NODE_STATUS = {'online': 'online', 'offline': 'offline'}


class NodeManager:
    """Mixin for cluster nodes."""

    def _node_record(self, entry):
        return RawResource('node', entry['node'], {
            'status': _NODE_STATUS.get(entry.get('status'), 'unknown'),
            'cpu_count': entry.get('maxcpu'),
            'memory_total': entry.get('maxmem'),
            'cpu_usage': entry.get('cpu'),
            'memory_used': entry.get('mem'),
            'uptime': entry.get('uptime'),
        })

    def discover_nodes(self, scope=None):
        nodes = self.connection.nodes.get()
        return [self._node_record(n) for n in nodes
                if scope is None or scope.includes_node(n['node'])]

    def fetch_node(self, name):
        for entry in self.connection.nodes.get():
            if entry['node'] == name:
                return self._node_record(entry)
        return None
