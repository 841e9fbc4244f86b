from pvesync.services.health.base import HealthCheckProvider


class ProxmoxHealthCheck(HealthCheckProvider):
    name = "Proxmox Cluster"
    category = "compute"

    def __init__(self, client):
        self.client = client

    def check(self):
        # Accessing .connection triggers the lazy connect; missing config fails here
        conn = self.client.connection
        version_data = conn.version.get()
        nodes = conn.nodes.get()

        return {
            'version': version_data.get('version'),
            'release': version_data.get('release'),
            'nodes_online': sum(1 for n in nodes if n.get('status') == 'online'),
        }
