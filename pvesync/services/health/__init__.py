from .base import HEALTHY, UNHEALTHY
from .providers.database import DatabaseHealthCheck
from .providers.proxmox import ProxmoxHealthCheck


def default_providers():
    from pvesync.extensions import db, proxmox_client
    return [DatabaseHealthCheck(db), ProxmoxHealthCheck(proxmox_client)]


def get_system_health(providers=None):
    """
    Runs every check; the system is healthy only when all of them are.
    """
    checks = [provider.run() for provider in (providers or default_providers())]
    healthy = all(check['status'] == HEALTHY for check in checks)
    return {
        'status': HEALTHY if healthy else UNHEALTHY,
        'checks': checks,
    }
