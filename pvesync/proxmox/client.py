from proxmoxer import ProxmoxAPI
from flask import current_app, has_app_context
import hashlib
import json
import logging
import uuid
import urllib3

from pvesync.sync.types import OperationHandle

# Self-signed certificates are the norm on PVE hosts
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def config_digest(config):
    """
    PVE returns a 'digest' (sha1 of the config file) with every guest/storage
    config. When it is missing, the canonical JSON of the config is hashed instead.
    """
    if not config:
        return None
    if config.get('digest'):
        return config['digest']
    canonical = json.dumps(config, sort_keys=True, default=str)
    return hashlib.sha1(canonical.encode('utf-8')).hexdigest()


def is_upid(value):
    return isinstance(value, str) and value.startswith('UPID:')


class ProxmoxClient:
    """
    Base Proxmox client.
    Owns the connection and the low-level helpers; every resource type comes
    in through a mixin.
    """

    def __init__(self):
        # Empty until init_app, to support the Flask factory pattern
        self.config = None
        self._connection = None
        self.logger = logging.getLogger(__name__)

    def init_app(self, app):
        """
        Loads the Flask settings.
        Called from pvesync/__init__.py.
        """
        self.config = app.config
        self._connection = None

        if not self.config.get('PROXMOX_HOST'):
            self.logger.warning("PROXMOX_HOST is not configured.")

    @property
    def connection(self):
        """
        Active ProxmoxAPI connection (created lazily, then reused).
        """
        if self._connection:
            return self._connection

        if not self.config and has_app_context():
            self.config = current_app.config

        if not self.config:
            raise RuntimeError("ProxmoxClient not initialised. Call init_app(app) first.")

        host = self.config.get('PROXMOX_HOST')
        user = self.config.get('PROXMOX_USER')
        password = self.config.get('PROXMOX_PASSWORD')
        token_name = self.config.get('PROXMOX_API_TOKEN_NAME')
        token_value = self.config.get('PROXMOX_API_TOKEN_VALUE')
        timeout = self.config.get('PROXMOX_REQUEST_TIMEOUT', 30)

        # May already be a bool when set from a config class
        ssl_val = self.config.get('PROXMOX_VERIFY_SSL', False)
        verify_ssl = str(ssl_val).lower() == 'true'

        try:
            if token_name and token_value:
                self._connection = ProxmoxAPI(
                    host,
                    user=user,
                    token_name=token_name,
                    token_value=token_value,
                    verify_ssl=verify_ssl,
                    timeout=timeout
                )
            else:
                self._connection = ProxmoxAPI(
                    host,
                    user=user,
                    password=password,
                    verify_ssl=verify_ssl,
                    timeout=timeout
                )

            return self._connection

        except Exception as e:
            self.logger.error(f"Could not connect to Proxmox ({host}): {str(e)}")
            raise e

    def reset_connection(self):
        """Drops the cached connection (e.g. after an expired ticket)."""
        self._connection = None

    def online_nodes(self):
        return sorted(n['node'] for n in self.connection.nodes.get() if n.get('status') == 'online')

    def _locate_guest(self, vmid, pve_type):
        """
        Finds the node currently hosting a guest. VMIDs are unique cluster-wide,
        so /cluster/resources is enough to follow migrations.
        """
        for entry in self.connection.cluster.resources.get(type='vm'):
            if entry.get('type') == pve_type and int(entry.get('vmid', -1)) == int(vmid):
                return entry.get('node')
        return None

    def _handle(self, result, node, kind, target, parameters):
        """
        Wraps the return of a mutating call. Async calls return a UPID;
        synchronous ones (e.g. LXC config PUT) are already done.
        """
        if is_upid(result):
            return OperationHandle(
                upid=result, node=node, kind=kind,
                resource_type=target.resource_type, resource_id=target.resource_id,
                parameters=parameters,
            )
        return OperationHandle(
            upid=f"SYNC:{node}:{kind}:{target.resource_type}:{target.resource_id}:{uuid.uuid4().hex[:12]}",
            node=node, kind=kind,
            resource_type=target.resource_type, resource_id=target.resource_id,
            parameters=parameters, completed=True, exit_status='OK',
        )
