from pvesync.extensions import db
from pvesync.models.base import InventoryMixin


class NodeStatus:
    ONLINE = 'online'
    OFFLINE = 'offline'
    UNKNOWN = 'unknown'

    ALL = (ONLINE, OFFLINE, UNKNOWN)


class Node(InventoryMixin, db.Model):
    """
    Hypervisor node of the cluster. Never hard-deleted: a node missing from
    discovery is marked offline so guests and operations keep their reference.
    """
    __tablename__ = 'nodes'

    RESOURCE_TYPE = 'node'
    ID_FIELD = 'name'
    TRACKED_FIELDS = ('status', 'cpu_count', 'memory_total')
    VOLATILE_FIELDS = ('cpu_usage', 'memory_used', 'uptime')
    CONFIG_FIELDS = ()
    ABSENT_STATUS = NodeStatus.OFFLINE

    name = db.Column(db.String(64), primary_key=True)
    status = db.Column(db.String(16), nullable=False, default=NodeStatus.UNKNOWN)

    # Capacity
    cpu_count = db.Column(db.Integer)
    memory_total = db.Column(db.BigInteger)

    # Usage (telemetry)
    cpu_usage = db.Column(db.Float)
    memory_used = db.Column(db.BigInteger)
    uptime = db.Column(db.Integer)

    vms = db.relationship('VirtualMachine', back_populates='node', lazy='dynamic')
    containers = db.relationship('Container', back_populates='node', lazy='dynamic')

    def __repr__(self):
        return f"<Node {self.name} [{self.status}]>"
