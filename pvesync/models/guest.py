from sqlalchemy.orm import declared_attr

from pvesync.extensions import db
from pvesync.models.base import InventoryMixin


class GuestStatus:
    RUNNING = 'running'
    STOPPED = 'stopped'
    SUSPENDED = 'suspended'
    UNKNOWN = 'unknown'
    # Terminal value for guests that disappeared from discovery
    ABSENT = 'absent'

    ALL = (RUNNING, STOPPED, SUSPENDED, UNKNOWN, ABSENT)


class GuestMixin(InventoryMixin):
    """Columns shared by QEMU VMs and LXC containers."""

    ID_FIELD = 'vmid'
    TRACKED_FIELDS = ('node_name', 'name', 'status', 'cores', 'memory_bytes',
                      'disk_bytes', 'template', 'config_digest')
    VOLATILE_FIELDS = ('cpu_usage', 'memory_used', 'net_in', 'net_out', 'uptime')
    CONFIG_FIELDS = ('name', 'cores', 'memory_bytes', 'disk_bytes', 'template', 'config_digest')
    ABSENT_STATUS = GuestStatus.ABSENT

    # VMIDs are unique cluster-wide in PVE, so the id survives a migration
    vmid = db.Column(db.Integer, primary_key=True, autoincrement=False)

    @declared_attr
    def node_name(cls):
        return db.Column(db.String(64), db.ForeignKey('nodes.name'), nullable=False, index=True)

    name = db.Column(db.String(128))
    status = db.Column(db.String(16), nullable=False, default=GuestStatus.UNKNOWN, index=True)
    template = db.Column(db.Boolean, default=False)

    # Allocation
    cores = db.Column(db.Integer)
    memory_bytes = db.Column(db.BigInteger)
    disk_bytes = db.Column(db.BigInteger)

    # Observed usage
    cpu_usage = db.Column(db.Float)
    memory_used = db.Column(db.BigInteger)
    net_in = db.Column(db.BigInteger)
    net_out = db.Column(db.BigInteger)
    uptime = db.Column(db.Integer)

    # Fingerprint of the remote config (PVE 'digest' of the config file)
    config_digest = db.Column(db.String(64))


class VirtualMachine(GuestMixin, db.Model):
    __tablename__ = 'virtual_machines'

    RESOURCE_TYPE = 'vm'

    node = db.relationship('Node', back_populates='vms')

    def __repr__(self):
        return f"<VM {self.vmid}@{self.node_name} [{self.status}]>"


class Container(GuestMixin, db.Model):
    __tablename__ = 'containers'

    RESOURCE_TYPE = 'container'

    node = db.relationship('Node', back_populates='containers')

    def __repr__(self):
        return f"<CT {self.vmid}@{self.node_name} [{self.status}]>"
