from pvesync.extensions import db
from pvesync.models.base import InventoryMixin


class StorageStatus:
    AVAILABLE = 'available'
    ABSENT = 'absent'

    ALL = (AVAILABLE, ABSENT)


# Many-to-many: nodes where the pool is accessible
storage_pool_nodes = db.Table(
    'storage_pool_nodes',
    db.Column('storage_name', db.String(64), db.ForeignKey('storage_pools.name'), primary_key=True),
    db.Column('node_name', db.String(64), db.ForeignKey('nodes.name'), primary_key=True),
)


class StoragePool(InventoryMixin, db.Model):
    __tablename__ = 'storage_pools'

    RESOURCE_TYPE = 'storage'
    ID_FIELD = 'name'
    # 'node_names' is a virtual field backed by the association table
    TRACKED_FIELDS = ('type', 'content', 'shared', 'enabled', 'total_bytes',
                      'status', 'config_digest', 'node_names')
    VOLATILE_FIELDS = ('used_bytes', 'available_bytes')
    CONFIG_FIELDS = ('type', 'content', 'shared', 'enabled', 'config_digest', 'node_names')
    ABSENT_STATUS = StorageStatus.ABSENT

    name = db.Column(db.String(64), primary_key=True)
    type = db.Column(db.String(32), nullable=False)
    content = db.Column(db.String(255))
    shared = db.Column(db.Boolean, default=False)
    enabled = db.Column(db.Boolean, default=True)
    status = db.Column(db.String(16), nullable=False, default=StorageStatus.AVAILABLE)

    total_bytes = db.Column(db.BigInteger)
    used_bytes = db.Column(db.BigInteger)
    available_bytes = db.Column(db.BigInteger)

    config_digest = db.Column(db.String(64))

    nodes = db.relationship('Node', secondary=storage_pool_nodes, lazy='selectin',
                            order_by='Node.name')

    @property
    def node_names(self):
        return sorted(node.name for node in self.nodes)

    def to_dict(self):
        data = super().to_dict()
        data['node_names'] = self.node_names
        return data

    def __repr__(self):
        return f"<StoragePool {self.name} ({self.type})>"
