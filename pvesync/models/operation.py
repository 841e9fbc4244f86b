import json

from pvesync.extensions import db
from pvesync.models.base import utcnow, _serialize


class OperationStatus:
    PENDING = 'pending'
    RUNNING = 'running'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    # Polling budget exhausted: treated as failed for the target, but re-verifiable
    UNKNOWN = 'unknown'

    TERMINAL = (SUCCEEDED, FAILED, UNKNOWN)
    IN_FLIGHT = (PENDING, RUNNING)

    # Forward-only ordering used to reject reverse transitions
    RANK = {PENDING: 0, RUNNING: 1, SUCCEEDED: 2, FAILED: 2, UNKNOWN: 2}

    @classmethod
    def can_transition(cls, current, new):
        if current in cls.TERMINAL:
            return False
        return cls.RANK[new] > cls.RANK[current]


class Operation(db.Model):
    """
    Remote task (PVE UPID) started by the reconciler.

    The target is a polymorphic (resource_type, resource_id) pair rather than a
    foreign key: it may point at a VM, a container or a storage pool.
    """
    __tablename__ = 'operations'

    RESOURCE_TYPE = 'operation'

    upid = db.Column(db.String(255), primary_key=True)
    node_name = db.Column(db.String(64), db.ForeignKey('nodes.name'), nullable=False, index=True)
    kind = db.Column(db.String(32), nullable=False)

    resource_type = db.Column(db.String(16), nullable=False)
    resource_id = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=OperationStatus.PENDING, index=True)
    exit_status = db.Column(db.Text)
    parameters_json = db.Column('parameters', db.Text, default='{}')

    sync_run_id = db.Column(db.String(36), db.ForeignKey('sync_runs.id'), nullable=True)

    started_at = db.Column(db.DateTime, default=utcnow)
    ended_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    node = db.relationship('Node')

    __table_args__ = (
        db.Index('ix_operations_target', 'resource_type', 'resource_id'),
    )

    @property
    def parameters(self):
        return json.loads(self.parameters_json or '{}')

    @parameters.setter
    def parameters(self, value):
        self.parameters_json = json.dumps(value or {}, sort_keys=True)

    @property
    def is_terminal(self):
        return self.status in OperationStatus.TERMINAL

    @property
    def target(self):
        """Resolves the polymorphic reference through the type lookup table."""
        from pvesync.models import resolve_resource
        return resolve_resource(self.resource_type, self.resource_id)

    def to_dict(self):
        return {
            'upid': self.upid,
            'node': self.node_name,
            'kind': self.kind,
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'status': self.status,
            'exit_status': self.exit_status,
            'parameters': self.parameters,
            'sync_run_id': self.sync_run_id,
            'started_at': _serialize(self.started_at),
            'ended_at': _serialize(self.ended_at),
        }

    def __repr__(self):
        return f"<Operation {self.kind} {self.resource_type}:{self.resource_id} [{self.status}]>"
