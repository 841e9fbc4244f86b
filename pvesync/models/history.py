import json

from sqlalchemy import event

from pvesync.extensions import db
from pvesync.models.base import utcnow, _serialize


class ChangeKind:
    DISCOVERED = 'discovered'
    CREATED = 'created'
    UPDATED = 'updated'
    DELETED = 'deleted'

    ALL = (DISCOVERED, CREATED, UPDATED, DELETED)


class HistoryEntry(db.Model):
    """
    Append-only record of a state transition. Rows are never updated; removal
    is left to an external retention job (bulk deletes bypass the ORM guard).
    """
    __tablename__ = 'history_entries'

    id = db.Column(db.Integer, primary_key=True)
    recorded_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)

    resource_type = db.Column(db.String(16), nullable=False)
    resource_id = db.Column(db.String(64), nullable=False)
    change_kind = db.Column(db.String(16), nullable=False)

    snapshot_json = db.Column('snapshot', db.Text, nullable=False)
    # Set when the update overwrote an out-of-band remote config change
    drift = db.Column(db.Boolean, default=False, nullable=False)

    sync_run_id = db.Column(db.String(36), nullable=True, index=True)

    __table_args__ = (
        db.Index('ix_history_resource', 'resource_type', 'resource_id', 'recorded_at'),
    )

    @property
    def snapshot(self):
        return json.loads(self.snapshot_json)

    def to_dict(self):
        return {
            'id': self.id,
            'recorded_at': _serialize(self.recorded_at),
            'resource_type': self.resource_type,
            'resource_id': self.resource_id,
            'change_kind': self.change_kind,
            'drift': self.drift,
            'sync_run_id': self.sync_run_id,
            'snapshot': self.snapshot,
        }

    def __repr__(self):
        return f"<HistoryEntry {self.resource_type}:{self.resource_id} {self.change_kind}>"


@event.listens_for(HistoryEntry, 'before_update')
def _history_is_immutable(mapper, connection, target):
    raise ValueError("HistoryEntry rows are immutable.")
