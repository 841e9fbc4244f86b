import json
import uuid

from pvesync.extensions import db
from pvesync.models.base import utcnow, _serialize


class SyncRunStatus:
    RUNNING = 'running'
    COMPLETED = 'completed'
    PARTIAL = 'partial'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class SyncRun(db.Model):
    """Audit record of one synchronization run and its outcome."""
    __tablename__ = 'sync_runs'

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    scope = db.Column(db.String(255), nullable=False, default='cluster')
    status = db.Column(db.String(16), nullable=False, default=SyncRunStatus.RUNNING, index=True)

    started_at = db.Column(db.DateTime, default=utcnow, index=True)
    finished_at = db.Column(db.DateTime)
    elapsed_seconds = db.Column(db.Float)

    created = db.Column(db.Integer, default=0)
    updated = db.Column(db.Integer, default=0)
    absent = db.Column(db.Integer, default=0)
    unchanged = db.Column(db.Integer, default=0)
    failed = db.Column(db.Integer, default=0)

    failures_json = db.Column('failures', db.Text, default='[]')

    @property
    def failures(self):
        return json.loads(self.failures_json or '[]')

    def to_dict(self):
        return {
            'id': self.id,
            'scope': self.scope,
            'status': self.status,
            'started_at': _serialize(self.started_at),
            'finished_at': _serialize(self.finished_at),
            'elapsed_seconds': self.elapsed_seconds,
            'counts': {
                'created': self.created,
                'updated': self.updated,
                'absent': self.absent,
                'unchanged': self.unchanged,
                'failed': self.failed,
            },
            'failures': self.failures,
        }
