import json
import logging

from pvesync.extensions import db
from pvesync.models import HistoryEntry, ChangeKind, utcnow

logger = logging.getLogger(__name__)


class HistoryQuery:
    """
    Lazy, finite and restartable view over ledger rows in ascending order.
    Every iteration issues a fresh query, so iterating twice yields the same rows
    (plus anything committed in between).
    """

    def __init__(self, resource_type, resource_id, since=None, until=None, batch_size=200):
        self.resource_type = resource_type
        self.resource_id = str(resource_id)
        self.since = since
        self.until = until
        self.batch_size = batch_size

    def _query(self):
        query = HistoryEntry.query.filter_by(
            resource_type=self.resource_type, resource_id=self.resource_id
        )
        if self.since is not None:
            query = query.filter(HistoryEntry.recorded_at >= self.since)
        if self.until is not None:
            query = query.filter(HistoryEntry.recorded_at <= self.until)
        return query.order_by(HistoryEntry.recorded_at.asc(), HistoryEntry.id.asc())

    def __iter__(self):
        return iter(self._query().yield_per(self.batch_size))

    def count(self):
        return self._query().count()

    def first(self):
        return self._query().first()

    def last(self):
        return self._query().order_by(None).order_by(
            HistoryEntry.recorded_at.desc(), HistoryEntry.id.desc()
        ).first()


class HistoryLedger:
    """
    Append-only ledger of resource state transitions.

    ``record`` only adds the row to the current session: the caller's
    transaction commits the state change and its entry together.
    """

    def record(self, resource_type, resource_id, change_kind, snapshot,
               drift=False, sync_run_id=None, recorded_at=None):
        if change_kind not in ChangeKind.ALL:
            raise ValueError(f"Invalid change kind: {change_kind}")

        entry = HistoryEntry(
            recorded_at=recorded_at or utcnow(),
            resource_type=resource_type,
            resource_id=str(resource_id),
            change_kind=change_kind,
            snapshot_json=json.dumps(snapshot, sort_keys=True, default=str),
            drift=drift,
            sync_run_id=sync_run_id,
        )
        db.session.add(entry)
        return entry

    def query(self, resource_type, resource_id, since=None, until=None):
        return HistoryQuery(resource_type, resource_id, since=since, until=until)

    def latest(self, resource_type, resource_id):
        return HistoryQuery(resource_type, resource_id).last()

    def summary(self, resource_type, resource_id):
        """First/last time seen and how many updates the resource went through."""
        history = self.query(resource_type, resource_id)
        first = history.first()
        if first is None:
            return None
        last = history.last()
        updates = HistoryEntry.query.filter_by(
            resource_type=resource_type,
            resource_id=str(resource_id),
            change_kind=ChangeKind.UPDATED,
        ).count()
        return {
            'resource_type': resource_type,
            'resource_id': str(resource_id),
            'entries': history.count(),
            'updates': updates,
            'first_seen': first.recorded_at.isoformat(),
            'last_seen': last.recorded_at.isoformat(),
        }
