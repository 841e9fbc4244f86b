from datetime import datetime, timezone

from pvesync.extensions import db


def utcnow():
    """Naive UTC timestamp (the columns are stored without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _serialize(value):
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class InventoryMixin:
    """
    Shared behaviour of every discovered resource (Node, VM, Container, StoragePool).

    Subclasses declare:
      RESOURCE_TYPE   -- polymorphic tag used by Operation/HistoryEntry
      ID_FIELD        -- attribute holding the remote identifier
      TRACKED_FIELDS  -- fields whose change is a real update (history + counter)
      VOLATILE_FIELDS -- telemetry refreshed on every pass without history
      CONFIG_FIELDS   -- fields owned by the remote configuration (drift policy)
      ABSENT_STATUS   -- status given when the resource disappears from discovery
    """

    RESOURCE_TYPE = None
    ID_FIELD = 'id'
    TRACKED_FIELDS = ()
    VOLATILE_FIELDS = ()
    CONFIG_FIELDS = ()
    ABSENT_STATUS = 'absent'

    last_seen = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def resource_id(self):
        return getattr(self, self.ID_FIELD)

    @property
    def is_absent(self):
        return self.status == self.ABSENT_STATUS

    def tracked_state(self):
        return {field: getattr(self, field) for field in self.TRACKED_FIELDS}

    def to_dict(self):
        data = {column.name: _serialize(getattr(self, column.key))
                for column in self.__table__.columns}
        data['resource_type'] = self.RESOURCE_TYPE
        return data
