"""Data contracts shared by the Resource Client and the sync engine."""
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Optional

from pvesync.models import GUEST_TYPES, INVENTORY_TYPES, coerce_resource_id, utcnow


@dataclass
class RawResource:
    """
    One resource as reported by discovery, already normalised to model fields.

    ``fields`` uses the column names of the matching model; storage pools
    carry their accessible nodes under ``node_names``.
    """
    resource_type: str
    resource_id: Any
    fields: dict = field(default_factory=dict)

    @property
    def node(self):
        return self.fields.get('node_name')

    @property
    def digest(self):
        return self.fields.get('config_digest')


@dataclass
class OperationHandle:
    """Handle returned by a mutation call (PVE UPID plus what it targets)."""
    upid: str
    node: str
    kind: str
    resource_type: str
    resource_id: Any
    parameters: dict = field(default_factory=dict)
    started_at: datetime = field(default_factory=utcnow)
    # Synchronous API calls complete in the request itself
    completed: bool = False
    exit_status: Optional[str] = None
    # Last known Operation status
    status: Optional[str] = None

    @classmethod
    def from_operation(cls, op):
        """Rebuilds the handle of a persisted Operation so it can be polled again."""
        return cls(
            upid=op.upid,
            node=op.node_name,
            kind=op.kind,
            resource_type=op.resource_type,
            resource_id=coerce_resource_id(op.resource_type, op.resource_id),
            parameters=op.parameters,
            started_at=op.started_at or utcnow(),
            completed=not op.upid.startswith('UPID:'),
            exit_status=op.exit_status,
            status=op.status,
        )

    def to_dict(self):
        data = asdict(self)
        data['started_at'] = self.started_at.isoformat()
        return data


@dataclass
class RemoteTaskStatus:
    """Raw task status as PVE reports it: 'running' or 'stopped' + exitstatus."""
    status: str
    exit_status: Optional[str] = None

    @property
    def finished(self):
        return self.status == 'stopped'

    @property
    def ok(self):
        return self.finished and self.exit_status == 'OK'


@dataclass(frozen=True)
class SyncScope:
    """
    Portion of the cluster a run covers. ``None`` means "everything".
    """
    nodes: Optional[tuple] = None
    resource_types: Optional[tuple] = None

    def __post_init__(self):
        if self.nodes is not None:
            object.__setattr__(self, 'nodes', tuple(sorted(set(self.nodes))))
        if self.resource_types is not None:
            unknown = set(self.resource_types) - set(INVENTORY_TYPES)
            if unknown:
                raise ValueError(f"Unknown resource types in scope: {sorted(unknown)}")
            ordered = tuple(t for t in INVENTORY_TYPES if t in self.resource_types)
            object.__setattr__(self, 'resource_types', ordered)

    @classmethod
    def for_node(cls, node):
        return cls(nodes=(node,))

    @property
    def types(self):
        return self.resource_types or INVENTORY_TYPES

    def includes_type(self, resource_type):
        return resource_type in self.types

    def includes_node(self, node):
        return self.nodes is None or node in self.nodes

    def overlaps(self, other):
        nodes_overlap = (self.nodes is None or other.nodes is None
                         or bool(set(self.nodes) & set(other.nodes)))
        types_overlap = bool(set(self.types) & set(other.types))
        return nodes_overlap and types_overlap

    @property
    def key(self):
        nodes = ','.join(self.nodes) if self.nodes else '*'
        types = ','.join(self.types)
        return f"nodes={nodes};types={types}"


MUTABLE_FIELDS = ('name', 'status', 'cores', 'memory_bytes', 'disk_bytes')


@dataclass
class DeclaredResource:
    """Desired state of a single guest."""
    resource_type: str
    resource_id: int
    desired: dict = field(default_factory=dict)
    present: bool = True
    disk: Optional[str] = None

    @classmethod
    def from_dict(cls, data):
        data = dict(data)
        resource_type = data.pop('resource_type', None)
        if resource_type not in GUEST_TYPES:
            raise ValueError(f"Declared targets support {GUEST_TYPES}, got {resource_type!r}")
        if 'resource_id' not in data:
            raise ValueError("Declared target without resource_id.")
        resource_id = int(data.pop('resource_id'))
        present = bool(data.pop('present', True))
        disk = data.pop('disk', None)
        unknown = set(data) - set(MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unsupported declared fields for {resource_type} {resource_id}: {sorted(unknown)}")
        return cls(resource_type, resource_id, desired=data, present=present, disk=disk)


class DeclaredTarget:
    """Collection of declared resources keyed by (resource_type, resource_id)."""

    def __init__(self, resources=None):
        self._resources = {}
        for resource in resources or ():
            self._resources[(resource.resource_type, resource.resource_id)] = resource

    @classmethod
    def from_list(cls, items):
        return cls(DeclaredResource.from_dict(item) for item in items or ())

    def get(self, resource_type, resource_id):
        return self._resources.get((resource_type, resource_id))

    def for_type(self, resource_type):
        return [r for (t, _), r in self._resources.items() if t == resource_type]

    def __len__(self):
        return len(self._resources)

    def __iter__(self):
        return iter(self._resources.values())


class Resolution:
    """Caller-supplied answer to an ambiguous three-way conflict."""
    REMOTE = 'remote'
    DECLARED = 'declared'

    ALL = (REMOTE, DECLARED)


@dataclass
class SyncFailure:
    resource_type: str
    resource_id: Any
    error: str
    error_type: str

    @classmethod
    def from_error(cls, exc, resource_type=None, resource_id=None):
        return cls(
            resource_type=getattr(exc, 'resource_type', None) or resource_type,
            resource_id=getattr(exc, 'resource_id', None) if getattr(exc, 'resource_id', None) is not None else resource_id,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    def to_dict(self):
        return asdict(self)


@dataclass
class TypeCounts:
    created: int = 0
    updated: int = 0
    absent: int = 0
    unchanged: int = 0
    failed: int = 0


@dataclass
class SyncResult:
    """Outcome of one run, returned to the calling layer."""
    run_id: Optional[str] = None
    scope: Optional[SyncScope] = None
    by_type: dict = field(default_factory=dict)
    failures: list = field(default_factory=list)
    pending: list = field(default_factory=list)
    completed: list = field(default_factory=list)
    conflicts: list = field(default_factory=list)
    drifted: list = field(default_factory=list)
    elapsed: float = 0.0
    cancelled: bool = False

    def counts_for(self, resource_type):
        return self.by_type.setdefault(resource_type, TypeCounts())

    def _total(self, attr):
        return sum(getattr(counts, attr) for counts in self.by_type.values())

    @property
    def created(self):
        return self._total('created')

    @property
    def updated(self):
        return self._total('updated')

    @property
    def absent(self):
        return self._total('absent')

    @property
    def unchanged(self):
        return self._total('unchanged')

    @property
    def failed(self):
        return len({(f.resource_type, str(f.resource_id)) for f in self.failures})

    @property
    def success(self):
        return not self.failures and not self.cancelled

    def add_failure(self, exc, resource_type=None, resource_id=None):
        failure = SyncFailure.from_error(exc, resource_type, resource_id)
        self.failures.append(failure)
        if failure.resource_type:
            self.counts_for(failure.resource_type).failed += 1
        return failure

    def to_dict(self):
        return {
            'run_id': self.run_id,
            'scope': self.scope.key if self.scope else None,
            'success': self.success,
            'counts': {
                'created': self.created,
                'updated': self.updated,
                'absent': self.absent,
                'unchanged': self.unchanged,
                'failed': self.failed,
            },
            'by_type': {t: asdict(c) for t, c in self.by_type.items()},
            'failures': [f.to_dict() for f in self.failures],
            'pending': [h.to_dict() for h in self.pending],
            'completed': [h.to_dict() for h in self.completed],
            'conflicts': [f.to_dict() for f in self.conflicts],
            'drifted': [{'resource_type': t, 'resource_id': i} for t, i in self.drifted],
            'elapsed': round(self.elapsed, 3),
            'cancelled': self.cancelled,
        }
