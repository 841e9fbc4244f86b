import json
import logging
import threading
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError

from pvesync.errors import ReferentialIntegrityError, ResourceValidationError
from pvesync.extensions import db
from pvesync.models import (
    ChangeKind, GUEST_TYPES, GuestStatus, Node, NodeStatus, Operation,
    OperationStatus, StorageStatus, SyncRun, SyncRunStatus, coerce_resource_id,
    model_for, utcnow,
)

logger = logging.getLogger(__name__)


class Outcome:
    CREATED = 'created'
    UPDATED = 'updated'
    UNCHANGED = 'unchanged'
    # Observation older than what is already stored (last_seen is monotonic)
    STALE = 'stale'


_ALLOWED_STATUS = {
    'node': NodeStatus.ALL,
    'vm': GuestStatus.ALL,
    'container': GuestStatus.ALL,
    'storage': StorageStatus.ALL,
}

_NON_NEGATIVE = ('cpu_count', 'memory_total', 'memory_used', 'cores', 'memory_bytes',
                 'disk_bytes', 'net_in', 'net_out', 'total_bytes', 'used_bytes',
                 'available_bytes')


class StateStore:
    """
    Owns every persisted entity.

    All writes go through ``transaction()``, which serialises writers with a
    lock and commits (or rolls back) the ORM session as a unit. History rows
    are added by the ledger inside the same transaction.
    """

    def __init__(self, ledger):
        self.ledger = ledger
        self._write_lock = threading.RLock()

    @contextmanager
    def transaction(self):
        with self._write_lock:
            try:
                yield db.session
                db.session.commit()
            except IntegrityError as e:
                db.session.rollback()
                raise ReferentialIntegrityError(f"Constraint violation: {e.orig}") from e
            except Exception:
                db.session.rollback()
                raise

    def release_session(self):
        """Ends the current thread's session while no other writer is mid-transaction."""
        with self._write_lock:
            db.session.remove()

    # ------------------------------------
    # --- Validation ---
    # ------------------------------------

    def validate(self, raw):
        """Raises ResourceValidationError when a discovered record cannot be stored."""
        if raw.resource_id is None or raw.resource_id == '':
            raise ResourceValidationError("Resource without identifier.", raw.resource_type)

        status = raw.fields.get('status')
        allowed = _ALLOWED_STATUS.get(raw.resource_type)
        if status is not None and allowed and status not in allowed:
            raise ResourceValidationError(
                f"Invalid status '{status}'.", raw.resource_type, raw.resource_id
            )

        for field in _NON_NEGATIVE:
            value = raw.fields.get(field)
            if value is not None and value < 0:
                raise ResourceValidationError(
                    f"Field '{field}' cannot be negative ({value}).", raw.resource_type, raw.resource_id
                )

        if raw.resource_type in GUEST_TYPES and not raw.fields.get('node_name'):
            raise ResourceValidationError("Guest without owning node.", raw.resource_type, raw.resource_id)

    def _check_references(self, resource_type, records):
        """Every referenced Node must already be persisted."""
        if resource_type in GUEST_TYPES:
            wanted = {raw.fields.get('node_name') for raw in records}
        elif resource_type == 'storage':
            wanted = {name for raw in records for name in raw.fields.get('node_names', ())}
        else:
            return

        wanted.discard(None)
        if not wanted:
            return
        known = {name for (name,) in db.session.query(Node.name).filter(Node.name.in_(wanted))}
        missing = sorted(wanted - known)
        if missing:
            raise ReferentialIntegrityError(
                f"{resource_type} batch references unknown node(s): {', '.join(missing)}",
                resource_type,
            )

    # ------------------------------------
    # --- Upsert / Mark absent ---
    # ------------------------------------

    def upsert_batch(self, resource_type, records, observed_at=None, sync_run_id=None,
                     drift_ids=(), keep_config_ids=()):
        """
        Inserts or updates a discovery batch in a single transaction.

        ``drift_ids`` marks the history entries of out-of-band config changes;
        ``keep_config_ids`` skips config fields (drift policy 'flag').
        Returns {resource_id: Outcome}.
        """
        observed_at = observed_at or utcnow()
        model = model_for(resource_type)
        drift_ids = set(drift_ids)
        keep_config_ids = set(keep_config_ids)
        outcomes = {}

        with self.transaction():
            self._check_references(resource_type, records)
            for raw in records:
                outcomes[raw.resource_id] = self._upsert_one(
                    model, raw, observed_at, sync_run_id,
                    drift=raw.resource_id in drift_ids,
                    keep_config=raw.resource_id in keep_config_ids,
                )
        return outcomes

    def upsert(self, raw, observed_at=None, sync_run_id=None, drift=False):
        outcomes = self.upsert_batch(
            raw.resource_type, [raw], observed_at, sync_run_id,
            drift_ids=[raw.resource_id] if drift else (),
        )
        return outcomes[raw.resource_id]

    def _apply_fields(self, entity, fields):
        for key, value in fields.items():
            if key == 'node_names':
                entity.nodes = [db.session.get(Node, name) for name in sorted(set(value))]
            else:
                setattr(entity, key, value)

    def _upsert_one(self, model, raw, observed_at, sync_run_id, drift=False, keep_config=False):
        resource_id = coerce_resource_id(raw.resource_type, raw.resource_id)
        entity = db.session.get(model, resource_id)
        fields = dict(raw.fields)

        if entity is None:
            entity = model(**{model.ID_FIELD: resource_id})
            db.session.add(entity)
            self._apply_fields(entity, fields)
            entity.last_seen = observed_at
            db.session.flush()
            self.ledger.record(raw.resource_type, resource_id, ChangeKind.DISCOVERED,
                               entity.to_dict(), sync_run_id=sync_run_id)
            return Outcome.CREATED

        if entity.last_seen and observed_at < entity.last_seen:
            logger.debug(f"Ignoring stale observation of {raw.resource_type}:{resource_id}")
            return Outcome.STALE

        if keep_config:
            fields = {k: v for k, v in fields.items() if k not in model.CONFIG_FIELDS}

        before = entity.tracked_state()
        self._apply_fields(entity, fields)
        entity.last_seen = observed_at

        if entity.tracked_state() == before:
            return Outcome.UNCHANGED

        db.session.flush()
        self.ledger.record(raw.resource_type, resource_id, ChangeKind.UPDATED,
                           entity.to_dict(), drift=drift, sync_run_id=sync_run_id)
        return Outcome.UPDATED

    def mark_absent(self, resource_type, seen_ids, within_nodes=None, sync_run_id=None):
        """
        Moves resources missing from discovery to their absent status instead of
        deleting them. For guests ``within_nodes`` limits the candidates to the
        nodes whose inventory was actually read in this pass.
        Returns the ids that changed.
        """
        model = model_for(resource_type)
        id_column = getattr(model, model.ID_FIELD)
        seen = [coerce_resource_id(resource_type, i) for i in seen_ids]

        with self.transaction():
            query = model.query.filter(model.status != model.ABSENT_STATUS)
            if seen:
                query = query.filter(~id_column.in_(seen))
            if within_nodes is not None:
                column = model.node_name if resource_type in GUEST_TYPES else id_column
                query = query.filter(column.in_(list(within_nodes)))

            changed = []
            for entity in query.all():
                entity.status = model.ABSENT_STATUS
                db.session.flush()
                self.ledger.record(resource_type, entity.resource_id, ChangeKind.UPDATED,
                                   entity.to_dict(), sync_run_id=sync_run_id)
                changed.append(entity.resource_id)

        if changed:
            logger.info(f"Marked {len(changed)} {resource_type}(s) as {model.ABSENT_STATUS}: {changed}")
        return changed

    def mark_deleted(self, resource_type, resource_id, sync_run_id=None):
        """Target of a successful destroy operation: absent + 'deleted' entry."""
        model = model_for(resource_type)
        with self.transaction():
            entity = db.session.get(model, coerce_resource_id(resource_type, resource_id))
            if entity is None or entity.is_absent:
                return False
            entity.status = model.ABSENT_STATUS
            db.session.flush()
            self.ledger.record(resource_type, entity.resource_id, ChangeKind.DELETED,
                               entity.to_dict(), sync_run_id=sync_run_id)
        return True

    # ------------------------------------
    # --- Reads ---
    # ------------------------------------

    def get(self, resource_type, resource_id):
        model = model_for(resource_type)
        return db.session.get(model, coerce_resource_id(resource_type, resource_id))

    def list(self, resource_type, node=None, status=None, ids=None):
        model = model_for(resource_type)
        query = model.query

        if node is not None:
            if resource_type in GUEST_TYPES or resource_type == 'operation':
                query = query.filter(model.node_name == node)
            elif resource_type == 'storage':
                query = query.filter(model.nodes.any(Node.name == node))
            else:
                query = query.filter(model.name == node)

        if status is not None:
            statuses = [status] if isinstance(status, str) else list(status)
            query = query.filter(model.status.in_(statuses))

        if ids is not None:
            id_column = getattr(model, 'upid' if resource_type == 'operation' else model.ID_FIELD)
            query = query.filter(id_column.in_([coerce_resource_id(resource_type, i) for i in ids]))

        return query.all()

    def load(self, resource_type, within_nodes=None):
        """Persisted resources of one type keyed by id (Reconciler 'load' step)."""
        model = model_for(resource_type)
        query = model.query
        if within_nodes is not None and resource_type in GUEST_TYPES:
            query = query.filter(model.node_name.in_(list(within_nodes)))
        return {entity.resource_id: entity for entity in query.all()}

    # ------------------------------------
    # --- Operations ---
    # ------------------------------------

    def record_operations(self, handles, sync_run_id=None):
        if not handles:
            return []
        with self.transaction():
            self._check_operation_nodes(handles)
            rows = []
            for handle in handles:
                op = Operation(
                    upid=handle.upid,
                    node_name=handle.node,
                    kind=handle.kind,
                    resource_type=handle.resource_type,
                    resource_id=str(handle.resource_id),
                    status=OperationStatus.PENDING,
                    started_at=handle.started_at,
                    sync_run_id=sync_run_id,
                )
                op.parameters = handle.parameters
                db.session.add(op)
                db.session.flush()
                self.ledger.record('operation', op.upid, ChangeKind.CREATED, op.to_dict(),
                                   sync_run_id=sync_run_id)
                rows.append(op)
        return rows

    def _check_operation_nodes(self, handles):
        wanted = {h.node for h in handles}
        known = {name for (name,) in db.session.query(Node.name).filter(Node.name.in_(wanted))}
        missing = sorted(wanted - known)
        if missing:
            raise ReferentialIntegrityError(
                f"operation batch references unknown node(s): {', '.join(missing)}", 'operation'
            )

    def advance_operation(self, upid, status, exit_status=None):
        """
        Applies a forward-only status transition. Reverse or repeated transitions
        are ignored and reported as False.
        """
        with self.transaction():
            op = db.session.get(Operation, upid)
            if op is None:
                raise ReferentialIntegrityError(f"Unknown operation {upid}", 'operation', upid)
            if not OperationStatus.can_transition(op.status, status):
                logger.debug(f"Ignoring transition {op.status} -> {status} for {upid}")
                return False

            op.status = status
            if exit_status is not None:
                op.exit_status = exit_status
            if status in OperationStatus.TERMINAL:
                op.ended_at = utcnow()
            db.session.flush()
            self.ledger.record('operation', upid, ChangeKind.UPDATED, op.to_dict(),
                               sync_run_id=op.sync_run_id)
        return True

    def get_operation(self, upid):
        return db.session.get(Operation, upid)

    def in_flight_operations(self):
        return (Operation.query
                .filter(Operation.status.in_(OperationStatus.IN_FLIGHT))
                .order_by(Operation.started_at.asc())
                .all())

    def in_flight_targets(self):
        return {(op.resource_type, op.resource_id) for op in self.in_flight_operations()}

    # ------------------------------------
    # --- Sync runs ---
    # ------------------------------------

    def start_run(self, scope):
        with self.transaction():
            run = SyncRun(scope=scope.key, status=SyncRunStatus.RUNNING, started_at=utcnow())
            db.session.add(run)
            db.session.flush()
            run_id = run.id
        return run_id

    def finish_run(self, run_id, result, status):
        with self.transaction():
            run = db.session.get(SyncRun, run_id)
            if run is None:
                return
            run.status = status
            run.finished_at = utcnow()
            run.elapsed_seconds = result.elapsed
            run.created = result.created
            run.updated = result.updated
            run.absent = result.absent
            run.unchanged = result.unchanged
            run.failed = result.failed
            run.failures_json = json.dumps([f.to_dict() for f in result.failures], default=str)

    def latest_run(self):
        return SyncRun.query.order_by(SyncRun.started_at.desc()).first()

    def counts(self):
        return {resource_type: model_for(resource_type).query.count()
                for resource_type in ('node', 'vm', 'container', 'storage', 'operation')}
