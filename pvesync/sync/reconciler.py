import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from pvesync.errors import (
    ConflictError, RemoteValidationError, ReferentialIntegrityError, SyncError,
    classify_remote_error,
)
from pvesync.models import GUEST_TYPES, NodeStatus, utcnow
from pvesync.sync.detector import ConflictDetector, Kind
from pvesync.sync.retry import RetryPolicy, call_with_retries
from pvesync.sync.store import Outcome
from pvesync.sync.types import DeclaredTarget, OperationHandle, SyncFailure, SyncResult

logger = logging.getLogger(__name__)

DRIFT_POLICIES = ('remote_wins', 'flag')


@dataclass
class MutationPlan:
    """Ordered actions for one resource, dispatched back to back."""
    target: Any
    actions: list = field(default_factory=list)


@dataclass
class Discovery:
    records: dict = field(default_factory=dict)
    # Nodes whose guests were listed successfully, per guest type
    enumerated: dict = field(default_factory=dict)
    storage_ok: bool = False


def plan_actions(classification, declared):
    """Translates declared mismatches into mutation calls (configure, resize, then power)."""
    if classification.destroy:
        return [('destroy', {'purge': 1})]

    mismatches = classification.mismatches
    actions = []
    config = {k: mismatches[k] for k in ('name', 'cores', 'memory_bytes') if k in mismatches}
    if config:
        actions.append(('configure', config))
    if 'disk_bytes' in mismatches:
        actions.append(('resize', {'disk': declared.disk, 'size_bytes': mismatches['disk_bytes']}))
    if 'status' in mismatches:
        actions.append(('start' if mismatches['status'] == 'running' else 'stop', {}))
    return actions


class Reconciler:
    """
    One synchronization pass: discover, load, diff, act, commit.

    Per-resource failures are collected into the SyncResult; only a failure to
    enumerate the nodes (the Resource Client is unreachable) aborts the pass.
    """

    def __init__(self, store, client, tracker, collector, detector=None, retry_policy=None,
                 drift_policy='remote_wins', workers=4):
        if drift_policy not in DRIFT_POLICIES:
            raise ValueError(f"Invalid drift policy '{drift_policy}', expected one of {DRIFT_POLICIES}")
        self.store = store
        self.client = client
        self.tracker = tracker
        self.collector = collector
        self.detector = detector or ConflictDetector()
        self.retry_policy = retry_policy or RetryPolicy()
        self.drift_policy = drift_policy
        self.workers = workers

    def _remote(self, func, resource_type, resource_id=None, cancel_event=None):
        return call_with_retries(func, self.retry_policy, resource_type, resource_id, cancel_event)

    # ------------------------------------
    # --- Run ---
    # ------------------------------------

    def run(self, scope, declared=None, resolutions=None, sync_run_id=None, cancel_event=None):
        """
        Returns (SyncResult, {upid: (OperationHandle, Future or None)}).

        ``cancel_event`` belongs to this run: once set, no further mutation
        is dispatched and the Operations started here stop being polled.
        """
        declared = declared or DeclaredTarget()
        resolutions = resolutions or {}
        cancel_event = cancel_event or threading.Event()
        result = SyncResult(run_id=sync_run_id, scope=scope)
        observed_at = utcnow()

        # Targets busy at the start stay untouched even if their Operation ends mid-run
        busy = self.store.in_flight_targets()
        tracked = self._resume_operations(scope, sync_run_id, cancel_event)

        discovery = self._discover(scope, result, cancel_event)

        batches, plans, drift_ids, keep_config_ids = {}, [], {}, {}
        for resource_type in scope.types:
            batch, type_plans, drifted, kept = self._diff(
                resource_type, discovery, declared, resolutions, result, busy
            )
            batches[resource_type] = batch
            plans.extend(type_plans)
            drift_ids[resource_type] = drifted
            keep_config_ids[resource_type] = kept

        self._check_missing_targets(scope, declared, discovery, result)

        handles = self._act(plans, result, cancel_event)

        for resource_type in scope.types:
            self._commit(resource_type, batches[resource_type], discovery, scope, result, observed_at,
                         sync_run_id, drift_ids[resource_type], keep_config_ids[resource_type])

        tracked.update(self._persist_and_track(handles, sync_run_id, result, cancel_event))
        return result, tracked

    # ------------------------------------
    # --- Discover ---
    # ------------------------------------

    def _discover(self, scope, result, cancel_event=None):
        discovery = Discovery()

        # Nodes are always read: guests are enumerated per online node.
        # Failure here is run-level and propagates.
        started = time.monotonic()
        nodes = self._remote(lambda: self.client.discover('node', scope), 'node', cancel_event=cancel_event)
        nodes = [raw for raw in nodes if scope.includes_node(raw.resource_id)]
        discovery.records['node'] = nodes
        self.collector.timing('discover.node', time.monotonic() - started)
        logger.info(f"Discovered {len(nodes)} node(s)")

        online = [raw.resource_id for raw in nodes if raw.fields.get('status') == NodeStatus.ONLINE]

        for resource_type in GUEST_TYPES:
            if not scope.includes_type(resource_type):
                continue
            records, enumerated = [], set()
            for node in online:
                try:
                    found = self._remote(
                        lambda node=node: self.client.discover(resource_type, scope.for_node(node)),
                        resource_type, node, cancel_event,
                    )
                except SyncError as e:
                    logger.warning(f"Could not list {resource_type}s on node {node}: {e}")
                    result.add_failure(e, resource_type, node)
                    continue
                records.extend(found)
                enumerated.add(node)
            discovery.records[resource_type] = records
            discovery.enumerated[resource_type] = enumerated
            logger.info(f"Discovered {len(records)} {resource_type}(s) on {len(enumerated)} node(s)")

        if scope.includes_type('storage'):
            try:
                discovery.records['storage'] = self._remote(
                    lambda: self.client.discover('storage', scope), 'storage', cancel_event=cancel_event
                )
                discovery.storage_ok = True
            except SyncError as e:
                logger.warning(f"Could not list storage: {e}")
                result.add_failure(e, 'storage', '*')
                discovery.records['storage'] = []

        return discovery

    # ------------------------------------
    # --- Load + Diff ---
    # ------------------------------------

    def _valid_records(self, resource_type, records, result):
        unique = {}
        for raw in records:
            try:
                self.store.validate(raw)
            except SyncError as e:
                result.add_failure(e, resource_type, raw.resource_id)
                continue
            # Same id reported twice (e.g. mid-migration): last observation wins
            unique[raw.resource_id] = raw
        return list(unique.values())

    def _lookup_resolution(self, resolutions, resource_type, resource_id):
        return resolutions.get((resource_type, resource_id), resolutions.get((resource_type, str(resource_id))))

    def _diff(self, resource_type, discovery, declared, resolutions, result, busy=frozenset()):
        records = self._valid_records(resource_type, discovery.records.get(resource_type, []), result)
        local = self.store.load(resource_type)
        in_flight = set(busy) | self.store.in_flight_targets()

        batch, plans, drifted, kept = [], [], set(), set()
        for raw in records:
            target = declared.get(resource_type, raw.resource_id) if resource_type in GUEST_TYPES else None
            classification = self.detector.classify(
                raw, local.get(raw.resource_id), target,
                resolution=self._lookup_resolution(resolutions, resource_type, raw.resource_id),
            )
            self.collector.increment(f'classified.{classification.kind}', resource_type=resource_type)

            if classification.kind == Kind.AMBIGUOUS:
                error = ConflictError(
                    f"Remote and declared values both changed for {classification.conflicts}",
                    resource_type, raw.resource_id, fields=classification.conflicts,
                )
                logger.warning(str(error))
                result.conflicts.append(SyncFailure.from_error(error))
                result.add_failure(error)
                continue

            if classification.drift:
                result.drifted.append((resource_type, raw.resource_id))
                if self.drift_policy == 'flag':
                    kept.add(raw.resource_id)
                else:
                    drifted.add(raw.resource_id)

            if classification.needs_mutation:
                if (resource_type, str(raw.resource_id)) in in_flight:
                    logger.info(f"Skipping {resource_type}:{raw.resource_id}: an operation is already in flight")
                else:
                    plans.append(MutationPlan(raw, plan_actions(classification, target)))

            batch.append(raw)

        return batch, plans, drifted, kept

    def _check_missing_targets(self, scope, declared, discovery, result):
        """Declared resources that discovery could not find (guest creation is not supported)."""
        for target in declared:
            if not scope.includes_type(target.resource_type) or not target.present:
                continue
            seen = {raw.resource_id for raw in discovery.records.get(target.resource_type, [])}
            if target.resource_id in seen:
                continue
            local = self.store.get(target.resource_type, target.resource_id)
            if local is None and scope.nodes is not None:
                continue
            if local is not None and local.node_name not in discovery.enumerated.get(target.resource_type, ()):
                # Its node was not listed in this pass
                continue
            result.add_failure(RemoteValidationError(
                f"Declared {target.resource_type} {target.resource_id} does not exist remotely",
                target.resource_type, target.resource_id,
            ))

    # ------------------------------------
    # --- Act ---
    # ------------------------------------

    def _apply_plan(self, plan, cancel_event):
        target = plan.target
        handles = []
        for kind, parameters in plan.actions:
            if cancel_event.is_set():
                logger.info(f"Cancelled before {kind} on {target.resource_type}:{target.resource_id}")
                break
            try:
                handle = self._remote(
                    lambda kind=kind, parameters=parameters: self.client.mutate(kind, target, parameters),
                    target.resource_type, target.resource_id, cancel_event,
                )
            except SyncError as e:
                logger.error(f"{kind} on {target.resource_type}:{target.resource_id} failed: {e}")
                return handles, e
            logger.info(f"Dispatched {kind} on {target.resource_type}:{target.resource_id} ({handle.upid})")
            self.collector.increment('mutations.dispatched', kind=kind)
            handles.append(handle)
        return handles, None

    def _act(self, plans, result, cancel_event):
        if not plans:
            return []

        handles = []
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='pvesync-mutate') as pool:
            futures = [(plan, pool.submit(self._apply_plan, plan, cancel_event)) for plan in plans]
            for plan, future in futures:
                try:
                    dispatched, error = future.result()
                except Exception as exc:
                    dispatched = []
                    error = classify_remote_error(exc, plan.target.resource_type, plan.target.resource_id)
                handles.extend(dispatched)
                if error is not None:
                    result.add_failure(error, plan.target.resource_type, plan.target.resource_id)
        return handles

    # ------------------------------------
    # --- Commit ---
    # ------------------------------------

    def _upsert(self, resource_type, batch, discovery, observed_at, sync_run_id, drift_ids, keep_config_ids):
        try:
            return self.store.upsert_batch(resource_type, batch, observed_at, sync_run_id,
                                           drift_ids=drift_ids, keep_config_ids=keep_config_ids)
        except ReferentialIntegrityError as e:
            logger.warning(f"{e}; applying node batch first and retrying")

        self.store.upsert_batch('node', discovery.records.get('node', []), observed_at, sync_run_id)
        return self.store.upsert_batch(resource_type, batch, observed_at, sync_run_id,
                                       drift_ids=drift_ids, keep_config_ids=keep_config_ids)

    def _commit(self, resource_type, batch, discovery, scope, result, observed_at,
                sync_run_id, drift_ids, keep_config_ids):
        counts = result.counts_for(resource_type)
        try:
            outcomes = self._upsert(resource_type, batch, discovery, observed_at,
                                    sync_run_id, drift_ids, keep_config_ids)
        except SyncError as e:
            logger.error(f"Commit of {resource_type} batch aborted: {e}")
            result.add_failure(e, resource_type, '*')
            return

        for outcome in outcomes.values():
            if outcome == Outcome.CREATED:
                counts.created += 1
            elif outcome == Outcome.UPDATED:
                counts.updated += 1
            else:
                counts.unchanged += 1

        seen = [raw.resource_id for raw in discovery.records.get(resource_type, [])]
        if resource_type == 'node':
            within = scope.nodes
        elif resource_type in GUEST_TYPES:
            within = discovery.enumerated.get(resource_type, set())
        else:
            # Storage is cluster-wide: only a complete listing can prove absence
            if scope.nodes is not None or not discovery.storage_ok:
                return
            within = None

        if within is not None and not within:
            return
        try:
            counts.absent += len(self.store.mark_absent(resource_type, seen, within, sync_run_id))
        except SyncError as e:
            result.add_failure(e, resource_type, '*')

        logger.info(f"Committed {resource_type}: {counts}")

    # ------------------------------------
    # --- Persist + Track ---
    # ------------------------------------

    def _persist_and_track(self, handles, sync_run_id, result, cancel_event):
        if not handles:
            return {}
        try:
            self.store.record_operations(handles, sync_run_id)
        except SyncError as e:
            logger.error(f"Could not persist {len(handles)} operation(s): {e}")
            for handle in handles:
                result.add_failure(e, handle.resource_type, handle.resource_id)
            return {}
        return {handle.upid: (handle, self.tracker.track(handle, sync_run_id, cancel_event))
                for handle in handles}

    def _resume_operations(self, scope, sync_run_id, cancel_event):
        """
        Picks up in-flight Operations persisted by an earlier run that nothing
        in this process polls any more (cancelled, shut down or restarted).
        """
        resumed = {}
        for op in self.store.in_flight_operations():
            if not scope.includes_node(op.node_name) or not scope.includes_type(op.resource_type):
                continue
            if self.tracker.is_tracking(op.upid):
                continue
            handle = OperationHandle.from_operation(op)
            future = self.tracker.track(handle, sync_run_id, cancel_event)
            if future is not None:
                logger.info(f"Resumed tracking of {op.kind} on {op.resource_type}:{op.resource_id} ({op.upid})")
                self.collector.increment('tracker.resumed', kind=op.kind)
                resumed[op.upid] = (handle, future)
        return resumed
