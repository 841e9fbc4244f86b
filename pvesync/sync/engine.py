import logging
import threading
import time

from pvesync.errors import OperationFailedError, OperationTimeoutError
from pvesync.models import OperationStatus, SyncRunStatus, model_for
from pvesync.sync.diagnostics import LoggingCollector
from pvesync.sync.ledger import HistoryLedger
from pvesync.sync.lock import SyncLockRegistry
from pvesync.sync.reconciler import Reconciler
from pvesync.sync.retry import RetryPolicy
from pvesync.sync.store import StateStore
from pvesync.sync.tracker import OperationTracker
from pvesync.sync.types import DeclaredTarget, SyncResult, SyncScope

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Facade exposed to the API and CLI.

    Follows the Flask extension pattern: the instance lives in
    ``pvesync.extensions`` and is bound to the app (and its Resource Client)
    by ``init_app``.
    """

    def __init__(self, app=None, client=None, collector=None):
        self.app = None
        self.client = client
        self.collector = collector or LoggingCollector()
        # run_id -> cancel event of each active run
        self._runs = {}
        self._runs_lock = threading.Lock()
        self.ledger = HistoryLedger()
        self.store = StateStore(self.ledger)
        self.locks = None
        self.tracker = None
        self.reconciler = None
        if app is not None:
            self.init_app(app, client)

    def init_app(self, app, client=None, collector=None):
        self.app = app
        if client is not None:
            self.client = client
        if collector is not None:
            self.collector = collector
        if self.client is None:
            raise RuntimeError("SyncEngine needs a Resource Client.")

        config = app.config
        self.locks = SyncLockRegistry(
            mode=config.get('SYNC_LOCK_MODE', 'wait'),
            timeout=float(config.get('SYNC_LOCK_TIMEOUT', 60)),
        )
        self.tracker = OperationTracker.from_config(
            self.store, self.client, self.collector, config, app=app,
        )
        self.reconciler = Reconciler(
            self.store, self.client, self.tracker, self.collector,
            retry_policy=RetryPolicy.from_config(config),
            drift_policy=config.get('SYNC_DRIFT_POLICY', 'remote_wins'),
            workers=int(config.get('SYNC_MUTATION_WORKERS', 4)),
        )
        app.extensions['pvesync'] = self

    def _ensure_ready(self):
        if self.reconciler is None:
            raise RuntimeError("SyncEngine not initialised. Call init_app(app) first.")

    # ------------------------------------
    # --- Runs ---
    # ------------------------------------

    def run_sync(self, scope=None, declared=None, wait=False, resolutions=None, wait_timeout=None):
        """
        Executes one synchronization run and returns its SyncResult.

        ``declared`` may be a DeclaredTarget or a list of dicts. With
        ``wait=True`` the call also blocks until every dispatched Operation
        reaches a terminal status (or ``wait_timeout`` elapses).
        """
        self._ensure_ready()
        scope = scope or SyncScope()
        if declared is not None and not isinstance(declared, DeclaredTarget):
            declared = DeclaredTarget.from_list(declared)

        started = time.monotonic()
        cancel_event = threading.Event()

        with self.locks.hold(scope):
            run_id = self.store.start_run(scope)
            with self._runs_lock:
                self._runs[run_id] = cancel_event
            logger.info(f"Sync run {run_id} started ({scope.key})")
            try:
                result, tracked = self.reconciler.run(scope, declared, resolutions, run_id,
                                                        cancel_event=cancel_event)
            except Exception as e:
                failed = SyncResult(run_id=run_id, scope=scope, elapsed=time.monotonic() - started)
                failed.add_failure(e)
                self.store.finish_run(run_id, failed, SyncRunStatus.FAILED)
                logger.error(f"Sync run {run_id} aborted: {e}")
                self.collector.event('sync.aborted', run_id=run_id, error=str(e))
                self._forget_run(run_id)
                raise

        try:
            if wait:
                self.tracker.wait([future for _, future in tracked.values()], timeout=wait_timeout)
            self._collect_operations(tracked, result)
            result.cancelled = cancel_event.is_set()
        finally:
            self._forget_run(run_id)

        result.elapsed = time.monotonic() - started
        if result.cancelled:
            status = SyncRunStatus.CANCELLED
        elif result.failures:
            status = SyncRunStatus.PARTIAL
        else:
            status = SyncRunStatus.COMPLETED
        self.store.finish_run(run_id, result, status)

        self.collector.timing('sync.run', result.elapsed)
        self.collector.event('sync.finished', run_id=run_id, status=status,
                             created=result.created, updated=result.updated,
                             absent=result.absent, failed=result.failed)
        logger.info(
            f"Sync run {run_id} {status} in {result.elapsed:.2f}s: "
            f"created={result.created} updated={result.updated} absent={result.absent} "
            f"failed={result.failed} pending={len(result.pending)}"
        )
        return result

    def _forget_run(self, run_id):
        with self._runs_lock:
            self._runs.pop(run_id, None)

    def _collect_operations(self, tracked, result):
        """
        Sorts the run's Operations into completed and pending. A failed or
        unknown Operation is also reported as a failure of its target.
        """
        for handle, future in tracked.values():
            if future is None or not future.done():
                result.pending.append(handle)
                continue
            try:
                status = future.result()
            except Exception as e:
                logger.error(f"Tracking of {handle.upid} crashed: {e}")
                status = OperationStatus.UNKNOWN
            if status is None:
                # Stopped by a cancel before a terminal status
                result.pending.append(handle)
                continue

            handle.status = status
            result.completed.append(handle)
            if status == OperationStatus.FAILED:
                result.add_failure(OperationFailedError(
                    f"{handle.kind} {handle.upid} failed: {handle.exit_status}",
                    handle.resource_type, handle.resource_id,
                ), handle.resource_type, handle.resource_id)
            elif status == OperationStatus.UNKNOWN:
                result.add_failure(OperationTimeoutError(
                    f"{handle.kind} {handle.upid} did not reach a terminal status",
                    handle.resource_type, handle.resource_id,
                ), handle.resource_type, handle.resource_id)

    def cancel(self):
        """
        Cancels every active run: no new mutation is dispatched and their
        polls stop. Remote operations already started keep running, and the
        next run covering them resumes their tracking.
        """
        with self._runs_lock:
            events = list(self._runs.values())
        logger.info(f"Sync cancellation requested ({len(events)} active run(s))")
        for cancel_event in events:
            cancel_event.set()

    def shutdown(self, wait=True):
        self.cancel()
        if self.tracker is not None:
            self.tracker.shutdown(wait=wait)

    # ------------------------------------
    # --- Queries ---
    # ------------------------------------

    def get_current_state(self, resource_type, node=None, status=None, ids=None):
        return self.store.list(resource_type, node=node, status=status, ids=ids)

    def get_history(self, resource_type, resource_id, since=None, until=None):
        model_for(resource_type)
        return self.ledger.query(resource_type, resource_id, since=since, until=until)

    def get_in_flight_operations(self):
        return self.store.in_flight_operations()

    def get_sync_stats(self):
        latest = self.store.latest_run()
        return {
            'last_run': latest.to_dict() if latest else None,
            'last_sync_time': latest.finished_at.isoformat() if latest and latest.finished_at else None,
            'resources': self.store.counts(),
            'in_flight': len(self.store.in_flight_operations()),
        }
