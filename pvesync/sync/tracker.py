import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures

from pvesync.errors import OperationFailedError, OperationTimeoutError, classify_remote_error
from pvesync.models import OperationStatus
from pvesync.sync.retry import Backoff, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)


class OperationTracker:
    """
    Polls remote Operations to a terminal status, each on its own worker.

    State machine: pending -> running -> succeeded | failed, with 'unknown'
    once the poll failure budget or the timeout is exhausted. A terminal
    status updates the Operation, then re-fetches and upserts the target.
    """

    def __init__(self, store, client, collector, app=None,
                 backoff=None, max_failures=5, timeout=300.0, workers=8, retry_policy=None):
        self.store = store
        self.client = client
        self.collector = collector
        self.app = app
        self.backoff = backoff or Backoff(1.0, 15.0)
        self.max_failures = max_failures
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.workers = workers
        self._executor = None
        # upid -> cancel event of the run that asked for it
        self._tracking = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, store, client, collector, config, app=None):
        return cls(
            store, client, collector,
            app=app,
            backoff=Backoff(
                float(config.get('SYNC_POLL_INITIAL_INTERVAL', 1)),
                float(config.get('SYNC_POLL_MAX_INTERVAL', 15)),
                float(config.get('SYNC_POLL_BACKOFF', 2.0)),
            ),
            max_failures=int(config.get('SYNC_POLL_MAX_FAILURES', 5)),
            timeout=float(config.get('SYNC_OPERATION_TIMEOUT', 300)),
            workers=int(config.get('SYNC_TRACKER_WORKERS', 8)),
            retry_policy=RetryPolicy.from_config(config),
        )

    # ------------------------------------
    # --- Scheduling ---
    # ------------------------------------

    def track(self, handle, sync_run_id=None, cancel_event=None):
        """
        Schedules tracking of one handle. Returns its Future, or None when
        ``cancel_event`` is already set or the handle is already tracked.
        """
        cancel_event = cancel_event or threading.Event()
        if cancel_event.is_set():
            logger.info(f"Not tracking {handle.upid}: run cancelled")
            return None
        with self._lock:
            if handle.upid in self._tracking:
                return None
            # Recreated lazily after shutdown()
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.workers,
                                                    thread_name_prefix='pvesync-tracker')
            self._tracking[handle.upid] = cancel_event
            future = self._executor.submit(self._run, handle, sync_run_id, cancel_event)
        future.add_done_callback(lambda _: self._untrack(handle.upid))
        return future

    def _untrack(self, upid):
        with self._lock:
            self._tracking.pop(upid, None)

    def is_tracking(self, upid):
        with self._lock:
            return upid in self._tracking

    def wait(self, futures, timeout=None):
        futures = [f for f in futures if f is not None]
        if futures:
            wait_futures(futures, timeout=timeout)

    def shutdown(self, wait=True):
        """Stops every poll loop after its current poll. Remote tasks keep running."""
        with self._lock:
            executor, self._executor = self._executor, None
            for cancel_event in self._tracking.values():
                cancel_event.set()
        if executor is not None:
            executor.shutdown(wait=wait)

    def _run(self, handle, sync_run_id, cancel_event):
        try:
            if self.app is None:
                return self._track(handle, sync_run_id, cancel_event)
            with self.app.app_context():
                try:
                    return self._track(handle, sync_run_id, cancel_event)
                finally:
                    self.store.release_session()
        except Exception:
            logger.exception(f"Tracking of {handle.upid} crashed")
            raise

    # ------------------------------------
    # --- Poll loop ---
    # ------------------------------------

    def _track(self, handle, sync_run_id, cancel_event):
        if handle.completed:
            status = OperationStatus.SUCCEEDED if handle.exit_status in (None, 'OK') else OperationStatus.FAILED
            return self._finish(handle, status, handle.exit_status or 'OK', sync_run_id, cancel_event)

        started = time.monotonic()
        delays = self.backoff.delays()
        failures = 0
        running = False

        while True:
            if cancel_event.is_set():
                logger.info(f"Stopped tracking {handle.upid}: run cancelled")
                return None

            try:
                remote = self.client.poll_operation(handle)
            except Exception as exc:
                error = classify_remote_error(exc, handle.resource_type, handle.resource_id)
                failures += 1
                self.collector.increment('tracker.poll_failures', kind=error.kind)
                logger.warning(f"Poll of {handle.upid} failed ({failures}/{self.max_failures}): {error}")
                if not error.retryable or failures >= self.max_failures:
                    return self._finish(handle, OperationStatus.UNKNOWN,
                                        f"polling abandoned: {error}", sync_run_id, cancel_event)
            else:
                failures = 0
                if remote.ok:
                    return self._finish(handle, OperationStatus.SUCCEEDED, remote.exit_status,
                                        sync_run_id, cancel_event)
                if remote.finished:
                    error = OperationFailedError(
                        f"Operation {handle.upid} exited with: {remote.exit_status}",
                        handle.resource_type, handle.resource_id,
                    )
                    logger.error(str(error))
                    self.collector.increment('tracker.remote_failures', kind=error.kind)
                    return self._finish(handle, OperationStatus.FAILED, remote.exit_status,
                                        sync_run_id, cancel_event)
                if not running:
                    self._transition(handle, OperationStatus.RUNNING)
                    running = True

            if time.monotonic() - started >= self.timeout:
                error = OperationTimeoutError(
                    f"Operation {handle.upid} not finished after {self.timeout}s",
                    handle.resource_type, handle.resource_id,
                )
                logger.error(str(error))
                return self._finish(handle, OperationStatus.UNKNOWN, str(error), sync_run_id, cancel_event)

            # Returns early when the run is cancelled
            if cancel_event.wait(next(delays)):
                logger.info(f"Stopped tracking {handle.upid}: run cancelled")
                return None

    def _transition(self, handle, status, exit_status=None):
        changed = self.store.advance_operation(handle.upid, status, exit_status)
        if changed:
            self.collector.event('operation.transition', upid=handle.upid, status=status)
        return changed

    def _finish(self, handle, status, exit_status, sync_run_id, cancel_event):
        self._transition(handle, status, exit_status)
        handle.exit_status = exit_status
        self.collector.increment(f'tracker.{status}')
        logger.info(f"Operation {handle.kind} on {handle.resource_type}:{handle.resource_id} "
                    f"finished as {status} ({exit_status})")

        # 'unknown' leaves the target in its last known state
        if status != OperationStatus.UNKNOWN:
            self._refresh_target(handle, status, sync_run_id, cancel_event)
        return status

    def _refresh_target(self, handle, status, sync_run_id, cancel_event):
        try:
            raw = call_with_retries(
                lambda: self.client.fetch(handle.resource_type, handle.resource_id),
                self.retry_policy, handle.resource_type, handle.resource_id, cancel_event,
            )
        except Exception as exc:
            logger.warning(f"Could not refresh {handle.resource_type}:{handle.resource_id} "
                           f"after {handle.upid}: {exc}")
            return

        if raw is None:
            if handle.kind == 'destroy' and status == OperationStatus.SUCCEEDED:
                self.store.mark_deleted(handle.resource_type, handle.resource_id, sync_run_id)
            else:
                logger.warning(f"{handle.resource_type}:{handle.resource_id} not found after {handle.upid}")
            return

        self.store.upsert(raw, sync_run_id=sync_run_id)
