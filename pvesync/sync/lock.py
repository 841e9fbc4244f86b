import logging
import threading
import time
from contextlib import contextmanager

from pvesync.errors import SyncInProgressError

logger = logging.getLogger(__name__)


class SyncLockRegistry:
    """
    Run-level lock keyed by scope. Two scopes conflict when they share at
    least one node (or one of them covers the whole cluster) and at least one
    resource type.

    mode='wait' blocks up to ``timeout`` seconds for the conflicting run to
    finish; mode='fail' raises SyncInProgressError immediately.
    """

    MODES = ('wait', 'fail')

    def __init__(self, mode='wait', timeout=60.0):
        if mode not in self.MODES:
            raise ValueError(f"Invalid lock mode '{mode}', expected one of {self.MODES}")
        self.mode = mode
        self.timeout = timeout
        self._cond = threading.Condition()
        self._held = []

    def _conflicting(self, scope):
        return [held for held in self._held if held.overlaps(scope)]

    def acquire(self, scope):
        with self._cond:
            if self._conflicting(scope) and self.mode == 'fail':
                raise SyncInProgressError(f"Sync already in progress for an overlapping scope ({scope.key})")

            deadline = time.monotonic() + self.timeout
            while self._conflicting(scope):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise SyncInProgressError(
                        f"Timed out after {self.timeout}s waiting for the sync lock ({scope.key})"
                    )
                logger.info(f"Waiting for sync lock on {scope.key}")
                self._cond.wait(remaining)

            self._held.append(scope)
            logger.debug(f"Sync lock acquired: {scope.key}")

    def release(self, scope):
        with self._cond:
            try:
                self._held.remove(scope)
            except ValueError:
                return
            self._cond.notify_all()
            logger.debug(f"Sync lock released: {scope.key}")

    @contextmanager
    def hold(self, scope):
        self.acquire(scope)
        try:
            yield scope
        finally:
            self.release(scope)

    def is_locked(self, scope=None):
        with self._cond:
            if scope is None:
                return bool(self._held)
            return bool(self._conflicting(scope))
