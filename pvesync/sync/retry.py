import logging
import threading
from dataclasses import dataclass

from pvesync.errors import classify_remote_error

logger = logging.getLogger(__name__)


@dataclass
class Backoff:
    """Exponential delay sequence capped at ``maximum``."""
    initial: float
    maximum: float
    factor: float = 2.0

    def delays(self):
        delay = self.initial
        while True:
            yield min(delay, self.maximum)
            delay = min(delay * self.factor, self.maximum) if delay else self.maximum


@dataclass
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    @classmethod
    def from_config(cls, config):
        return cls(
            attempts=max(1, int(config.get('SYNC_REMOTE_RETRIES', 3))),
            base_delay=float(config.get('SYNC_RETRY_BASE_DELAY', 0.5)),
            max_delay=float(config.get('SYNC_RETRY_MAX_DELAY', 8.0)),
        )

    def backoff(self):
        return Backoff(self.base_delay, self.max_delay)


def call_with_retries(func, policy, resource_type=None, resource_id=None, cancel_event=None):
    """
    Calls ``func`` and retries transient remote failures with exponential backoff.

    Every failure is classified first; terminal errors surface immediately and
    the last transient error is raised once the attempts are exhausted.
    """
    cancel_event = cancel_event or threading.Event()
    delays = policy.backoff().delays()

    for attempt in range(1, policy.attempts + 1):
        try:
            return func()
        except Exception as exc:
            error = classify_remote_error(exc, resource_type, resource_id)
            if not error.retryable or attempt == policy.attempts:
                raise error from exc

            delay = next(delays)
            logger.warning(
                f"Transient failure on {resource_type}:{resource_id} "
                f"(attempt {attempt}/{policy.attempts}), retrying in {delay:.2f}s: {error}"
            )
            # A cancelled run stops retrying and reports the last error
            if cancel_event.wait(delay):
                raise error from exc
