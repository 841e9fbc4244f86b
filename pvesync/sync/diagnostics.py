"""
Diagnostics collectors.

The engine receives a collector instance at construction time instead of
reaching for a process-wide registry, so a fake can be passed in tests.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter

logger = logging.getLogger(__name__)


class DiagnosticsCollector(ABC):
    """Interface for counters, timings and structured events."""

    @abstractmethod
    def increment(self, metric, amount=1, **tags):
        pass

    @abstractmethod
    def timing(self, metric, seconds, **tags):
        pass

    @abstractmethod
    def event(self, name, **fields):
        pass


class LoggingCollector(DiagnosticsCollector):
    """Default collector: writes everything to the module logger at DEBUG."""

    def increment(self, metric, amount=1, **tags):
        logger.debug(f"metric {metric} +{amount} {tags}")

    def timing(self, metric, seconds, **tags):
        logger.debug(f"timing {metric} {seconds * 1000:.1f}ms {tags}")

    def event(self, name, **fields):
        logger.debug(f"event {name} {fields}")


class InMemoryCollector(DiagnosticsCollector):
    """Keeps everything in memory. Used by tests and the health endpoint."""

    def __init__(self):
        self._lock = threading.Lock()
        self.counters = Counter()
        self.timings = {}
        self.events = []

    def increment(self, metric, amount=1, **tags):
        with self._lock:
            self.counters[metric] += amount

    def timing(self, metric, seconds, **tags):
        with self._lock:
            self.timings.setdefault(metric, []).append(seconds)

    def event(self, name, **fields):
        with self._lock:
            self.events.append((name, fields))

    def events_named(self, name):
        with self._lock:
            return [fields for event_name, fields in self.events if event_name == name]
