import logging
import time
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)

HEALTHY = 'healthy'
UNHEALTHY = 'unhealthy'


class HealthCheckProvider(ABC):
    """
    One dependency the engine cannot sync without (the State Store, the cluster).

    Subclasses set ``name`` and ``category`` and implement ``check()``, which
    returns the details worth publishing or raises when the dependency is down.
    """

    name = None
    category = None

    @abstractmethod
    def check(self):
        ...

    def run(self):
        """Returns the report of one check, never raises."""
        report = {'name': self.name, 'category': self.category}
        started = time.perf_counter()
        try:
            details = self.check()
        except Exception as e:
            logger.warning(f"Health check '{self.name}' failed: {e}")
            report.update(status=UNHEALTHY, error=str(e), error_type=type(e).__name__)
        else:
            report.update(status=HEALTHY, details=details or {})
        report['latency_ms'] = round((time.perf_counter() - started) * 1000, 2)
        return report
