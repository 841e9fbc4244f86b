import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pvesync.sync.types import Resolution

logger = logging.getLogger(__name__)


class Kind:
    """Classification of a resource seen both remotely and locally."""
    UNCHANGED = 'unchanged'
    # Tracked fields differ but the configuration digest does not (status, node...)
    CHANGED = 'changed'
    # Configuration digest changed out-of-band
    DRIFTED = 'drifted'
    DECLARED_MISMATCH = 'declared_mismatch'
    AMBIGUOUS = 'ambiguous'


@dataclass
class Classification:
    kind: str
    resource_type: str
    resource_id: Any
    # Remote configuration moved away from the local record
    drift: bool = False
    # field -> declared value the remote must be brought to
    mismatches: dict = field(default_factory=dict)
    # Fields where remote and declared both moved away from the baseline
    conflicts: list = field(default_factory=list)
    destroy: bool = False

    @property
    def needs_mutation(self):
        return bool(self.mismatches) or self.destroy


def _baseline(local, remote, name):
    """Last known-good value: the local record, or the remote value for a new resource."""
    if local is None:
        return remote.fields.get(name)
    return getattr(local, name, None)


class ConflictDetector:
    """
    Three-way comparison between the remote observation, the local record and
    an optional declared target.

    Per declared field, with d=declared, r=remote, b=baseline:
      r == d            -> satisfied
      r == b            -> declared changed, remote did not: mutate
      d == b            -> remote changed, declared did not: remote wins
      otherwise         -> both moved: ambiguous, needs a resolution
    """

    def classify(self, remote, local=None, declared=None, resolution=None):
        resource_type, resource_id = remote.resource_type, remote.resource_id
        drift = self._has_drift(remote, local)

        if declared is not None and not declared.present:
            return Classification(Kind.DECLARED_MISMATCH, resource_type, resource_id,
                                  drift=drift, destroy=True)

        mismatches, conflicts = {}, []
        if declared is not None:
            for name, wanted in declared.desired.items():
                current = remote.fields.get(name)
                if current == wanted:
                    continue
                baseline = _baseline(local, remote, name)
                if current == baseline:
                    mismatches[name] = wanted
                elif wanted == baseline:
                    logger.debug(f"{resource_type}:{resource_id} '{name}' changed remotely, keeping remote value")
                else:
                    conflicts.append(name)

        if conflicts:
            if resolution == Resolution.DECLARED:
                mismatches.update({name: declared.desired[name] for name in conflicts})
                conflicts = []
            elif resolution == Resolution.REMOTE:
                conflicts = []

        if conflicts:
            kind = Kind.AMBIGUOUS
        elif mismatches:
            kind = Kind.DECLARED_MISMATCH
        elif drift:
            kind = Kind.DRIFTED
        elif local is not None and self._tracked_differs(remote, local):
            kind = Kind.CHANGED
        else:
            kind = Kind.UNCHANGED

        return Classification(kind, resource_type, resource_id, drift=drift,
                              mismatches=mismatches, conflicts=conflicts)

    @staticmethod
    def _has_drift(remote, local) -> bool:
        if local is None:
            return False
        previous: Optional[str] = getattr(local, 'config_digest', None)
        return previous is not None and remote.digest is not None and previous != remote.digest

    @staticmethod
    def _tracked_differs(remote, local) -> bool:
        state = local.tracked_state()
        for name, value in remote.fields.items():
            if name in state and state[name] != (sorted(set(value)) if name == 'node_names' else value):
                return True
        return False
