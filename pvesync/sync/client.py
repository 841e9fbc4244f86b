from abc import ABC, abstractmethod


class ResourceClient(ABC):
    """
    Contract the engine consumes from the virtualization platform.

    Every method may raise network, authentication or validation errors;
    callers classify them with ``pvesync.errors.classify_remote_error``.
    """

    @abstractmethod
    def discover(self, resource_type, scope):
        """Full read of one resource type within ``scope``. Returns list[RawResource]."""

    @abstractmethod
    def fetch(self, resource_type, resource_id):
        """Current state of a single resource, or None when it no longer exists."""

    @abstractmethod
    def mutate(self, kind, target, parameters):
        """Starts a mutating action on ``target`` (a RawResource). Returns an OperationHandle."""

    @abstractmethod
    def poll_operation(self, handle):
        """Returns the RemoteTaskStatus of a previously started Operation."""
