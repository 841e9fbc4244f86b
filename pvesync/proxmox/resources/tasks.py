from pvesync.sync.types import RemoteTaskStatus


class TaskManager:
    """Mixin for PVE tasks (UPIDs)."""

    def poll_operation(self, handle):
        if handle.completed:
            return RemoteTaskStatus('stopped', handle.exit_status or 'OK')
        task = self.connection.nodes(handle.node).tasks(handle.upid).status.get()
        return RemoteTaskStatus(task.get('status'), task.get('exitstatus'))
