import itertools
import threading

import pytest

from pvesync import create_app
from pvesync.config import TestingConfig
from pvesync.extensions import db, sync_engine
from pvesync.sync.client import ResourceClient
from pvesync.sync.diagnostics import InMemoryCollector
from pvesync.sync.types import OperationHandle, RawResource, RemoteTaskStatus

MB = 1024 * 1024
GB = 1024 * MB


class FakeResourceClient(ResourceClient):
    """
    In-memory cluster implementing the Resource Client contract.

    Mutations are applied to the fake state when their task is polled to
    completion, the way PVE applies them when the UPID finishes.
    """

    def __init__(self):
        self.nodes = {}
        self.guests = {}
        self.storage = {}
        # key -> list of exceptions raised (one per call) before succeeding
        self.errors = {}
        # upid -> scripted poll answers (RemoteTaskStatus or exceptions)
        self.poll_script = {}
        # When set, every task keeps reporting 'running'
        self.hold_tasks = False
        # (kind, resource_type, resource_id) -> exit status of a failing task
        self.task_failures = {}
        self.mutations = []
        self.polls = []
        self._effects = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # --- fixture helpers ---

    def add_node(self, name, status='online', **fields):
        self.nodes[name] = dict({'status': status, 'cpu_count': 8, 'memory_total': 32 * GB,
                                 'cpu_usage': 0.1, 'memory_used': 4 * GB, 'uptime': 1000}, **fields)

    def add_guest(self, resource_type, vmid, node, **fields):
        self.guests[(resource_type, vmid)] = dict({
            'node_name': node, 'name': f'{resource_type}-{vmid}', 'status': 'running',
            'template': False, 'cores': 2, 'memory_bytes': 2048 * MB, 'disk_bytes': 10 * GB,
            'cpu_usage': 0.05, 'memory_used': 512 * MB, 'uptime': 100, 'config_digest': 'd1',
        }, **fields)

    def add_storage(self, name, node_names, **fields):
        self.storage[name] = dict({
            'type': 'dir', 'content': 'images,rootdir', 'shared': False, 'enabled': True,
            'status': 'available', 'total_bytes': 100 * GB, 'used_bytes': 10 * GB,
            'available_bytes': 90 * GB, 'config_digest': 's1', 'node_names': list(node_names),
        }, **fields)

    def fail(self, key, *exceptions):
        self.errors[key] = list(exceptions)

    def _maybe_fail(self, key):
        pending = self.errors.get(key)
        if pending:
            raise pending.pop(0)

    # --- contract ---

    def discover(self, resource_type, scope):
        self._maybe_fail(('discover', resource_type))
        if resource_type == 'node':
            return [RawResource('node', name, dict(fields)) for name, fields in sorted(self.nodes.items())]
        if resource_type == 'storage':
            return [RawResource('storage', name, dict(fields)) for name, fields in sorted(self.storage.items())]

        records = []
        for (rtype, vmid), fields in sorted(self.guests.items()):
            if rtype != resource_type or not scope.includes_node(fields['node_name']):
                continue
            self._maybe_fail(('discover', resource_type, fields['node_name']))
            records.append(RawResource(rtype, vmid, dict(fields)))
        return records

    def fetch(self, resource_type, resource_id):
        if resource_type in ('vm', 'container'):
            fields = self.guests.get((resource_type, int(resource_id)))
        elif resource_type == 'node':
            fields = self.nodes.get(resource_id)
        else:
            fields = self.storage.get(resource_id)
        return RawResource(resource_type, resource_id, dict(fields)) if fields else None

    def mutate(self, kind, target, parameters):
        self._maybe_fail(('mutate', target.resource_type, target.resource_id))
        with self._lock:
            upid = f"UPID:{target.node}:{next(self._ids):08X}:{kind}:{target.resource_id}"
            self.mutations.append((kind, target.resource_type, target.resource_id, dict(parameters)))
            self._effects[upid] = (kind, target.resource_type, target.resource_id, dict(parameters))
        return OperationHandle(upid=upid, node=target.node, kind=kind,
                               resource_type=target.resource_type, resource_id=target.resource_id,
                               parameters=parameters)

    def poll_operation(self, handle):
        with self._lock:
            self.polls.append(handle.upid)
            script = self.poll_script.get(handle.upid)
            if script:
                answer = script.pop(0)
                if isinstance(answer, Exception):
                    raise answer
                if answer.finished and answer.ok:
                    self._apply(handle.upid)
                return answer
            if self.hold_tasks:
                return RemoteTaskStatus('running')
            effect = self._effects.get(handle.upid)
            if effect is not None and effect[:3] in self.task_failures:
                del self._effects[handle.upid]
                return RemoteTaskStatus('stopped', self.task_failures[effect[:3]])
            self._apply(handle.upid)
            return RemoteTaskStatus('stopped', 'OK')

    def _apply(self, upid):
        effect = self._effects.pop(upid, None)
        if effect is None:
            return
        kind, resource_type, resource_id, parameters = effect
        key = (resource_type, resource_id)
        if kind == 'destroy':
            self.guests.pop(key, None)
            return
        guest = self.guests[key]
        if kind == 'configure':
            guest.update(parameters)
            guest['config_digest'] = guest['config_digest'] + '+'
        elif kind == 'resize':
            guest['disk_bytes'] = parameters['size_bytes']
            guest['config_digest'] = guest['config_digest'] + '+'
        elif kind == 'start':
            guest['status'] = 'running'
        elif kind == 'stop':
            guest['status'] = 'stopped'


@pytest.fixture
def fake_client():
    return FakeResourceClient()


@pytest.fixture
def collector():
    return InMemoryCollector()


@pytest.fixture
def app(fake_client, collector):
    """
    Flask app configured for TESTS.
    1. TestingConfig (in-memory SQLite, near-zero delays).
    2. The fake Resource Client replaces Proxmox.
    3. Tables are created and dropped around every test.
    """
    app = create_app(TestingConfig, resource_client=fake_client, collector=collector)

    with app.app_context():
        db.create_all()

        yield app

        sync_engine.shutdown()
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """
    Simulated HTTP client, e.g. client.post('/api/sync/runs', ...)
    """
    return app.test_client()


@pytest.fixture
def app_context(app):
    with app.app_context():
        yield


@pytest.fixture
def engine(app):
    return sync_engine


@pytest.fixture
def store(engine):
    return engine.store


@pytest.fixture
def cluster(fake_client):
    """Two online nodes, two VMs, one container and one shared pool."""
    fake_client.add_node('n1')
    fake_client.add_node('n2')
    fake_client.add_guest('vm', 100, 'n1')
    fake_client.add_guest('vm', 101, 'n2', status='stopped')
    fake_client.add_guest('container', 200, 'n1')
    fake_client.add_storage('local', ['n1', 'n2'], shared=True)
    return fake_client


@pytest.fixture
def mock_pve_connection(mocker):
    """
    Patches ProxmoxAPI so nothing reaches the network.
    """
    mock_api = mocker.patch('pvesync.proxmox.client.ProxmoxAPI')
    return mock_api.return_value


@pytest.fixture
def service(app, mock_pve_connection):
    """
    ProxmoxService with the mocked connection injected.
    """
    from pvesync.proxmox import ProxmoxService

    svc = ProxmoxService()
    svc.init_app(app)
    svc._connection = mock_pve_connection
    return svc
