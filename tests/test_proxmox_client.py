import pytest

from pvesync.errors import RemoteValidationError
from pvesync.proxmox.client import config_digest
from pvesync.sync.types import OperationHandle, RawResource, SyncScope

MB = 1024 * 1024
GB = 1024 * MB


def test_discover_nodes_maps_status(service, mock_pve_connection):
    mock_pve_connection.nodes.get.return_value = [
        {'node': 'pve1', 'status': 'online', 'maxcpu': 16, 'maxmem': 64 * GB, 'cpu': 0.1, 'mem': GB, 'uptime': 99},
        {'node': 'pve2', 'status': 'offline'},
    ]

    records = service.discover('node', SyncScope())

    assert [r.resource_id for r in records] == ['pve1', 'pve2']
    assert records[0].fields['cpu_count'] == 16
    assert records[1].fields['status'] == 'offline'


def test_discover_nodes_respects_scope(service, mock_pve_connection):
    mock_pve_connection.nodes.get.return_value = [
        {'node': 'pve1', 'status': 'online'},
        {'node': 'pve2', 'status': 'online'},
    ]

    records = service.discover('node', SyncScope(nodes=['pve2']))

    assert [r.resource_id for r in records] == ['pve2']


def test_discover_vms_uses_config_digest(service, mock_pve_connection):
    node_api = mock_pve_connection.nodes.return_value
    node_api.qemu.get.return_value = [
        {'vmid': '100', 'name': 'web', 'status': 'running', 'qmpstatus': 'paused',
         'cpus': 2, 'maxmem': 2048 * MB, 'maxdisk': 10 * GB},
    ]
    node_api.qemu.return_value.config.get.return_value = {'cores': 4, 'digest': 'abc123'}

    records = service.discover('vm', SyncScope(nodes=['pve1']))

    vm = records[0]
    assert vm.resource_id == 100
    assert vm.node == 'pve1'
    assert vm.fields['status'] == 'suspended'
    assert vm.fields['cores'] == 4
    assert vm.fields['memory_bytes'] == 2048 * MB
    assert vm.digest == 'abc123'
    mock_pve_connection.nodes.assert_called_with('pve1')


def test_container_name_comes_from_hostname(service, mock_pve_connection):
    node_api = mock_pve_connection.nodes.return_value
    node_api.lxc.get.return_value = [{'vmid': 200, 'status': 'stopped'}]
    node_api.lxc.return_value.config.get.return_value = {'hostname': 'db01', 'cores': 1}

    record = service.discover('container', SyncScope(nodes=['pve1']))[0]

    assert record.fields['name'] == 'db01'
    assert record.fields['status'] == 'stopped'


def test_digest_fallback_is_stable():
    a = config_digest({'cores': 2, 'memory': 2048})
    b = config_digest({'memory': 2048, 'cores': 2})

    assert a == b
    assert a != config_digest({'cores': 4, 'memory': 2048})
    assert config_digest({}) is None


def test_fetch_vm_follows_cluster_location(service, mock_pve_connection):
    mock_pve_connection.cluster.resources.get.return_value = [
        {'type': 'lxc', 'vmid': 100, 'node': 'pve1'},
        {'type': 'qemu', 'vmid': 100, 'node': 'pve2'},
    ]
    vm_api = mock_pve_connection.nodes.return_value.qemu.return_value
    vm_api.status.current.get.return_value = {'name': 'web', 'status': 'running', 'maxmem': GB}
    vm_api.config.get.return_value = {'digest': 'd9'}

    record = service.fetch('vm', '100')

    assert record.node == 'pve2'
    assert record.resource_id == 100
    mock_pve_connection.nodes.assert_called_with('pve2')


def test_fetch_missing_guest_returns_none(service, mock_pve_connection):
    mock_pve_connection.cluster.resources.get.return_value = []

    assert service.fetch('container', 999) is None


def test_configure_vm_returns_task_handle(service, mock_pve_connection):
    config_api = mock_pve_connection.nodes.return_value.qemu.return_value.config
    config_api.post.return_value = 'UPID:pve1:0000ABCD:configure:100:root@pam:'
    target = RawResource('vm', 100, {'node_name': 'pve1'})

    handle = service.mutate('configure', target, {'cores': 4, 'memory_bytes': 4096 * MB})

    config_api.post.assert_called_once_with(cores=4, memory=4096)
    assert handle.upid.startswith('UPID:pve1')
    assert not handle.completed
    assert handle.kind == 'configure'


def test_configure_container_completes_synchronously(service, mock_pve_connection):
    config_api = mock_pve_connection.nodes.return_value.lxc.return_value.config
    config_api.put.return_value = None
    target = RawResource('container', 200, {'node_name': 'pve1'})

    handle = service.mutate('configure', target, {'name': 'db02'})

    config_api.put.assert_called_once_with(hostname='db02')
    assert handle.completed
    assert handle.upid.startswith('SYNC:pve1:configure:container:200:')


def test_resize_refuses_to_shrink(service, mock_pve_connection):
    target = RawResource('vm', 100, {'node_name': 'pve1', 'disk_bytes': 20 * GB})

    with pytest.raises(RemoteValidationError):
        service.mutate('resize', target, {'size_bytes': 10 * GB})

    mock_pve_connection.nodes.return_value.qemu.return_value.resize.put.assert_not_called()


def test_resize_defaults_disk(service, mock_pve_connection):
    resize_api = mock_pve_connection.nodes.return_value.qemu.return_value.resize
    resize_api.put.return_value = 'UPID:pve1:1:resize'
    target = RawResource('vm', 100, {'node_name': 'pve1', 'disk_bytes': 10 * GB})

    service.mutate('resize', target, {'size_bytes': 20 * GB})

    resize_api.put.assert_called_once_with(disk='scsi0', size=str(20 * GB))


def test_unsupported_mutation(service):
    target = RawResource('storage', 'local', {})

    with pytest.raises(RemoteValidationError):
        service.mutate('start', target, {})


def test_poll_operation(service, mock_pve_connection):
    tasks_api = mock_pve_connection.nodes.return_value.tasks.return_value
    tasks_api.status.get.return_value = {'status': 'stopped', 'exitstatus': 'OK'}
    handle = OperationHandle('UPID:pve1:1:start', 'pve1', 'start', 'vm', 100)

    status = service.poll_operation(handle)

    assert status.finished and status.ok
    mock_pve_connection.nodes.return_value.tasks.assert_called_with('UPID:pve1:1:start')


def test_poll_completed_handle_skips_api(service, mock_pve_connection):
    handle = OperationHandle('SYNC:x', 'pve1', 'configure', 'container', 200, completed=True, exit_status='OK')

    assert service.poll_operation(handle).ok
    mock_pve_connection.nodes.assert_not_called()


def test_shared_storage_usage_counted_once(service, mock_pve_connection):
    mock_pve_connection.nodes.get.return_value = [
        {'node': 'pve1', 'status': 'online'},
        {'node': 'pve2', 'status': 'online'},
    ]
    mock_pve_connection.nodes.return_value.storage.get.return_value = [
        {'storage': 'ceph', 'shared': 1, 'total': 100, 'used': 40, 'avail': 60},
        {'storage': 'local', 'shared': 0, 'total': 10, 'used': 1, 'avail': 9},
    ]
    mock_pve_connection.storage.get.return_value = [
        {'storage': 'ceph', 'type': 'rbd', 'shared': 1, 'digest': 'c1'},
        {'storage': 'local', 'type': 'dir', 'nodes': 'pve1', 'disable': 1},
    ]

    records = {r.resource_id: r for r in service.discover('storage', SyncScope())}

    ceph = records['ceph'].fields
    assert ceph['total_bytes'] == 100
    assert ceph['node_names'] == ['pve1', 'pve2']
    assert ceph['shared'] is True
    local = records['local'].fields
    assert local['total_bytes'] == 20
    assert local['node_names'] == ['pve1']
    assert local['enabled'] is False
