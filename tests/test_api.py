import json

from proxmoxer import ResourceException

from pvesync.errors import SyncInProgressError
from pvesync.extensions import sync_engine
from pvesync.services.health import get_system_health
from pvesync.services.health.base import HealthCheckProvider


def test_index(client):
    response = client.get('/')
    assert response.status_code == 200
    assert response.json['project'] == 'pvesync'


def test_run_sync(client, cluster):
    response = client.post('/api/sync/runs', json={})

    assert response.status_code == 200
    data = response.json['data']
    assert response.json['success'] is True
    assert data['counts']['created'] == 6
    assert data['by_type']['vm']['created'] == 2
    assert data['failures'] == []


def test_run_sync_with_declared_target(client, cluster):
    client.post('/api/sync/runs', json={})

    response = client.post('/api/sync/runs', json={
        'resource_types': ['vm'],
        'declared': [{'resource_type': 'vm', 'resource_id': 101, 'status': 'running'}],
        'wait': True,
    })

    assert response.status_code == 200
    completed = response.json['data']['completed']
    assert [(h['kind'], h['resource_id']) for h in completed] == [('start', 101)]


def test_run_sync_rejects_unknown_type(client, cluster):
    response = client.post('/api/sync/runs', json={'resource_types': ['pool']})

    assert response.status_code == 400
    assert 'pool' in response.json['error']


def test_run_sync_rejects_scope_that_is_not_a_list(client, cluster):
    bare = client.post('/api/sync/runs', json={'nodes': 'n1'})
    mixed = client.post('/api/sync/runs', json={'resource_types': ['vm', 7]})

    assert bare.status_code == 400
    assert 'nodes' in bare.json['error']
    assert mixed.status_code == 400
    assert cluster.mutations == []


def test_run_sync_scoped_to_one_node(client, cluster):
    response = client.post('/api/sync/runs', json={'nodes': ['n2'], 'resource_types': ['node', 'vm']})

    assert response.status_code == 200
    assert response.json['data']['by_type']['vm']['created'] == 1


def test_run_sync_rejects_bad_declared_fields(client, cluster):
    response = client.post('/api/sync/runs', json={
        'declared': [{'resource_type': 'vm', 'resource_id': 100, 'balloon': 512}],
    })

    assert response.status_code == 400


def test_run_sync_rejects_bad_resolution(client, cluster):
    response = client.post('/api/sync/runs', json={
        'resolutions': [{'resource_type': 'vm', 'resource_id': 100, 'resolution': 'merge'}],
    })

    assert response.status_code == 400


def test_concurrent_run_returns_409(client, mocker):
    mocker.patch.object(sync_engine, 'run_sync', side_effect=SyncInProgressError('busy'))

    response = client.post('/api/sync/runs', json={})

    assert response.status_code == 409
    assert response.json['success'] is False


def test_latest_run(client, cluster):
    assert client.get('/api/sync/runs/latest').json['data']['last_run'] is None

    client.post('/api/sync/runs', json={})
    stats = client.get('/api/sync/runs/latest').json['data']

    assert stats['last_run']['status'] == 'completed'
    assert stats['resources']['vm'] == 2
    assert stats['last_sync_time'] is not None


def test_current_state_filters(client, cluster):
    client.post('/api/sync/runs', json={})

    everything = client.get('/api/sync/state/vm').json
    running = client.get('/api/sync/state/vm?status=running').json
    on_n2 = client.get('/api/sync/state/vm?node=n2').json
    by_id = client.get('/api/sync/state/vm?ids=101').json

    assert everything['count'] == 2
    assert [vm['vmid'] for vm in running['data']] == [100]
    assert [vm['vmid'] for vm in on_n2['data']] == [101]
    assert [vm['vmid'] for vm in by_id['data']] == [101]


def test_unknown_resource_type_is_404(client):
    assert client.get('/api/sync/state/pool').status_code == 404
    assert client.get('/api/sync/history/pool/1').status_code == 404


def test_history(client, cluster):
    client.post('/api/sync/runs', json={})
    cluster.guests[('vm', 100)]['status'] = 'stopped'
    client.post('/api/sync/runs', json={})

    response = client.get('/api/sync/history/vm/100')

    assert response.status_code == 200
    kinds = [e['change_kind'] for e in response.json['data']]
    assert kinds == ['discovered', 'updated']
    assert response.json['data'][-1]['snapshot']['status'] == 'stopped'
    assert response.json['summary']['entries'] == 2


def test_history_rejects_bad_timestamp(client):
    response = client.get('/api/sync/history/vm/100?since=yesterday')
    assert response.status_code == 400


def test_operations_and_cancel(client, cluster):
    client.post('/api/sync/runs', json={})
    cluster.hold_tasks = True
    client.post('/api/sync/runs', json={
        'declared': [{'resource_type': 'vm', 'resource_id': 101, 'status': 'running'}],
    })

    operations = client.get('/api/sync/operations').json['data']
    assert [(op['kind'], op['resource_id']) for op in operations] == [('start', '101')]

    response = client.post('/api/sync/cancel')
    assert response.status_code == 202


def test_health(client, mock_pve_connection):
    mock_pve_connection.version.get.return_value = {'version': '8.2.4', 'release': '8.2'}
    mock_pve_connection.nodes.get.return_value = [{'node': 'n1', 'status': 'online'}]

    response = client.get('/api/health')

    assert response.status_code == 200
    checks = {c['category']: c for c in response.json['checks']}
    assert checks['compute']['details']['nodes_online'] == 1
    assert checks['database']['status'] == 'healthy'


def test_health_unreachable_cluster(client, mock_pve_connection):
    mock_pve_connection.version.get.side_effect = ResourceException(595, 'Errors during connection establishment', '')

    response = client.get('/health')

    assert response.status_code == 503
    assert response.json['status'] == 'unhealthy'


def test_cli_init_db(app):
    result = app.test_cli_runner().invoke(args=['init-db'])

    assert result.exit_code == 0
    assert 'Database initialised.' in result.output


def test_cli_sync(app, cluster):
    runner = app.test_cli_runner()

    result = runner.invoke(args=['sync', '--type', 'node', '--type', 'vm'])

    assert result.exit_code == 0
    assert 'created=2' in result.output
    assert 'container' not in result.output


def test_cli_sync_with_declared_file(app, cluster, tmp_path):
    declared = tmp_path / 'declared.json'
    declared.write_text(json.dumps([{'resource_type': 'vm', 'resource_id': 101, 'status': 'running'}]))
    runner = app.test_cli_runner()

    runner.invoke(args=['sync'])
    result = runner.invoke(args=['sync', '--declared', str(declared), '--wait'])

    assert result.exit_code == 0
    assert 'succeeded start vm:101' in result.output
    assert cluster.guests[('vm', 101)]['status'] == 'running'


def test_cli_sync_reports_failures(app, cluster):
    cluster.fail(('discover', 'node'), RuntimeError('cluster unreachable'))

    result = app.test_cli_runner().invoke(args=['sync'])

    assert result.exit_code != 0


def test_cli_status(app, cluster):
    runner = app.test_cli_runner()
    runner.invoke(args=['sync'])

    result = runner.invoke(args=['sync-status'])

    assert result.exit_code == 0
    assert 'Last run' in result.output


def test_health_report_of_a_failing_check():
    class BrokenCheck(HealthCheckProvider):
        name = "Broken"
        category = "storage"

        def check(self):
            raise ConnectionError('refused')

    class FineCheck(HealthCheckProvider):
        name = "Fine"
        category = "database"

        def check(self):
            return None

    report = get_system_health([BrokenCheck(), FineCheck()])

    assert report['status'] == 'unhealthy'
    broken, fine = report['checks']
    assert broken['error_type'] == 'ConnectionError'
    assert broken['name'] == 'Broken'
    assert 'details' not in broken
    assert fine['status'] == 'healthy'
    assert fine['details'] == {}
    assert fine['latency_ms'] >= 0
