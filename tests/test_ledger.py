from datetime import datetime, timedelta

from pvesync.extensions import db
from pvesync.models import ChangeKind


def _record(ledger, kind, at, status):
    ledger.record('vm', 100, kind, {'vmid': 100, 'status': status}, recorded_at=at)


def test_query_returns_ascending_and_is_restartable(engine):
    ledger = engine.ledger
    base = datetime(2024, 1, 1, 12, 0, 0)
    # Inserted out of order on purpose
    _record(ledger, ChangeKind.UPDATED, base + timedelta(minutes=2), 'stopped')
    _record(ledger, ChangeKind.DISCOVERED, base, 'running')
    _record(ledger, ChangeKind.UPDATED, base + timedelta(minutes=1), 'suspended')
    db.session.commit()

    history = engine.get_history('vm', 100)

    first_pass = [e.snapshot['status'] for e in history]
    second_pass = [e.snapshot['status'] for e in history]
    assert first_pass == ['running', 'suspended', 'stopped']
    assert second_pass == first_pass
    assert history.count() == 3


def test_query_time_range(engine):
    ledger = engine.ledger
    base = datetime(2024, 1, 1)
    for day in range(5):
        _record(ledger, ChangeKind.UPDATED, base + timedelta(days=day), f's{day}')
    db.session.commit()

    window = engine.get_history('vm', 100, since=base + timedelta(days=1), until=base + timedelta(days=3))

    assert [e.snapshot['status'] for e in window] == ['s1', 's2', 's3']


def test_history_is_per_resource(engine):
    engine.ledger.record('vm', 100, ChangeKind.DISCOVERED, {})
    engine.ledger.record('container', 100, ChangeKind.DISCOVERED, {})
    db.session.commit()

    assert engine.get_history('vm', 100).count() == 1
    assert engine.get_history('vm', 999).count() == 0
    assert list(engine.get_history('vm', 999)) == []


def test_latest_and_summary(engine):
    ledger = engine.ledger
    base = datetime(2024, 3, 1)
    _record(ledger, ChangeKind.DISCOVERED, base, 'running')
    _record(ledger, ChangeKind.UPDATED, base + timedelta(hours=1), 'stopped')
    _record(ledger, ChangeKind.UPDATED, base + timedelta(hours=2), 'running')
    db.session.commit()

    assert ledger.latest('vm', 100).recorded_at == base + timedelta(hours=2)
    summary = ledger.summary('vm', 100)
    assert summary['entries'] == 3
    assert summary['updates'] == 2
    assert summary['first_seen'] == base.isoformat()
    assert ledger.summary('vm', 12345) is None


def test_every_committed_change_has_an_entry(engine, store, cluster):
    engine.run_sync()
    cluster.guests[('vm', 100)]['status'] = 'stopped'
    del cluster.guests[('container', 200)]
    engine.run_sync()

    vm_kinds = [e.change_kind for e in engine.get_history('vm', 100)]
    ct_kinds = [e.change_kind for e in engine.get_history('container', 200)]
    assert vm_kinds == [ChangeKind.DISCOVERED, ChangeKind.UPDATED]
    assert ct_kinds == [ChangeKind.DISCOVERED, ChangeKind.UPDATED]
    assert store.get('container', 200).status == 'absent'
