import threading
import time

import pytest

from pvesync.errors import SyncInProgressError
from pvesync.sync.lock import SyncLockRegistry
from pvesync.sync.types import SyncScope


def test_fail_mode_rejects_overlapping_scope():
    locks = SyncLockRegistry(mode='fail')
    locks.acquire(SyncScope())

    with pytest.raises(SyncInProgressError):
        locks.acquire(SyncScope(nodes=['n1']))


def test_disjoint_scopes_run_concurrently():
    locks = SyncLockRegistry(mode='fail')
    locks.acquire(SyncScope(nodes=['n1']))
    locks.acquire(SyncScope(nodes=['n2']))
    locks.acquire(SyncScope(nodes=['n3'], resource_types=['storage']))

    assert locks.is_locked(SyncScope(nodes=['n2']))
    assert not locks.is_locked(SyncScope(nodes=['n4']))


def test_same_nodes_different_types_do_not_overlap():
    assert not SyncScope(nodes=['n1'], resource_types=['vm']).overlaps(
        SyncScope(nodes=['n1'], resource_types=['container'])
    )
    assert SyncScope().overlaps(SyncScope(nodes=['n9'], resource_types=['storage']))


def test_wait_mode_acquires_after_release():
    locks = SyncLockRegistry(mode='wait', timeout=5)
    scope = SyncScope()
    locks.acquire(scope)

    def release_later():
        time.sleep(0.05)
        locks.release(scope)

    threading.Thread(target=release_later).start()

    locks.acquire(scope)
    assert locks.is_locked(scope)
    locks.release(scope)
    assert not locks.is_locked()


def test_wait_mode_times_out():
    locks = SyncLockRegistry(mode='wait', timeout=0.05)
    locks.acquire(SyncScope())

    with pytest.raises(SyncInProgressError):
        locks.acquire(SyncScope())


def test_hold_releases_on_error():
    locks = SyncLockRegistry(mode='fail')

    with pytest.raises(RuntimeError):
        with locks.hold(SyncScope()):
            raise RuntimeError('boom')

    assert not locks.is_locked()


def test_engine_rejects_concurrent_run(engine, cluster):
    engine.locks.acquire(SyncScope())
    try:
        with pytest.raises(SyncInProgressError):
            engine.run_sync(scope=SyncScope(nodes=['n1']))
    finally:
        engine.locks.release(SyncScope())
