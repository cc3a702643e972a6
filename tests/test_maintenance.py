from __future__ import annotations

from stackpulse.db import SessionLocal
from stackpulse.maintenance import MAINTENANCE_KEY, MaintenanceLock
from stackpulse.models import Setting


def test_load_creates_inactive_setting_row(db_session):
    lock = MaintenanceLock(SessionLocal)

    state = lock.load()

    assert state.active is False
    assert lock.locked is False
    row = db_session.get(Setting, MAINTENANCE_KEY)
    assert row is not None
    assert row.value["active"] is False


def test_activation_is_persisted_and_reloaded(db_session):
    lock = MaintenanceLock(SessionLocal)
    lock.activate(message="Docker host upgrade", extra={"ticket": "OPS-12"})

    reloaded = MaintenanceLock(SessionLocal)
    state = reloaded.load()

    assert reloaded.locked is True
    assert state.message == "Docker host upgrade"
    assert state.extra == {"ticket": "OPS-12"}
    assert state.activated_at is not None


def test_deactivate_releases_lock(db_session):
    lock = MaintenanceLock(SessionLocal)
    lock.activate(message="upgrade")

    state = lock.deactivate()

    assert state.active is False
    assert lock.locked is False


def test_update_pipeline_holds_lock_only_while_running(db_session):
    lock = MaintenanceLock(SessionLocal)
    lock.load()

    with lock.hold_for_update():
        assert lock.locked is True
        assert lock.update_running is True

    assert lock.locked is False


def test_update_merges_fields(db_session):
    lock = MaintenanceLock(SessionLocal)
    lock.activate(message="first")

    state = lock.update(message="second")

    assert state.active is True
    assert state.message == "second"
    assert MaintenanceLock(SessionLocal).load().message == "second"


def test_begin_update_refuses_a_second_run(db_session):
    lock = MaintenanceLock(SessionLocal)
    lock.load()

    assert lock.begin_update() is True
    assert lock.begin_update() is False
    assert lock.locked is True

    lock.end_update()
    lock.end_update()
    assert lock.locked is False
