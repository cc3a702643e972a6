from __future__ import annotations

import pytest

from stackpulse.phases import PhaseStore
from stackpulse.stacks import RedeployPhase


def test_claim_rejects_busy_stack():
    store = PhaseStore()

    first = store.claim("7", RedeployPhase.STARTED)
    second = store.claim("7", RedeployPhase.QUEUED)

    assert first is not None
    assert second is None
    assert store.get("7") is RedeployPhase.STARTED


def test_claim_requires_busy_phase():
    store = PhaseStore()

    with pytest.raises(ValueError):
        store.claim("7", RedeployPhase.SUCCESS)


def test_sequences_increase_across_stacks():
    store = PhaseStore()

    a = store.claim("1", RedeployPhase.QUEUED)
    b = store.claim("2", RedeployPhase.QUEUED)
    a_started = store.advance("1", RedeployPhase.STARTED, dispatch_id=a.dispatch_id)

    assert a.sequence < b.sequence < a_started.sequence


def test_superseded_dispatch_cannot_resurrect_phase():
    store = PhaseStore()
    first = store.claim("7", RedeployPhase.STARTED)
    store.advance("7", RedeployPhase.ERROR, dispatch_id=first.dispatch_id)
    store.release("7", dispatch_id=first.dispatch_id)
    second = store.claim("7", RedeployPhase.STARTED)

    assert store.advance("7", RedeployPhase.SUCCESS, dispatch_id=first.dispatch_id) is None
    assert store.release("7", dispatch_id=first.dispatch_id) is None
    assert store.entry("7").dispatch_id == second.dispatch_id
    assert store.get("7") is RedeployPhase.STARTED


def test_release_returns_stack_to_none_with_newer_sequence():
    store = PhaseStore()
    entry = store.claim("7", RedeployPhase.STARTED)
    success = store.advance("7", RedeployPhase.SUCCESS, dispatch_id=entry.dispatch_id)

    released = store.release("7", dispatch_id=entry.dispatch_id)

    assert released.phase is RedeployPhase.NONE
    assert released.sequence > success.sequence
    assert store.is_busy("7") is False
    assert store.claim("7", RedeployPhase.STARTED) is not None


def test_retain_only_drops_vanished_stacks():
    store = PhaseStore()
    store.claim("1", RedeployPhase.QUEUED)
    store.claim("2", RedeployPhase.QUEUED)

    dropped = store.retain_only({"1"})

    assert dropped == ["2"]
    assert store.entry("2") is None
    assert store.get("2") is RedeployPhase.NONE


def test_last_sequence_tracks_issued_numbers_and_epoch_differs_per_store():
    store = PhaseStore()
    assert store.last_sequence == 0

    entry = store.claim("1", RedeployPhase.STARTED)
    released = store.release("1", dispatch_id=entry.dispatch_id)

    assert store.last_sequence == released.sequence
    assert store.epoch != PhaseStore().epoch
