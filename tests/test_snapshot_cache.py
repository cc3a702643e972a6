from __future__ import annotations

import asyncio
import itertools

import pytest

from stackpulse.portainer_api import PortainerApiError
from stackpulse.snapshot_cache import SnapshotUnavailableError
from stackpulse.stacks import RedeployPhase, Staleness


def test_concurrent_callers_share_one_upstream_poll(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web"), stack_payload(2, "api")])
    services = build_services(portainer)

    async def _run():
        return await asyncio.gather(*(services.cache.get_snapshot() for _ in range(5)))

    snapshots = asyncio.run(_run())

    assert portainer.list_calls == 1
    assert all(snapshot is snapshots[0] for snapshot in snapshots)


def test_fresh_snapshot_is_served_from_cache_until_ttl_expires(build_services, fake_portainer_factory, stack_payload):
    now = [100.0]
    portainer = fake_portainer_factory([stack_payload(1, "web")])
    services = build_services(portainer, ttl_seconds=30.0, clock=lambda: now[0])

    async def _run():
        await services.cache.get_snapshot()
        now[0] += 10
        await services.cache.get_snapshot()
        now[0] += 25
        await services.cache.get_snapshot()

    asyncio.run(_run())

    assert portainer.list_calls == 2


def test_forced_refresh_does_not_reuse_older_inflight_poll(build_services, fake_portainer_factory, stack_payload):
    ticks = itertools.count(1)
    portainer = fake_portainer_factory([stack_payload(1, "web")])
    services = build_services(portainer, clock=lambda: float(next(ticks)))

    async def _run():
        first = asyncio.create_task(services.cache.get_snapshot())
        await asyncio.sleep(0)
        forced = await services.cache.get_snapshot(force=True)
        await first
        return forced

    asyncio.run(_run())

    assert portainer.list_calls == 2


def test_duplicate_names_are_flagged_and_both_kept(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web"), stack_payload(2, "web"), stack_payload(3, "api")])
    services = build_services(portainer)

    snapshot = asyncio.run(services.cache.get_snapshot())

    assert sorted(snapshot.ids) == ["1", "2", "3"]
    assert snapshot.get("1").duplicate_name is False
    assert snapshot.get("2").duplicate_name is True
    assert [stack.name for stack in snapshot.stacks] == ["api", "web", "web"]


def test_stacks_outside_endpoint_scope_are_excluded(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web"), stack_payload(2, "other", endpoint_id=9)])
    services = build_services(portainer)

    snapshot = asyncio.run(services.cache.get_snapshot())

    assert snapshot.ids == frozenset({"1"})


def test_image_status_results_and_disabled_stacks(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory(
        [stack_payload(1, "web"), stack_payload(2, "api"), stack_payload(3, "db"), stack_payload(4, "stackpulse")],
        image_status={"1": "outdated", "2": "updated"},
    )
    portainer.probe_errors.add("3")
    services = build_services(portainer)

    snapshot = asyncio.run(services.cache.get_snapshot())

    assert snapshot.get("1").staleness is Staleness.OUTDATED
    assert snapshot.get("2").staleness is Staleness.FRESH
    assert snapshot.get("3").staleness is Staleness.UNKNOWN
    assert snapshot.get("4").redeploy_disabled is True


def test_poll_failure_falls_back_to_previous_snapshot(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web")])
    services = build_services(portainer)

    async def _run():
        first = await services.cache.get_snapshot()
        portainer.list_error = PortainerApiError(message="Network error while calling Portainer: timeout")
        second = await services.cache.get_snapshot(force=True)
        return first, second

    first, second = asyncio.run(_run())

    assert second.ids == first.ids
    assert second.captured_at == first.captured_at
    assert "timeout" in second.poll_error


def test_first_poll_failure_raises(build_services, fake_portainer_factory):
    portainer = fake_portainer_factory([])
    portainer.list_error = PortainerApiError(message="Network error while calling Portainer: refused")
    services = build_services(portainer)

    with pytest.raises(SnapshotUnavailableError):
        asyncio.run(services.cache.get_snapshot())


def test_maintenance_returns_locked_snapshot_without_upstream_call(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web")])
    services = build_services(portainer)
    services.maintenance.activate(message="Host update")

    snapshot = asyncio.run(services.cache.get_snapshot(force=True))

    assert snapshot.locked is True
    assert snapshot.stacks == ()
    assert portainer.list_calls == 0


def test_vanished_stacks_are_dropped_from_phase_store(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web"), stack_payload(2, "api")])
    services = build_services(portainer)
    services.phases.claim("2", RedeployPhase.QUEUED)

    async def _run():
        await services.cache.get_snapshot()
        portainer.stacks = [stack_payload(1, "web")]
        return await services.cache.get_snapshot(force=True)

    snapshot = asyncio.run(_run())

    assert snapshot.ids == frozenset({"1"})
    assert services.phases.entry("2") is None


def test_snapshot_records_phase_sequence_issued_before_the_poll(build_services, fake_portainer_factory, stack_payload):
    portainer = fake_portainer_factory([stack_payload(1, "web")])
    services = build_services(portainer)
    entry = services.phases.claim("1", RedeployPhase.STARTED)

    async def _run():
        first = await services.cache.get_snapshot()
        services.phases.advance("1", RedeployPhase.SUCCESS, dispatch_id=entry.dispatch_id)
        cached = await services.cache.get_snapshot()
        forced = await services.cache.get_snapshot(force=True)
        return first, cached, forced

    first, cached, forced = asyncio.run(_run())

    assert first.sequence == entry.sequence
    assert cached.sequence == entry.sequence
    assert forced.sequence == services.phases.last_sequence
