from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable

from stackpulse.maintenance import MaintenanceLock
from stackpulse.phases import PhaseStore
from stackpulse.portainer_api import PortainerApiClient, PortainerApiError
from stackpulse.stacks import (
    Snapshot,
    Stack,
    Staleness,
    filter_to_scope,
    flag_duplicate_names,
    mark_disabled,
    sort_by_name,
)

logger = logging.getLogger(__name__)


class SnapshotUnavailableError(RuntimeError):
    """Raised when a poll fails and there is no earlier snapshot to fall back to."""


class SnapshotCache:
    def __init__(
        self,
        *,
        client: PortainerApiClient,
        maintenance: MaintenanceLock,
        phases: PhaseStore,
        endpoint_id: int,
        ttl_seconds: float,
        probe_concurrency: int = 8,
        disabled_names: frozenset[str] = frozenset(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._maintenance = maintenance
        self._phases = phases
        self._endpoint_id = endpoint_id
        self._ttl_seconds = ttl_seconds
        self._probe_concurrency = probe_concurrency
        self._disabled_names = disabled_names
        self._clock = clock

        self._snapshot: Snapshot | None = None
        self._polled_at: float | None = None
        self._inflight: asyncio.Task[Snapshot] | None = None
        self._inflight_started_at: float | None = None

    @property
    def current(self) -> Snapshot | None:
        return self._snapshot

    def is_fresh(self) -> bool:
        if self._snapshot is None or self._polled_at is None:
            return False
        return self._clock() - self._polled_at < self._ttl_seconds

    def invalidate(self) -> None:
        self._polled_at = None

    async def get_snapshot(self, *, force: bool = False) -> Snapshot:
        if self._maintenance.locked:
            return Snapshot(stacks=(), captured_at=datetime.now(timezone.utc), locked=True)

        if not force and self.is_fresh():
            return self._snapshot

        requested_at = self._clock()
        while True:
            task = self._inflight
            if task is None:
                task = self._start_poll()
                break
            # A forced refresh must not reuse a poll that began before it was requested.
            if not force or (self._inflight_started_at is not None and self._inflight_started_at >= requested_at):
                break
            await asyncio.wait({task})

        return await asyncio.shield(task)

    def _start_poll(self) -> asyncio.Task[Snapshot]:
        task = asyncio.get_running_loop().create_task(self._poll())
        self._inflight = task
        self._inflight_started_at = self._clock()
        task.add_done_callback(self._clear_inflight)
        return task

    def _clear_inflight(self, task: asyncio.Task[Snapshot]) -> None:
        if self._inflight is task:
            self._inflight = None
            self._inflight_started_at = None
        # Retrieve the exception so an unawaited failure is not reported as lost.
        if not task.cancelled():
            task.exception()

    async def _poll(self) -> Snapshot:
        watermark = self._phases.last_sequence
        try:
            payload = await self._client.list_stacks()
            stacks = [Stack.from_portainer(item) for item in payload]
        except (PortainerApiError, ValueError) as exc:
            return self._fallback(exc)

        stacks = filter_to_scope(stacks, endpoint_id=self._endpoint_id)
        stacks = flag_duplicate_names(stacks)
        stacks = mark_disabled(stacks, disabled_names=self._disabled_names)
        stacks = await self._probe_staleness(stacks)

        snapshot = Snapshot(
            stacks=tuple(sort_by_name(stacks)),
            captured_at=datetime.now(timezone.utc),
            sequence=watermark,
        )
        dropped = self._phases.retain_only(snapshot.ids)
        if dropped:
            logger.info("snapshot.dropped_vanished_stacks", extra={"stack_ids": dropped})
        duplicates = [stack.id for stack in snapshot.stacks if stack.duplicate_name]
        if duplicates:
            logger.warning("snapshot.duplicate_stack_names", extra={"stack_ids": duplicates})

        self._snapshot = snapshot
        self._polled_at = self._clock()
        return snapshot

    def _fallback(self, exc: Exception) -> Snapshot:
        if self._snapshot is None:
            logger.error("snapshot.poll_failed_without_cache", extra={"error": str(exc)})
            raise SnapshotUnavailableError(f"Unable to load stacks from Portainer: {exc}") from exc
        logger.warning("snapshot.poll_failed_using_cache", extra={"error": str(exc)})
        return replace(self._snapshot, poll_error=str(exc))

    async def _probe_staleness(self, stacks: list[Stack]) -> list[Stack]:
        semaphore = asyncio.Semaphore(self._probe_concurrency)

        async def _probe(stack: Stack) -> Stack:
            async with semaphore:
                try:
                    status = await self._client.get_image_status(stack_id=stack.id)
                except PortainerApiError as exc:
                    logger.warning(
                        "snapshot.staleness_probe_failed",
                        extra={"stack_id": stack.id, "error": str(exc)},
                    )
                    return replace(stack, staleness=Staleness.UNKNOWN)
            staleness = Staleness.OUTDATED if status.strip().lower() == "outdated" else Staleness.FRESH
            return replace(stack, staleness=staleness)

        return list(await asyncio.gather(*(_probe(stack) for stack in stacks)))
