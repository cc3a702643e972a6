from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Coroutine, Iterable

import yaml

from stackpulse.audit import RedeployAuditLog
from stackpulse.broadcast import BroadcastEvent, StatusBroadcaster
from stackpulse.maintenance import MaintenanceLock
from stackpulse.phases import PhaseEntry, PhaseStore
from stackpulse.portainer_api import PortainerApiClient, PortainerApiError
from stackpulse.snapshot_cache import SnapshotCache, SnapshotUnavailableError
from stackpulse.stacks import DeploymentKind, RedeployPhase, Stack, Staleness, is_redeploy_eligible

logger = logging.getLogger(__name__)


class RedeployError(RuntimeError):
    pass


class ScopeMismatchError(RedeployError):
    """The stack is not (or no longer) part of the configured Portainer endpoint."""


class RedeployOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RedeployType(str, Enum):
    SINGLE = "single"
    SELECTION = "selection"
    ALL = "all"


@dataclass(frozen=True)
class QueuedRedeploy:
    stack_id: str
    stack_name: str
    dispatch_id: int


def extract_compose_images(content: str) -> list[str]:
    """Images declared by the services of a compose file, in order, without repeats."""
    document = yaml.safe_load(content) or {}
    services = document.get("services") if isinstance(document, dict) else None
    if not isinstance(services, dict):
        return []
    images: list[str] = []
    for service in services.values():
        if not isinstance(service, dict):
            continue
        image = service.get("image")
        if isinstance(image, str) and image.strip() and image.strip() not in images:
            images.append(image.strip())
    return images


class RedeployDispatcher:
    def __init__(
        self,
        *,
        client: PortainerApiClient,
        phases: PhaseStore,
        broadcaster: StatusBroadcaster,
        audit: RedeployAuditLog,
        snapshot_cache: SnapshotCache,
        maintenance: MaintenanceLock,
        endpoint_id: int,
        disabled_names: frozenset[str] = frozenset(),
    ) -> None:
        self._client = client
        self._phases = phases
        self._broadcaster = broadcaster
        self._audit = audit
        self._snapshot_cache = snapshot_cache
        self._maintenance = maintenance
        self._endpoint_id = endpoint_id
        self._disabled_names = disabled_names
        self._background: set[asyncio.Task[Any]] = set()

    async def redeploy(
        self,
        stack_id: str,
        *,
        redeploy_type: RedeployType = RedeployType.SINGLE,
    ) -> RedeployOutcome:
        stack_id = str(stack_id)
        if self._maintenance.locked:
            logger.info("redeploy.skipped_maintenance", extra={"stack_id": stack_id})
            return RedeployOutcome.SKIPPED

        known = self._snapshot_cache.current.get(stack_id) if self._snapshot_cache.current else None
        if known is not None and known.redeploy_disabled:
            logger.info("redeploy.skipped_disabled", extra={"stack_id": stack_id})
            return RedeployOutcome.SKIPPED
        if known is not None and known.staleness is Staleness.FRESH:
            logger.info("redeploy.skipped_fresh", extra={"stack_id": stack_id})
            return RedeployOutcome.SKIPPED

        entry = self._phases.claim(stack_id, RedeployPhase.STARTED)
        if entry is None:
            logger.info("redeploy.skipped_busy", extra={"stack_id": stack_id})
            return RedeployOutcome.SKIPPED

        stack_name = known.name if known else None
        self._emit(
            stack_id=stack_id,
            stack_name=stack_name,
            phase=RedeployPhase.STARTED,
            sequence=entry.sequence,
            redeploy_type=redeploy_type,
        )
        return await self._execute(
            stack_id=stack_id,
            stack_name=stack_name,
            dispatch_id=entry.dispatch_id,
            redeploy_type=redeploy_type,
        )

    async def queue_many(
        self,
        stack_ids: Iterable[str] | None,
        *,
        redeploy_type: RedeployType = RedeployType.SELECTION,
    ) -> list[QueuedRedeploy]:
        """Mark every eligible stack ``queued`` in one synchronous pass.

        ``stack_ids=None`` targets every stack in scope. Ineligible ids are dropped silently.
        """
        if self._maintenance.locked:
            logger.info("redeploy.batch_skipped_maintenance")
            return []

        snapshot = await self._snapshot_cache.get_snapshot()
        requested = None if stack_ids is None else {str(stack_id) for stack_id in stack_ids}
        candidates = [
            stack
            for stack in snapshot.stacks
            if (requested is None or stack.id in requested)
            and is_redeploy_eligible(stack, self._phases.get(stack.id))
        ]

        # No awaits below: the whole batch flips to queued before any upstream call starts.
        queued: list[QueuedRedeploy] = []
        for stack in candidates:
            entry = self._phases.claim(stack.id, RedeployPhase.QUEUED)
            if entry is None:
                continue
            queued.append(QueuedRedeploy(stack_id=stack.id, stack_name=stack.name, dispatch_id=entry.dispatch_id))
            self._emit(
                stack_id=stack.id,
                stack_name=stack.name,
                phase=RedeployPhase.QUEUED,
                sequence=entry.sequence,
                redeploy_type=redeploy_type,
            )
        logger.info(
            "redeploy.batch_queued",
            extra={"redeploy_type": redeploy_type.value, "stack_ids": [item.stack_id for item in queued]},
        )
        return queued

    async def run_queued(
        self,
        queued: list[QueuedRedeploy],
        *,
        redeploy_type: RedeployType = RedeployType.SELECTION,
    ) -> dict[str, RedeployOutcome]:
        """Run a queued batch; each stack settles on its own, failures never touch siblings."""
        results = await asyncio.gather(
            *(
                self._execute(
                    stack_id=item.stack_id,
                    stack_name=item.stack_name,
                    dispatch_id=item.dispatch_id,
                    redeploy_type=redeploy_type,
                    from_queue=True,
                )
                for item in queued
            ),
            return_exceptions=True,
        )
        outcomes: dict[str, RedeployOutcome] = {}
        for item, result in zip(queued, results):
            if isinstance(result, BaseException):
                logger.error(
                    "redeploy.batch_item_crashed",
                    extra={"stack_id": item.stack_id, "error": repr(result)},
                )
                outcomes[item.stack_id] = RedeployOutcome.FAILED
            else:
                outcomes[item.stack_id] = result
        return outcomes

    async def redeploy_many(
        self,
        stack_ids: Iterable[str] | None,
        *,
        redeploy_type: RedeployType = RedeployType.SELECTION,
    ) -> dict[str, RedeployOutcome]:
        queued = await self.queue_many(stack_ids, redeploy_type=redeploy_type)
        return await self.run_queued(queued, redeploy_type=redeploy_type)

    async def start_many(
        self,
        stack_ids: Iterable[str] | None,
        *,
        redeploy_type: RedeployType = RedeployType.SELECTION,
    ) -> list[QueuedRedeploy]:
        """Queue a batch and run it in the background; progress is reported only as events."""
        queued = await self.queue_many(stack_ids, redeploy_type=redeploy_type)
        if queued:
            self._spawn(self.run_queued(queued, redeploy_type=redeploy_type))
        return queued

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _execute(
        self,
        *,
        stack_id: str,
        stack_name: str | None,
        dispatch_id: int,
        redeploy_type: RedeployType,
        from_queue: bool = False,
    ) -> RedeployOutcome:
        endpoint_id: int | None = None
        try:
            if from_queue:
                entry = self._phases.advance(stack_id, RedeployPhase.STARTED, dispatch_id=dispatch_id)
                if entry is None:
                    return RedeployOutcome.SKIPPED
                self._emit(
                    stack_id=stack_id,
                    stack_name=stack_name,
                    phase=RedeployPhase.STARTED,
                    sequence=entry.sequence,
                    redeploy_type=redeploy_type,
                )

            stack = Stack.from_portainer(await self._client.get_stack(stack_id=stack_id))
            stack_name = stack.name or stack_name
            endpoint_id = stack.endpoint_id
            if stack.endpoint_id != self._endpoint_id:
                raise ScopeMismatchError(
                    f"Stack {stack.label} belongs to endpoint {stack.endpoint_id}, "
                    f"expected {self._endpoint_id}"
                )
            if stack.name in self._disabled_names:
                raise RedeployError(f"Redeploy is disabled for stack {stack.label}")

            if stack.deployment_kind is DeploymentKind.GIT:
                await self._client.redeploy_git_stack(
                    stack_id=stack.id,
                    endpoint_id=self._endpoint_id,
                    env=stack.env,
                    reference_name=stack.git_reference,
                )
            else:
                await self._redeploy_compose(stack, redeploy_type=redeploy_type)
        except (PortainerApiError, RedeployError) as exc:
            logger.warning(
                "redeploy.failed",
                extra={"stack_id": stack_id, "error": str(exc), "redeploy_type": redeploy_type.value},
            )
            self._finish(
                stack_id=stack_id,
                stack_name=stack_name,
                dispatch_id=dispatch_id,
                phase=RedeployPhase.ERROR,
                message=str(exc),
                endpoint_id=endpoint_id,
                redeploy_type=redeploy_type,
            )
            return RedeployOutcome.FAILED
        except Exception as exc:  # noqa: BLE001
            logger.exception("redeploy.crashed", extra={"stack_id": stack_id})
            self._finish(
                stack_id=stack_id,
                stack_name=stack_name,
                dispatch_id=dispatch_id,
                phase=RedeployPhase.ERROR,
                message=str(exc) or exc.__class__.__name__,
                endpoint_id=endpoint_id,
                redeploy_type=redeploy_type,
            )
            return RedeployOutcome.FAILED

        self._finish(
            stack_id=stack_id,
            stack_name=stack_name,
            dispatch_id=dispatch_id,
            phase=RedeployPhase.SUCCESS,
            message=None,
            endpoint_id=endpoint_id,
            redeploy_type=redeploy_type,
        )
        self._snapshot_cache.invalidate()
        self._spawn(self._refresh_snapshot())
        return RedeployOutcome.SUCCEEDED

    async def _redeploy_compose(self, stack: Stack, *, redeploy_type: RedeployType) -> None:
        content = await self._client.get_stack_file(stack_id=stack.id)
        try:
            images = extract_compose_images(content)
        except yaml.YAMLError as exc:
            logger.warning("redeploy.compose_unparsed", extra={"stack_id": stack.id, "error": str(exc)})
            images = []

        for image in images:
            if "${" in image:
                logger.info("redeploy.prepull_skipped_interpolated", extra={"stack_id": stack.id, "image": image})
                continue
            try:
                await self._client.pull_image(endpoint_id=self._endpoint_id, image=image)
            except PortainerApiError as exc:
                logger.warning(
                    "redeploy.prepull_failed",
                    extra={"stack_id": stack.id, "image": image, "error": str(exc)},
                )
                self._emit(
                    stack_id=stack.id,
                    stack_name=stack.name,
                    phase=RedeployPhase.INFO,
                    sequence=None,
                    message=f"Image pull failed for {image}: {exc}",
                    endpoint_id=self._endpoint_id,
                    redeploy_type=redeploy_type,
                )

        await self._client.update_stack(
            stack_id=stack.id,
            endpoint_id=self._endpoint_id,
            stack_file_content=content,
            env=stack.env,
        )

    def _finish(
        self,
        *,
        stack_id: str,
        stack_name: str | None,
        dispatch_id: int,
        phase: RedeployPhase,
        message: str | None,
        endpoint_id: int | None,
        redeploy_type: RedeployType,
    ) -> None:
        entry: PhaseEntry | None = self._phases.advance(stack_id, phase, dispatch_id=dispatch_id)
        if entry is None:
            return
        self._emit(
            stack_id=stack_id,
            stack_name=stack_name,
            phase=phase,
            sequence=entry.sequence,
            message=message,
            endpoint_id=endpoint_id,
            redeploy_type=redeploy_type,
        )
        # Terminal phases are reported once; the stored phase goes back to none so the stack stays retryable.
        self._phases.release(stack_id, dispatch_id=dispatch_id)

    def _emit(
        self,
        *,
        stack_id: str,
        stack_name: str | None,
        phase: RedeployPhase,
        sequence: int | None,
        redeploy_type: RedeployType,
        message: str | None = None,
        endpoint_id: int | None = None,
    ) -> None:
        self._audit.record(
            stack_id=stack_id,
            stack_name=stack_name,
            status=phase.value,
            message=message,
            endpoint=endpoint_id if endpoint_id is not None else self._endpoint_id,
            redeploy_type=redeploy_type.value,
        )
        logger.info(
            "redeploy.phase",
            extra={
                "stack_id": stack_id,
                "stack_name": stack_name,
                "phase": phase.value,
                "sequence": sequence,
                "redeploy_type": redeploy_type.value,
                "endpoint_id": self._endpoint_id,
            },
        )
        self._broadcaster.publish(
            BroadcastEvent(
                stack_id=stack_id,
                phase=phase,
                message=message,
                stack_name=stack_name,
                sequence=sequence,
                epoch=self._phases.epoch,
            )
        )

    async def _refresh_snapshot(self) -> None:
        try:
            await self._snapshot_cache.get_snapshot(force=True)
        except SnapshotUnavailableError as exc:
            logger.warning("redeploy.refresh_failed", extra={"error": str(exc)})

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("redeploy.background_task_failed", extra={"error": repr(exc)})
