from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Literal

from stackpulse.broadcast import BroadcastEvent
from stackpulse.schemas import SnapshotResponse, StackResponse
from stackpulse.stacks import RedeployPhase, Staleness

logger = logging.getLogger(__name__)

StatusFilter = Literal["all", "current", "outdated"]


class NotificationVariant(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    variant: NotificationVariant
    title: str
    description: str


@dataclass
class StackView:
    stack_id: str
    name: str
    staleness: Staleness
    deployment_kind: str = "compose"
    duplicate_name: bool = False
    redeploy_disabled: bool = False
    # Last server-confirmed phase and the sequence it was confirmed at.
    phase: RedeployPhase = RedeployPhase.NONE
    sequence: int | None = None
    # Optimistic phase set on user action, until the server takes over.
    pending: RedeployPhase | None = None
    pending_base_sequence: int | None = None
    # Sequence of the success event that proved the stack fresh.
    fresh_confirmed_sequence: int | None = None

    @property
    def effective_phase(self) -> RedeployPhase:
        if self.phase.is_busy or self.pending is None:
            return self.phase
        return self.pending

    @property
    def is_busy(self) -> bool:
        return self.effective_phase.is_busy

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.name} (ID: {self.stack_id})"
        return f"Stack {self.stack_id}"


@dataclass
class EventResult:
    notifications: list[Notification] = field(default_factory=list)
    refresh: bool = False


def _label(stack_id: str, name: str | None) -> str:
    return f"{name} (ID: {stack_id})" if name else f"Stack {stack_id}"


def _is_newer(incoming: int | None, current: int | None) -> bool:
    if incoming is None:
        return False
    if current is None:
        return True
    return incoming >= current


class StackBoard:
    """Client-side view of every stack, reconciled from three sources.

    Snapshots (polled), redeploy status events (pushed) and optimistic local
    actions are merged per stack. Sequence numbers decide between a snapshot
    and an event; anything older than what a view already holds is ignored.

    Sequences only compare within one server epoch. When the epoch changes the
    server has restarted and forgotten every phase, so the board drops its
    sequence bookkeeping and takes the next snapshot or event as given.
    """

    def __init__(self) -> None:
        self._views: dict[str, StackView] = {}
        self._order: list[str] = []
        self._selection: list[str] = []
        self.locked = False
        self.captured_at: datetime | None = None
        self.epoch: str | None = None

    @property
    def stacks(self) -> list[StackView]:
        return [self._views[stack_id] for stack_id in self._order]

    def get(self, stack_id: str) -> StackView | None:
        return self._views.get(str(stack_id))

    @property
    def selection(self) -> tuple[str, ...]:
        return tuple(self._selection)

    def is_eligible(self, view: StackView) -> bool:
        if self.locked:
            return False
        if view.staleness is Staleness.FRESH:
            return False
        if view.redeploy_disabled:
            return False
        return not view.is_busy

    def visible(self, *, status_filter: StatusFilter = "all", search: str = "") -> list[StackView]:
        needle = search.strip().lower()
        result = []
        for view in self.stacks:
            if status_filter == "current" and view.staleness is not Staleness.FRESH:
                continue
            if status_filter == "outdated" and view.staleness is Staleness.FRESH:
                continue
            if needle and needle not in f"{view.name} {view.stack_id}".lower():
                continue
            result.append(view)
        return result

    def eligible(self, *, status_filter: StatusFilter = "all", search: str = "") -> list[StackView]:
        return [view for view in self.visible(status_filter=status_filter, search=search) if self.is_eligible(view)]

    def apply_snapshot(self, snapshot: SnapshotResponse) -> list[Notification]:
        self._adopt_epoch(snapshot.epoch)
        if snapshot.locked:
            self.set_locked(True)
            return []
        self.locked = False
        self.captured_at = snapshot.capturedAt

        notifications: list[Notification] = []
        views: dict[str, StackView] = {}
        order: list[str] = []
        for remote in sorted(snapshot.stacks, key=lambda item: item.Name.casefold()):
            previous = self._views.get(remote.Id)
            view = self._merge_stack(previous, remote, poll_sequence=snapshot.pollSequence)
            if previous is not None and previous.staleness is Staleness.FRESH and view.staleness is Staleness.OUTDATED:
                notifications.append(
                    Notification(NotificationVariant.WARNING, "Update available", view.label)
                )
            views[view.stack_id] = view
            order.append(view.stack_id)

        vanished = set(self._views) - set(views)
        if vanished:
            logger.info("board.dropped_vanished_stacks", extra={"stack_ids": sorted(vanished)})
        self._views = views
        self._order = order
        self._prune_selection()
        return notifications

    def _adopt_epoch(self, epoch: str | None) -> None:
        if epoch is None or epoch == self.epoch:
            return
        if self.epoch is not None:
            logger.info("board.server_restarted", extra={"previous_epoch": self.epoch, "epoch": epoch})
            for view in self._views.values():
                view.phase = RedeployPhase.NONE
                view.sequence = None
                view.pending = None
                view.pending_base_sequence = None
                view.fresh_confirmed_sequence = None
        self.epoch = epoch

    def _merge_stack(
        self, previous: StackView | None, remote: StackResponse, *, poll_sequence: int | None
    ) -> StackView:
        staleness = Staleness(remote.updateStatus)
        remote_phase = RedeployPhase(remote.redeployPhase)
        remote_sequence = remote.redeploySequence

        if previous is None:
            return StackView(
                stack_id=remote.Id,
                name=remote.Name,
                staleness=staleness,
                deployment_kind=remote.deploymentKind,
                duplicate_name=remote.duplicateName,
                redeploy_disabled=remote.redeployDisabled,
                phase=remote_phase,
                sequence=remote_sequence,
            )

        confirmed = previous.fresh_confirmed_sequence
        if confirmed is not None and poll_sequence is not None and poll_sequence < confirmed:
            # The poll began before the redeploy was confirmed, so its staleness verdict predates it.
            if staleness is Staleness.OUTDATED:
                staleness = Staleness.FRESH
        else:
            confirmed = None

        phase, sequence = previous.phase, previous.sequence
        if remote_sequence is None and previous.sequence is None:
            # Without sequence numbers an event still beats the snapshot's implicit none.
            if not (remote_phase is RedeployPhase.NONE and previous.phase.is_busy):
                phase = remote_phase
        elif remote_sequence is None:
            # The server no longer knows the stack's phase: it restarted or dropped the stack.
            phase, sequence = remote_phase, None
        elif _is_newer(remote_sequence, previous.sequence):
            phase, sequence = remote_phase, remote_sequence

        pending, pending_base = previous.pending, previous.pending_base_sequence
        if pending is not None and remote_sequence is not None and (
            pending_base is None or remote_sequence > pending_base
        ):
            pending, pending_base = None, None

        return StackView(
            stack_id=remote.Id,
            name=remote.Name,
            staleness=staleness,
            deployment_kind=remote.deploymentKind,
            duplicate_name=remote.duplicateName,
            redeploy_disabled=remote.redeployDisabled,
            phase=phase,
            sequence=sequence,
            pending=pending,
            pending_base_sequence=pending_base,
            fresh_confirmed_sequence=confirmed,
        )

    def apply_event(self, event: BroadcastEvent) -> EventResult:
        self._adopt_epoch(event.epoch)
        view = self._views.get(event.stack_id)
        label = _label(event.stack_id, event.stack_name or (view.name if view else None))

        if event.phase is RedeployPhase.INFO:
            detail = f": {event.message}" if event.message else ""
            return EventResult([Notification(NotificationVariant.INFO, "Redeploy notice", f"{label}{detail}")])

        if view is not None and event.sequence is not None and view.sequence is not None:
            if event.sequence <= view.sequence:
                logger.debug(
                    "board.stale_event_ignored",
                    extra={"stack_id": event.stack_id, "sequence": event.sequence},
                )
                return EventResult()

        notifications = self._notifications_for(event, label)
        if view is None:
            # Unknown stack: the next snapshot will pick it up.
            return EventResult(notifications, refresh=event.phase.is_terminal)

        view.phase = event.phase
        if event.sequence is not None:
            view.sequence = event.sequence
        view.pending = None
        view.pending_base_sequence = None
        if event.phase is RedeployPhase.SUCCESS:
            view.staleness = Staleness.FRESH
            view.fresh_confirmed_sequence = event.sequence

        self._prune_selection()
        return EventResult(notifications, refresh=event.phase.is_terminal)

    @staticmethod
    def _notifications_for(event: BroadcastEvent, label: str) -> list[Notification]:
        if event.phase is RedeployPhase.STARTED:
            return [Notification(NotificationVariant.INFO, "Redeploy started", label)]
        if event.phase is RedeployPhase.SUCCESS:
            return [Notification(NotificationVariant.SUCCESS, "Redeploy finished", label)]
        if event.phase is RedeployPhase.ERROR:
            detail = f": {event.message}" if event.message else ""
            return [Notification(NotificationVariant.ERROR, "Redeploy failed", f"{label}{detail}")]
        return []

    def begin_redeploy(self, stack_id: str) -> bool:
        view = self._views.get(str(stack_id))
        if view is None or not self.is_eligible(view):
            return False
        self._mark_pending(view, RedeployPhase.STARTED)
        self._prune_selection()
        return True

    def begin_bulk(self, stack_ids: Iterable[str]) -> list[str]:
        targets = []
        for stack_id in stack_ids:
            view = self._views.get(str(stack_id))
            if view is None or not self.is_eligible(view):
                continue
            targets.append(view.stack_id)
        for stack_id in targets:
            self._mark_pending(self._views[stack_id], RedeployPhase.QUEUED)
        self._prune_selection()
        return targets

    def settle(self, stack_ids: Iterable[str]) -> None:
        """Drop optimistic markers the server answered without taking over."""
        for stack_id in stack_ids:
            view = self._views.get(str(stack_id))
            if view is not None:
                view.pending = None
                view.pending_base_sequence = None

    def rollback(self, stack_ids: Iterable[str], *, title: str, error: str) -> list[Notification]:
        self.settle(stack_ids)
        return [Notification(NotificationVariant.ERROR, title, error)]

    @staticmethod
    def _mark_pending(view: StackView, phase: RedeployPhase) -> None:
        view.pending = phase
        view.pending_base_sequence = view.sequence

    def select(self, stack_id: str) -> bool:
        view = self._views.get(str(stack_id))
        if view is None or not self.is_eligible(view):
            return False
        if view.stack_id not in self._selection:
            self._selection.append(view.stack_id)
        return True

    def deselect(self, stack_id: str) -> None:
        stack_id = str(stack_id)
        if stack_id in self._selection:
            self._selection.remove(stack_id)

    def toggle(self, stack_id: str) -> bool:
        if str(stack_id) in self._selection:
            self.deselect(stack_id)
            return False
        return self.select(stack_id)

    def clear_selection(self) -> None:
        self._selection = []

    def set_locked(self, locked: bool) -> None:
        self.locked = locked
        if locked:
            self._views = {}
            self._order = []
            self._selection = []

    def _prune_selection(self) -> None:
        self._selection = [
            stack_id
            for stack_id in self._selection
            if stack_id in self._views and self.is_eligible(self._views[stack_id])
        ]
