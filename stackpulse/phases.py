from __future__ import annotations

import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Iterable

from stackpulse.stacks import RedeployPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseEntry:
    phase: RedeployPhase
    sequence: int
    dispatch_id: int | None = None


class PhaseStore:
    """Per-stack redeploy phase, keyed by stack id.

    Every mutation is a single dict assignment with no await in between, so
    concurrent tasks on the event loop never observe a half-applied transition.
    Each accepted transition draws a new number from one process-wide sequence;
    observers use it to discard anything older than what they already applied.
    Transitions carry the dispatch id that claimed the stack, and transitions
    from a superseded dispatch are dropped.

    ``epoch`` identifies this store instance. The sequence restarts at 1 with
    the process, so observers reset their sequence bookkeeping when it changes.
    """

    def __init__(self) -> None:
        self._entries: dict[str, PhaseEntry] = {}
        self.epoch = uuid.uuid4().hex
        self._sequence = itertools.count(1)
        self._last_sequence = 0
        self._dispatch_ids = itertools.count(1)

    @property
    def last_sequence(self) -> int:
        """Highest sequence issued so far, 0 before the first transition."""
        return self._last_sequence

    def _next_sequence(self) -> int:
        self._last_sequence = next(self._sequence)
        return self._last_sequence

    def get(self, stack_id: str) -> RedeployPhase:
        entry = self._entries.get(stack_id)
        return entry.phase if entry else RedeployPhase.NONE

    def entry(self, stack_id: str) -> PhaseEntry | None:
        return self._entries.get(stack_id)

    def is_busy(self, stack_id: str) -> bool:
        return self.get(stack_id).is_busy

    def claim(self, stack_id: str, phase: RedeployPhase) -> PhaseEntry | None:
        """Mark an idle stack busy under a fresh dispatch id; ``None`` if already busy."""
        if not phase.is_busy:
            raise ValueError(f"claim requires a busy phase, got {phase.value}")
        if self.is_busy(stack_id):
            return None
        entry = PhaseEntry(phase=phase, sequence=self._next_sequence(), dispatch_id=next(self._dispatch_ids))
        self._entries[stack_id] = entry
        return entry

    def advance(self, stack_id: str, phase: RedeployPhase, *, dispatch_id: int) -> PhaseEntry | None:
        current = self._entries.get(stack_id)
        if current is None or current.dispatch_id != dispatch_id:
            logger.info(
                "phase.transition_superseded",
                extra={"stack_id": stack_id, "phase": phase.value, "dispatch_id": dispatch_id},
            )
            return None
        entry = PhaseEntry(phase=phase, sequence=self._next_sequence(), dispatch_id=dispatch_id)
        self._entries[stack_id] = entry
        return entry

    def release(self, stack_id: str, *, dispatch_id: int) -> PhaseEntry | None:
        """Return the stack to ``none`` so it can be redeployed again."""
        current = self._entries.get(stack_id)
        if current is None or current.dispatch_id != dispatch_id:
            return None
        entry = PhaseEntry(phase=RedeployPhase.NONE, sequence=self._next_sequence())
        self._entries[stack_id] = entry
        return entry

    def retain_only(self, stack_ids: Iterable[str]) -> list[str]:
        """Forget stacks that no longer exist upstream; returns the dropped ids."""
        keep = set(stack_ids)
        dropped = [stack_id for stack_id in self._entries if stack_id not in keep]
        for stack_id in dropped:
            del self._entries[stack_id]
        return dropped

    def clear(self) -> None:
        self._entries.clear()
