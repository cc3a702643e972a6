from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from sqlalchemy.orm import Session

from stackpulse.models import Setting

logger = logging.getLogger(__name__)

MAINTENANCE_KEY = "maintenance_mode"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class MaintenanceState:
    active: bool = False
    message: str | None = None
    activated_at: str | None = None
    updated_at: str | None = None
    extra: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MaintenanceState":
        known = {key: data[key] for key in ("active", "message", "activated_at", "updated_at", "extra") if key in data}
        state = cls(**known)
        return replace(state, active=bool(state.active))


class MaintenanceLock:
    """Process-wide switch that turns the redeploy subsystem off.

    The lock is engaged while maintenance mode is active (persisted as a
    setting row) or while an external update pipeline holds it.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._state = MaintenanceState()
        self._update_running = False

    @property
    def locked(self) -> bool:
        return self._state.active or self._update_running

    @property
    def update_running(self) -> bool:
        return self._update_running

    @property
    def state(self) -> MaintenanceState:
        return self._state

    def load(self) -> MaintenanceState:
        session = self._session_factory()
        try:
            row = session.get(Setting, MAINTENANCE_KEY)
            if row is None:
                state = MaintenanceState(updated_at=_now_iso())
                session.add(Setting(key=MAINTENANCE_KEY, value=asdict(state)))
                session.commit()
            else:
                state = MaintenanceState.from_dict(row.value or {})
        finally:
            session.close()
        self._state = state
        return state

    def activate(self, *, message: str | None = None, extra: dict[str, Any] | None = None) -> MaintenanceState:
        now = _now_iso()
        state = MaintenanceState(active=True, message=message, activated_at=now, updated_at=now, extra=extra)
        logger.info("maintenance.activated", extra={"maintenance_message": message})
        return self._persist(state)

    def update(self, **changes: Any) -> MaintenanceState:
        state = replace(self._state, **changes, updated_at=_now_iso())
        return self._persist(state)

    def deactivate(self, *, message: str | None = None) -> MaintenanceState:
        state = MaintenanceState(active=False, message=message, updated_at=_now_iso())
        logger.info("maintenance.deactivated", extra={"maintenance_message": message})
        return self._persist(state)

    def begin_update(self) -> bool:
        """Engage the lock for an update run; ``False`` if one is already running."""
        if self._update_running:
            return False
        self._update_running = True
        logger.info("maintenance.update_started")
        return True

    def end_update(self) -> None:
        if not self._update_running:
            return
        self._update_running = False
        logger.info("maintenance.update_finished")

    @contextmanager
    def hold_for_update(self) -> Iterator[None]:
        """In-process form of begin_update/end_update for update pipelines run by this service."""
        self.begin_update()
        try:
            yield
        finally:
            self.end_update()

    def _persist(self, state: MaintenanceState) -> MaintenanceState:
        session = self._session_factory()
        try:
            row = session.get(Setting, MAINTENANCE_KEY)
            if row is None:
                session.add(Setting(key=MAINTENANCE_KEY, value=asdict(state)))
            else:
                row.value = asdict(state)
            session.commit()
        finally:
            session.close()
        self._state = state
        return state
