from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from stackpulse.models import RedeployLog

logger = logging.getLogger(__name__)


class RedeployAuditLog:
    """Append-only record of redeploy transitions.

    Writes never raise: a broken audit store must not fail a redeploy.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(
        self,
        *,
        stack_id: str,
        stack_name: str | None,
        status: str,
        message: str | None = None,
        endpoint: int | None = None,
        redeploy_type: str | None = None,
    ) -> None:
        try:
            session = self._session_factory()
            try:
                session.add(
                    RedeployLog(
                        stack_id=str(stack_id),
                        stack_name=stack_name or "Unknown",
                        status=status,
                        message=message,
                        endpoint=endpoint,
                        redeploy_type=redeploy_type,
                    )
                )
                session.commit()
            finally:
                session.close()
        except Exception:  # noqa: BLE001
            logger.exception(
                "audit.write_failed",
                extra={"stack_id": stack_id, "status": status},
            )

    def list_recent(self, *, limit: int = 100) -> list[RedeployLog]:
        session = self._session_factory()
        try:
            stmt = select(RedeployLog).order_by(desc(RedeployLog.timestamp), desc(RedeployLog.id)).limit(limit)
            return list(session.scalars(stmt).all())
        finally:
            session.close()
