from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Callable

import httpx

from stackpulse.broadcast import (
    REDEPLOY_STATUS_EVENT,
    BroadcastEvent,
    StatusPayloadError,
    parse_status_payload,
)
from stackpulse.reconciliation import Notification, StackBoard, StatusFilter
from stackpulse.schemas import (
    BulkRedeployResponse,
    MaintenanceResponse,
    RedeployResponse,
    SnapshotResponse,
)

logger = logging.getLogger(__name__)


class StackPulseClientError(RuntimeError):
    def __init__(self, *, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SseParser:
    """Incremental Server-Sent Events decoder; feed it one line at a time."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> tuple[str, str] | None:
        line = line.rstrip("\r\n")
        if not line:
            if not self._data:
                self._event = None
                return None
            message = (self._event or "message", "\n".join(self._data))
            self._event = None
            self._data = []
            return message
        if line.startswith(":"):
            return None
        field_name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field_name == "event":
            self._event = value
        elif field_name == "data":
            self._data.append(value)
        return None


def decode_status_message(event_name: str, data: str) -> BroadcastEvent | None:
    if event_name != REDEPLOY_STATUS_EVENT:
        return None
    try:
        return parse_status_payload(json.loads(data))
    except (ValueError, StatusPayloadError) as exc:
        logger.warning("client.invalid_status_event", extra={"error": str(exc)})
        return None


class StackPulseClient:
    def __init__(self, base_url: str, *, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def get_snapshot(self, *, force: bool = False) -> SnapshotResponse:
        params = {"force": "true"} if force else None
        data = await self._request("GET", "/api/stacks", params=params)
        return SnapshotResponse.model_validate(data)

    async def redeploy(self, stack_id: str) -> RedeployResponse:
        data = await self._request("PUT", f"/api/stacks/{stack_id}/redeploy")
        return RedeployResponse.model_validate(data)

    async def redeploy_selection(self, stack_ids: list[str]) -> BulkRedeployResponse:
        data = await self._request(
            "PUT",
            "/api/stacks/redeploy-selection",
            payload={"stackIds": [str(stack_id) for stack_id in stack_ids]},
        )
        return BulkRedeployResponse.model_validate(data)

    async def redeploy_all(self) -> BulkRedeployResponse:
        data = await self._request("PUT", "/api/stacks/redeploy-all")
        return BulkRedeployResponse.model_validate(data)

    async def get_maintenance(self) -> MaintenanceResponse:
        data = await self._request("GET", "/api/maintenance")
        return MaintenanceResponse.model_validate(data)

    async def stream_events(self) -> AsyncIterator[BroadcastEvent]:
        url = f"{self._base_url}/api/events"
        timeout = httpx.Timeout(self._timeout, read=None)
        parser = SseParser()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as response:
                    if response.status_code >= 400:
                        raise StackPulseClientError(
                            message=f"Event stream failed ({response.status_code})",
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        message = parser.feed(line)
                        if message is None:
                            continue
                        event = decode_status_message(*message)
                        if event is not None:
                            yield event
        except httpx.RequestError as exc:
            raise StackPulseClientError(message=f"Event stream interrupted: {exc}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, params=params, json=payload)
        except httpx.RequestError as exc:
            raise StackPulseClientError(message=f"Network error while calling StackPulse: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text
            try:
                detail = response.json().get("detail", detail)
            except (ValueError, AttributeError):
                pass
            raise StackPulseClientError(message=str(detail), status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            raise StackPulseClientError(message="StackPulse returned invalid JSON") from exc


class BoardSync:
    """Drives a :class:`StackBoard` from a :class:`StackPulseClient`."""

    def __init__(
        self,
        client: StackPulseClient,
        board: StackBoard | None = None,
        *,
        notify: Callable[[Notification], None] | None = None,
    ) -> None:
        self.client = client
        self.board = board or StackBoard()
        self._notify = notify or (lambda _notification: None)

    def _emit(self, notifications: list[Notification]) -> None:
        for notification in notifications:
            self._notify(notification)

    async def refresh(self, *, force: bool = False) -> None:
        try:
            snapshot = await self.client.get_snapshot(force=force)
        except StackPulseClientError as exc:
            if exc.status_code == 423:
                self.board.set_locked(True)
                return
            if not self.board.stacks:
                raise
            logger.warning("board.refresh_failed", extra={"error": str(exc)})
            return
        if snapshot.pollError:
            logger.warning("board.snapshot_degraded", extra={"error": snapshot.pollError})
        self._emit(self.board.apply_snapshot(snapshot))

    async def redeploy(self, stack_id: str) -> bool:
        if not self.board.begin_redeploy(stack_id):
            return False
        try:
            result = await self.client.redeploy(stack_id)
        except StackPulseClientError as exc:
            self._emit(self.board.rollback([stack_id], title="Redeploy failed", error=str(exc)))
            return False
        self.board.settle([stack_id])
        await self.refresh(force=True)
        return result.success

    async def redeploy_bulk(self, *, status_filter: StatusFilter = "all", search: str = "") -> list[str]:
        """Redeploy the selection, or every eligible stack in view when nothing is selected."""
        if self.board.selection:
            requested = list(self.board.selection)
        else:
            requested = [
                view.stack_id for view in self.board.eligible(status_filter=status_filter, search=search)
            ]
        all_eligible = {view.stack_id for view in self.board.eligible()}
        targets = self.board.begin_bulk(requested)
        if not targets:
            return []

        try:
            if set(targets) == all_eligible:
                result = await self.client.redeploy_all()
            else:
                result = await self.client.redeploy_selection(targets)
        except StackPulseClientError as exc:
            self._emit(self.board.rollback(targets, title="Bulk redeploy failed", error=str(exc)))
            return []

        queued = set(result.queued)
        self.board.settle([stack_id for stack_id in targets if stack_id not in queued])
        for stack_id in targets:
            self.board.deselect(stack_id)
        return result.queued

    async def handle_event(self, event: BroadcastEvent) -> None:
        result = self.board.apply_event(event)
        self._emit(result.notifications)
        if result.refresh:
            try:
                await self.refresh(force=True)
            except StackPulseClientError as exc:
                logger.warning("board.refresh_failed", extra={"error": str(exc)})

    async def listen(self) -> None:
        async for event in self.client.stream_events():
            await self.handle_event(event)
