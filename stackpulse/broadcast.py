from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from stackpulse.stacks import RedeployPhase

logger = logging.getLogger(__name__)

REDEPLOY_STATUS_EVENT = "redeployStatus"

# Older clients and servers only knew a boolean "is redeploying" flag.
LEGACY_PHASES: dict[bool, RedeployPhase] = {
    True: RedeployPhase.STARTED,
    False: RedeployPhase.SUCCESS,
}

PHASE_ALIASES: dict[str, RedeployPhase] = {
    "running": RedeployPhase.STARTED,
}


@dataclass(frozen=True)
class BroadcastEvent:
    stack_id: str
    phase: RedeployPhase
    message: str | None = None
    stack_name: str | None = None
    sequence: int | None = None
    epoch: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return PhaseStatusPayload(
            stackId=self.stack_id,
            redeployPhase=self.phase.value,
            stackName=self.stack_name,
            message=self.message,
            sequence=self.sequence,
            epoch=self.epoch,
        ).model_dump(exclude_none=True)


class PhaseStatusPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stackId: str
    redeployPhase: str
    stackName: str | None = None
    message: str | None = None
    sequence: int | None = None
    epoch: str | None = None


class LegacyStatusPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stackId: str
    isRedeploying: bool
    stackName: str | None = None
    message: str | None = None


class StatusPayloadError(ValueError):
    pass


def _resolve_phase(raw: str) -> RedeployPhase:
    normalized = raw.strip().lower()
    if normalized in PHASE_ALIASES:
        return PHASE_ALIASES[normalized]
    try:
        return RedeployPhase(normalized)
    except ValueError as exc:
        raise StatusPayloadError(f"Unknown redeploy phase: {raw!r}") from exc


def parse_status_payload(payload: dict[str, Any]) -> BroadcastEvent:
    """Accept either the phase payload or the legacy ``isRedeploying`` payload."""
    if not isinstance(payload, dict):
        raise StatusPayloadError("Status payload must be a JSON object")
    payload = dict(payload)
    if payload.get("stackId") is not None:
        payload["stackId"] = str(payload["stackId"])
    # Some emitters used "phase" instead of "redeployPhase".
    if "redeployPhase" not in payload and "phase" in payload:
        payload["redeployPhase"] = payload["phase"]

    try:
        if payload.get("redeployPhase") is not None:
            parsed = PhaseStatusPayload.model_validate(payload)
            return BroadcastEvent(
                stack_id=parsed.stackId,
                phase=_resolve_phase(parsed.redeployPhase),
                message=parsed.message,
                stack_name=parsed.stackName,
                sequence=parsed.sequence,
                epoch=parsed.epoch,
            )
        legacy = LegacyStatusPayload.model_validate(payload)
    except ValidationError as exc:
        raise StatusPayloadError(f"Invalid status payload: {exc}") from exc

    return BroadcastEvent(
        stack_id=legacy.stackId,
        phase=LEGACY_PHASES[legacy.isRedeploying],
        message=legacy.message,
        stack_name=legacy.stackName,
    )


class Subscription:
    def __init__(self, broadcaster: "StatusBroadcaster", *, max_queue_size: int) -> None:
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue[BroadcastEvent | None] = asyncio.Queue(maxsize=max_queue_size)
        self.closed = False

    def _offer(self, event: BroadcastEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    async def get(self) -> BroadcastEvent | None:
        """Next event, or ``None`` once the subscription has been closed."""
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        if event is None:
            self.closed = True
        return event

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster._discard(self)
        # Wake a pending get(); drop queued events to make room if needed.
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    def __aiter__(self) -> AsyncIterator[BroadcastEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BroadcastEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class StatusBroadcaster:
    """One ordered fan-out channel per process.

    Subscribers only see events published after they subscribed. A subscriber
    whose queue is full is disconnected instead of blocking the publisher.
    """

    def __init__(self, *, max_queue_size: int = 256) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, max_queue_size=self._max_queue_size)
        self._subscribers.append(subscription)
        return subscription

    def publish(self, event: BroadcastEvent) -> None:
        for subscription in list(self._subscribers):
            if not subscription._offer(event):
                logger.warning(
                    "broadcast.subscriber_overflow",
                    extra={"stack_id": event.stack_id, "phase": event.phase.value},
                )
                subscription.close()

    def close_all(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()

    def _discard(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass


def format_sse(event_name: str, data: dict[str, Any]) -> bytes:
    body = json.dumps(data, separators=(",", ":"))
    return f"event: {event_name}\ndata: {body}\n\n".encode("utf-8")


async def stream_events(
    subscription: Subscription,
    *,
    heartbeat_seconds: float,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[bytes]:
    """Render a subscription as a Server-Sent Events byte stream."""
    try:
        yield b": connected\n\n"
        while True:
            if is_disconnected is not None and await is_disconnected():
                return
            try:
                event = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            if event is None:
                return
            yield format_sse(REDEPLOY_STATUS_EVENT, event.to_payload())
    finally:
        subscription.close()
