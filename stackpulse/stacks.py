from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable


class RedeployPhase(str, Enum):
    NONE = "none"
    QUEUED = "queued"
    STARTED = "started"
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"

    @property
    def is_busy(self) -> bool:
        return self in (RedeployPhase.QUEUED, RedeployPhase.STARTED)

    @property
    def is_terminal(self) -> bool:
        return self in (RedeployPhase.SUCCESS, RedeployPhase.ERROR)


class Staleness(str, Enum):
    FRESH = "fresh"
    OUTDATED = "outdated"
    UNKNOWN = "unknown"


class DeploymentKind(str, Enum):
    GIT = "git"
    COMPOSE = "compose"


@dataclass(frozen=True)
class Stack:
    id: str
    name: str
    endpoint_id: int | None
    deployment_kind: DeploymentKind
    staleness: Staleness = Staleness.UNKNOWN
    duplicate_name: bool = False
    redeploy_disabled: bool = False
    # Upstream payload (Env, GitConfig, ...) needed to rebuild redeploy requests.
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_portainer(cls, payload: dict[str, Any]) -> "Stack":
        stack_id = payload.get("Id")
        if stack_id is None:
            raise ValueError("Portainer stack payload is missing Id")
        endpoint_id = payload.get("EndpointId")
        kind = DeploymentKind.GIT if payload.get("GitConfig") else DeploymentKind.COMPOSE
        return cls(
            id=str(stack_id),
            name=str(payload.get("Name") or ""),
            endpoint_id=int(endpoint_id) if endpoint_id is not None else None,
            deployment_kind=kind,
            raw=dict(payload),
        )

    @property
    def label(self) -> str:
        if self.name:
            return f"{self.name} (ID: {self.id})"
        return f"Stack {self.id}"

    @property
    def env(self) -> list[dict[str, Any]]:
        return list(self.raw.get("Env") or [])

    @property
    def git_reference(self) -> str | None:
        git_config = self.raw.get("GitConfig") or {}
        reference = git_config.get("ReferenceName")
        return reference if isinstance(reference, str) and reference else None


@dataclass(frozen=True)
class Snapshot:
    stacks: tuple[Stack, ...]
    captured_at: datetime
    locked: bool = False
    poll_error: str | None = None
    # Phase sequence already issued when the poll started.
    sequence: int = 0

    def get(self, stack_id: str) -> Stack | None:
        for stack in self.stacks:
            if stack.id == stack_id:
                return stack
        return None

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(stack.id for stack in self.stacks)


def filter_to_scope(stacks: Iterable[Stack], *, endpoint_id: int) -> list[Stack]:
    return [stack for stack in stacks if stack.endpoint_id == endpoint_id]


def flag_duplicate_names(stacks: Iterable[Stack]) -> list[Stack]:
    """First stack with a given name wins; later ones stay listed but are flagged."""
    seen: set[str] = set()
    result: list[Stack] = []
    for stack in stacks:
        if stack.name in seen:
            result.append(replace(stack, duplicate_name=True))
            continue
        seen.add(stack.name)
        result.append(stack)
    return result


def sort_by_name(stacks: Iterable[Stack]) -> list[Stack]:
    return sorted(stacks, key=lambda stack: stack.name.casefold())


def mark_disabled(stacks: Iterable[Stack], *, disabled_names: frozenset[str]) -> list[Stack]:
    return [
        replace(stack, redeploy_disabled=True) if stack.name in disabled_names else stack
        for stack in stacks
    ]


def is_redeploy_eligible(stack: Stack, phase: RedeployPhase) -> bool:
    if stack.staleness is Staleness.FRESH:
        return False
    if stack.redeploy_disabled:
        return False
    return phase is RedeployPhase.NONE
