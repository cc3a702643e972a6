from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StackResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    Id: str
    Name: str
    EndpointId: int | None = None
    deploymentKind: Literal["git", "compose"]
    updateStatus: Literal["fresh", "outdated", "unknown"]
    duplicateName: bool = False
    redeployDisabled: bool = False
    redeployPhase: Literal["none", "queued", "started", "success", "error", "info"] = "none"
    redeploySequence: int | None = None


class SnapshotResponse(BaseModel):
    stacks: list[StackResponse]
    capturedAt: datetime
    locked: bool = False
    pollError: str | None = None
    epoch: str | None = None
    pollSequence: int | None = None


class RedeployResponse(BaseModel):
    success: bool
    outcome: Literal["succeeded", "failed", "skipped"]


class RedeploySelectionRequest(BaseModel):
    stackIds: list[str] = Field(min_length=1)

    @field_validator("stackIds", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value


class BulkRedeployResponse(BaseModel):
    queued: list[str]


class MaintenanceResponse(BaseModel):
    active: bool
    locked: bool
    updateRunning: bool
    message: str | None = None
    activatedAt: str | None = None
    updatedAt: str | None = None
    extra: dict[str, Any] | None = None


class MaintenanceUpdateRequest(BaseModel):
    active: bool
    message: str | None = None


class UpdateRunRequest(BaseModel):
    running: bool


class RedeployLogResponse(BaseModel):
    id: int
    timestamp: datetime
    stackId: str
    stackName: str
    status: str
    message: str | None = None
    endpoint: int | None = None
    redeployType: str | None = None
