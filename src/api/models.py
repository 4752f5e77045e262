"""Request and response models for REST API."""

from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from models.state import WorkflowRun
from models.task import Task, TaskStatus


class TaskCreateRequest(BaseModel):
    """Request to create a task."""

    model_config = ConfigDict(extra="forbid")

    title: str
    description: str | None = None
    blockers: list[str] = []
    metadata: dict[str, Any] = {}

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("title is required")
        return v


class ClaimRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    agent_id: str

    @field_validator("agent_id")
    @classmethod
    def agent_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("agent_id is required")
        return v


class TransitionRequest(BaseModel):
    """Request to move a task to another status."""

    model_config = ConfigDict(extra="forbid")

    status: TaskStatus
    agent_id: str | None = None
    reason: str | None = None
    blockers: list[str] | None = None


class TaskListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    tasks: list[Task]


class WorkflowListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workflows: list[dict[str, Any]]


class ExecutionOrderResponse(BaseModel):
    """Topological levels of a workflow."""

    model_config = ConfigDict(frozen=True)

    workflow_name: str
    levels: list[list[str]]


class RunStartRequest(BaseModel):
    """Request to start a workflow run."""

    model_config = ConfigDict(extra="forbid")

    input: Any = None
    wait: bool = True


class RunListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    runs: list[WorkflowRun]


class FlushResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    flushed: bool


class ErrorResponse(BaseModel):
    """Error response."""

    model_config = ConfigDict(frozen=True)

    detail: Any


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(frozen=True)

    status: str
    state: str
