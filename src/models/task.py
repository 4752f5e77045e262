"""Task model for the shared task board."""

from collections.abc import Collection
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class TaskStatus(str, Enum):
    """Task lifecycle status."""

    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.CANCELLED})


class Task(BaseModel):
    """A unit of work with an ordered blocker list."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str | None = None
    status: TaskStatus
    created: datetime
    assigned: str | None = None
    blockers: list[str] = Field(default_factory=list)
    completed: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "title")
    @classmethod
    def field_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("field is required")
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    def is_ready(self, completed_ids: Collection[str]) -> bool:
        """Ready or blocked, and every blocker is in the completed set."""
        if self.status not in (TaskStatus.READY, TaskStatus.BLOCKED):
            return False
        return all(blocker in completed_ids for blocker in self.blockers)


class TaskStatistics(BaseModel):
    """Task counts per status."""

    total: int = 0
    ready: int = 0
    blocked: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0

    @computed_field
    @property
    def completion_percentage(self) -> float:
        if self.total == 0:
            return 0.0
        return self.completed / self.total * 100.0
