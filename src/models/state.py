"""State models for workflow run and step execution tracking."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class WorkflowRunStatus(str, Enum):
    """Workflow run status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES = frozenset(
    {WorkflowRunStatus.COMPLETED, WorkflowRunStatus.FAILED, WorkflowRunStatus.CANCELLED}
)


class StepStatus(str, Enum):
    """Step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class SkipReason(str, Enum):
    """Why a step was skipped instead of run."""

    DEPENDENCY_FAILED = "dependency_failed"
    RUN_HALTED = "run_halted"
    CANCELLED = "cancelled"


class StepExecution(BaseModel):
    """Persistent record of one step inside a run."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    agent: str
    started_at: datetime | None = None
    completed_at: datetime | None = None
    output: Any = None
    error: str | None = None
    attempt: int = 0
    skip_reason: SkipReason | None = None
    recovered_by: str | None = None

    @property
    def is_satisfied(self) -> bool:
        """Completed, or failed with the output substituted by an error handler."""
        if self.status == StepStatus.COMPLETED:
            return True
        return self.status == StepStatus.FAILED and self.recovered_by is not None


class WorkflowRun(BaseModel):
    """Persistent state of one execution of a workflow definition."""

    id: str
    workflow_name: str
    status: WorkflowRunStatus
    input: Any = None
    started_at: datetime
    completed_at: datetime | None = None
    steps: list[StepExecution] = []
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def step(self, name: str) -> StepExecution:
        for execution in self.steps:
            if execution.step_name == name:
                return execution
        raise KeyError(name)


@dataclass
class WorkflowContext:
    """Run-scoped step outputs. Owned by the run that created it."""

    run_id: str
    workflow_name: str
    input: Any = None
    step_outputs: dict[str, Any] = field(default_factory=dict)
    named_outputs: dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def add_step_output(self, step_name: str, output: Any, key: str | None = None) -> None:
        with self._lock:
            self.step_outputs[step_name] = output
            if key:
                self.named_outputs[key] = output

    def get_step_output(self, step_name: str) -> Any:
        with self._lock:
            return self.step_outputs.get(step_name)

    def snapshot(self) -> dict[str, Any]:
        """Plain-data view handed to agents."""
        with self._lock:
            return {
                "run_id": self.run_id,
                "workflow_name": self.workflow_name,
                "input": self.input,
                "steps": dict(self.step_outputs),
                "outputs": dict(self.named_outputs),
            }
