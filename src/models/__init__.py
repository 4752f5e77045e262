"""Models package."""

from models.config import SharedStateConfig, StateBackend, StateLocation, StateSchema
from models.relay import (
    AgentState,
    AgentStatus,
    CommandRequest,
    CommandResult,
    Message,
    StateUpdate,
)
from models.state import (
    SkipReason,
    StepExecution,
    StepStatus,
    WorkflowContext,
    WorkflowRun,
    WorkflowRunStatus,
)
from models.task import Task, TaskStatistics, TaskStatus
from models.workflow import (
    BackoffStrategy,
    ErrorHandler,
    RetryConfig,
    WorkflowDefinition,
    WorkflowStep,
)

__all__ = [
    "AgentState",
    "AgentStatus",
    "BackoffStrategy",
    "CommandRequest",
    "CommandResult",
    "ErrorHandler",
    "Message",
    "RetryConfig",
    "SharedStateConfig",
    "SkipReason",
    "StateBackend",
    "StateLocation",
    "StateSchema",
    "StateUpdate",
    "StepExecution",
    "StepStatus",
    "Task",
    "TaskStatistics",
    "TaskStatus",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowRun",
    "WorkflowRunStatus",
    "WorkflowStep",
]
