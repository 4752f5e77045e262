# Services package

from services.agents import (
    Agent,
    AgentContext,
    AgentError,
    AgentNotFoundError,
    AgentRegistry,
    CallableAgent,
    HttpAgent,
    SubprocessAgent,
)
from services.command_handler import CommandHandler, RelayPublisher, build_state_update
from services.git_repository import GitConflictError, GitError, GitRepository
from services.id_generator import IdCollisionError, child_id, generate_id
from services.log_service import SizeAndTimeRotatingHandler, configure_logging
from services.messages import MessageBoard
from services.metrics import LoggingMetrics, MetricsSink, RecordingMetrics
from services.scheduler import Debouncer
from services.state_cache import CacheCorruption, RedisStateCache
from services.state_sync import (
    Committed,
    MergeConflictError,
    Mutation,
    PersistenceError,
    StateSync,
)
from services.task_store import (
    ClaimConflict,
    InvalidTransition,
    TaskNotFoundError,
    TaskStore,
)
from services.workflow_catalog import (
    CycleError,
    ValidationError,
    ValidationIssue,
    WorkflowCatalog,
    WorkflowNotFoundError,
    parse_duration,
)
from services.workflow_engine import (
    RunNotFoundError,
    RunStateError,
    StepExecutionError,
    StepTimeoutError,
    WorkflowRunEngine,
    compute_backoff,
)

__all__ = [
    "Agent",
    "AgentContext",
    "AgentError",
    "AgentNotFoundError",
    "AgentRegistry",
    "CacheCorruption",
    "CallableAgent",
    "ClaimConflict",
    "CommandHandler",
    "Committed",
    "CycleError",
    "Debouncer",
    "GitConflictError",
    "GitError",
    "GitRepository",
    "HttpAgent",
    "IdCollisionError",
    "InvalidTransition",
    "LoggingMetrics",
    "MergeConflictError",
    "MessageBoard",
    "MetricsSink",
    "Mutation",
    "PersistenceError",
    "RecordingMetrics",
    "RedisStateCache",
    "RelayPublisher",
    "RunNotFoundError",
    "RunStateError",
    "SizeAndTimeRotatingHandler",
    "StateSync",
    "StepExecutionError",
    "StepTimeoutError",
    "SubprocessAgent",
    "TaskNotFoundError",
    "TaskStore",
    "ValidationError",
    "ValidationIssue",
    "WorkflowCatalog",
    "WorkflowNotFoundError",
    "WorkflowRunEngine",
    "build_state_update",
    "child_id",
    "compute_backoff",
    "configure_logging",
    "generate_id",
    "parse_duration",
]
