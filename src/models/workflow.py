"""Workflow definition documents: steps, triggers, retry and error handlers."""

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class BackoffStrategy(str, Enum):
    """Delay growth between retry attempts."""

    LINEAR = "linear"
    EXPONENTIAL = "exponential"
    FIXED = "fixed"


class RetryConfig(BaseModel):
    """Retry budget for a step. max_attempts counts the first try."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int
    backoff: BackoffStrategy | None = None
    base_delay: float = 1.0


class ManualTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["manual"] = "manual"


class ScheduleTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["schedule"] = "schedule"
    cron: str


class WebhookTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["webhook"] = "webhook"
    path: str


WorkflowTrigger = Annotated[
    Union[ManualTrigger, ScheduleTrigger, WebhookTrigger],
    Field(discriminator="type"),
]


class WorkflowInput(BaseModel):
    """JSON schema describing the run input."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    json_schema: dict[str, Any] = Field(alias="schema")


class WorkflowStep(BaseModel):
    """One node of a workflow DAG, delegated to an agent."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    agent: str
    depends_on: list[str] | None = None
    parallel: int | None = None
    instructions: str
    output: str | None = None
    timeout: str | None = None
    retry: RetryConfig | None = None
    on_failure: str | None = None

    @property
    def dependencies(self) -> list[str]:
        return list(self.depends_on or [])

    @property
    def fan_out(self) -> int:
        return self.parallel or 1

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts if self.retry else 1


class ErrorHandler(BaseModel):
    """Substitute agent run when the named step exhausts its retries."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    step: str
    agent: str
    instructions: str


class WorkflowDefinition(BaseModel):
    """A named DAG of steps. Step order is declaration order."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    input: WorkflowInput | None = None
    steps: list[WorkflowStep]
    error_handling: list[ErrorHandler] | None = None

    def step(self, name: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def handler_for(self, step_name: str) -> ErrorHandler | None:
        for handler in self.error_handling or []:
            if handler.step == step_name:
                return handler
        return None
