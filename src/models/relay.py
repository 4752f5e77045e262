"""Relay boundary models: inbound commands and outbound state snapshots."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SendMessage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["send_message"] = "send_message"
    to: str
    content: str
    message_type: str = "info"


class BroadcastMessage(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["broadcast_message"] = "broadcast_message"
    content: str


class CreateTask(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["create_task"] = "create_task"
    title: str
    description: str | None = None
    assigned_to: str | None = None
    priority: str | None = None


class StartAgent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["start_agent"] = "start_agent"
    agent_id: str


class StopAgent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["stop_agent"] = "stop_agent"
    agent_id: str


class RestartAgent(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    command: Literal["restart_agent"] = "restart_agent"
    agent_id: str


Command = Annotated[
    Union[SendMessage, BroadcastMessage, CreateTask, StartAgent, StopAgent, RestartAgent],
    Field(discriminator="command"),
]


class CommandRequest(BaseModel):
    """Inbound command keyed by a caller-supplied request id."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    request_id: str
    command: Command

    @field_validator("request_id")
    @classmethod
    def request_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("request_id is required")
        return v


class CommandResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_id: str
    success: bool
    output: str | None = None
    error: str | None = None


class AgentStatus(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    FAILED = "failed"
    STOPPED = "stopped"


class AgentState(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: str
    status: AgentStatus
    last_activity: datetime | None = None


class Message(BaseModel):
    """A message between agents, persisted to the messages log."""

    model_config = ConfigDict(frozen=True)

    id: str
    sender: str
    to: str
    content: str
    timestamp: datetime
    message_type: str = "info"


class StateUpdate(BaseModel):
    """Outbound snapshot for remote clients."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    agents: list[AgentState] = []
    tasks: list[dict] = []
    messages: list[Message] = []
