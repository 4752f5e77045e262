"""Agent capability interface and its launcher variants."""

import json
import logging
import os
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict

from models.relay import AgentState, AgentStatus

logger = logging.getLogger(__name__)


class AgentError(Exception):
    """Raised when an agent invocation fails."""

    def __init__(self, agent: str, message: str):
        self.agent = agent
        super().__init__(f"Agent {agent} failed: {message}")


class AgentNotFoundError(Exception):
    """Raised when agent is not registered."""

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"Agent not found: {agent}")


@dataclass(frozen=True)
class AgentContext:
    """Everything an agent gets to know about one invocation."""

    run_id: str
    workflow_name: str
    step_name: str
    invocation_id: str
    attempt: int = 1
    index: int = 0
    total: int = 1
    input: Any = None
    outputs: dict[str, Any] = field(default_factory=dict)
    deadline: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)
    # Set by the engine when this attempt is abandoned after its timeout
    stop_event: threading.Event = field(default_factory=threading.Event, compare=False)

    @property
    def cancelled(self) -> bool:
        """True once the run is cancelled or this attempt has been abandoned."""
        return self.cancel_event.is_set() or self.stop_event.is_set()

    def remaining(self) -> float | None:
        """Seconds left before the attempt times out, if it has a deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def to_payload(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_name": self.workflow_name,
            "step_name": self.step_name,
            "invocation_id": self.invocation_id,
            "attempt": self.attempt,
            "index": self.index,
            "total": self.total,
            "input": self.input,
            "outputs": self.outputs,
        }


class Agent(Protocol):
    """An opaque capability. Long-running agents poll ``context.cancelled`` and stop when it turns true."""

    name: str

    def execute(self, instructions: str, context: AgentContext) -> Any: ...


class CallableAgent:
    """Runs a Python callable as an agent."""

    def __init__(self, name: str, fn: Callable[[str, AgentContext], Any]):
        if not name:
            raise ValueError("name is required")
        if fn is None:
            raise ValueError("fn is required")
        self.name = name
        self._fn = fn

    def execute(self, instructions: str, context: AgentContext) -> Any:
        try:
            return self._fn(instructions, context)
        except AgentError:
            raise
        except Exception as e:
            raise AgentError(self.name, str(e)) from e


class SubprocessAgent:
    """Launches a local process per invocation.

    Instructions go to stdin, the context as JSON in ``COLONY_CONTEXT``. Stdout
    is the output, decoded as JSON when it parses. The process is terminated
    when the invocation is cancelled or its deadline passes.
    """

    def __init__(
        self,
        name: str,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        poll_interval: float = 0.1,
    ):
        if not name:
            raise ValueError("name is required")
        if not command:
            raise ValueError("command is required")
        self.name = name
        self.command = list(command)
        self.cwd = cwd
        self.env = dict(env or {})
        self.poll_interval = poll_interval

    def execute(self, instructions: str, context: AgentContext) -> Any:
        env = {**os.environ, **self.env, "COLONY_CONTEXT": json.dumps(context.to_payload(), default=str)}
        try:
            proc = subprocess.Popen(
                self.command,
                cwd=self.cwd,
                env=env,
                text=True,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise AgentError(self.name, f"could not start {self.command[0]}: {e}") from e

        pending_input: str | None = instructions
        while True:
            try:
                stdout, stderr = proc.communicate(pending_input, timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                remaining = context.remaining()
                if context.cancelled or remaining == 0.0:
                    self._terminate(proc)
                    reason = "cancelled" if context.cancelled else "deadline exceeded"
                    raise AgentError(self.name, reason)

        if proc.returncode != 0:
            detail = (stderr or "").strip().splitlines()[-1:] or [f"exit code {proc.returncode}"]
            raise AgentError(self.name, detail[0])

        text = (stdout or "").strip()
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def _terminate(self, proc: subprocess.Popen) -> None:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()


class AgentResponse(BaseModel):
    """Response from POST /execute."""

    model_config = ConfigDict(frozen=True)

    status: Literal["complete", "failed"]
    output: Any = None
    error: str | None = None


class HttpAgent:
    """Remote agent reached over HTTP."""

    def __init__(self, name: str, base_url: str, timeout: float = 30.0):
        if not name:
            raise ValueError("name is required")
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self.name = name
        self.base_url = base_url
        self._timeout = timeout

    def execute(self, instructions: str, context: AgentContext) -> Any:
        """Call POST {base_url}/execute."""
        if context.cancelled:
            raise AgentError(self.name, "cancelled")

        timeout = self._timeout
        remaining = context.remaining()
        if remaining is not None:
            timeout = max(0.001, min(timeout, remaining))

        url = f"{self.base_url.rstrip('/')}/execute"
        body = {"instructions": instructions, "context": context.to_payload()}

        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(url, json=body)
        except httpx.ConnectError as e:
            raise AgentError(self.name, f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise AgentError(self.name, f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise AgentError(self.name, f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise AgentError(self.name, f"HTTP {response.status_code}: {response.text}")

        try:
            result = AgentResponse.model_validate(response.json())
        except Exception as e:
            raise AgentError(self.name, f"Invalid response: {e}") from e

        if result.status == "failed":
            raise AgentError(self.name, result.error or "remote agent reported failure")
        return result.output


class AgentLauncher(Protocol):
    """Starts and stops long-lived agent processes."""

    def start(self, agent_id: str) -> None: ...

    def stop(self, agent_id: str) -> None: ...


@dataclass
class _AgentEntry:
    agent: Agent | None
    role: str
    status: AgentStatus = AgentStatus.IDLE
    last_activity: datetime | None = None


class AgentRegistry:
    """Agents by name, with the status shown to remote clients."""

    def __init__(self, launcher: AgentLauncher | None = None):
        self._launcher = launcher
        self._entries: dict[str, _AgentEntry] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_mapping(cls, agents: Mapping[str, Agent]) -> "AgentRegistry":
        registry = cls()
        for name, agent in agents.items():
            registry.register(agent, name=name)
        return registry

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def register(self, agent: Agent, name: str | None = None, role: str | None = None) -> None:
        if agent is None:
            raise ValueError("agent is required")
        name = name or agent.name
        with self._lock:
            self._entries[name] = _AgentEntry(agent=agent, role=role or name)
        logger.debug(f"Registered agent {name}")

    def get(self, name: str) -> Agent:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None or entry.agent is None:
            raise AgentNotFoundError(name)
        return entry.agent

    def names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def status(self, name: str) -> AgentStatus:
        with self._lock:
            entry = self._entries.get(name)
        if entry is None:
            raise AgentNotFoundError(name)
        return entry.status

    def mark(self, name: str, status: AgentStatus) -> None:
        with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return
            entry.status = status
            entry.last_activity = self._utc_now()

    def states(self) -> list[AgentState]:
        with self._lock:
            return [
                AgentState(id=name, role=e.role, status=e.status, last_activity=e.last_activity)
                for name, e in self._entries.items()
            ]

    def start(self, name: str) -> None:
        if self._launcher is not None:
            self._launcher.start(name)
        with self._lock:
            if name not in self._entries:
                if self._launcher is None:
                    raise AgentNotFoundError(name)
                self._entries[name] = _AgentEntry(agent=None, role=name)
        self.mark(name, AgentStatus.IDLE)
        logger.info(f"Started agent {name}")

    def stop(self, name: str) -> None:
        self.status(name)
        if self._launcher is not None:
            self._launcher.stop(name)
        self.mark(name, AgentStatus.STOPPED)
        logger.info(f"Stopped agent {name}")

    def restart(self, name: str) -> None:
        self.stop(name)
        self.start(name)
