"""Relay boundary: idempotent inbound commands and outbound state snapshots."""

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timezone

from models.relay import (
    BroadcastMessage,
    CommandRequest,
    CommandResult,
    CreateTask,
    RestartAgent,
    SendMessage,
    StartAgent,
    StateUpdate,
    StopAgent,
)
from services.agents import AgentError, AgentNotFoundError, AgentRegistry
from services.messages import MessageBoard
from services.scheduler import Debouncer
from services.state_sync import Committed, PersistenceError, StateSync
from services.task_store import ClaimConflict, InvalidTransition, TaskNotFoundError, TaskStore

logger = logging.getLogger(__name__)

DEFAULT_RESULT_CACHE_SIZE = 1024
RELAY_SENDER = "relay"

_COMMAND_ERRORS = (
    AgentError,
    AgentNotFoundError,
    ClaimConflict,
    InvalidTransition,
    TaskNotFoundError,
    ValueError,
)


class CommandHandler:
    """Applies relay commands once per request_id.

    Results are remembered for the most recent ``cache_size`` request ids, so a
    redelivered request returns the original result without re-applying it.
    Persistence failures are not remembered; the caller may retry them.
    """

    def __init__(
        self,
        task_store: TaskStore,
        messages: MessageBoard,
        agents: AgentRegistry,
        cache_size: int = DEFAULT_RESULT_CACHE_SIZE,
    ):
        if task_store is None:
            raise ValueError("task_store is required")
        if messages is None:
            raise ValueError("messages is required")
        if agents is None:
            raise ValueError("agents is required")
        if cache_size < 1:
            raise ValueError("cache_size must be positive")

        self._tasks = task_store
        self._messages = messages
        self._agents = agents
        self._cache_size = cache_size
        self._results: OrderedDict[str, CommandResult] = OrderedDict()
        self._lock = threading.Lock()

    def handle(self, request: CommandRequest) -> CommandResult:
        if request is None:
            raise ValueError("request is required")

        with self._lock:
            cached = self._results.get(request.request_id)
            if cached is not None:
                logger.debug(f"Replaying result for request {request.request_id}")
                return cached

            try:
                output = self._apply(request)
                result = CommandResult(request_id=request.request_id, success=True, output=output)
            except PersistenceError as e:
                logger.error(f"Command {request.request_id} failed: {e}")
                return CommandResult(request_id=request.request_id, success=False, error=str(e))
            except _COMMAND_ERRORS as e:
                logger.warning(f"Command {request.request_id} rejected: {e}")
                result = CommandResult(request_id=request.request_id, success=False, error=str(e))

            self._results[request.request_id] = result
            while len(self._results) > self._cache_size:
                self._results.popitem(last=False)
            return result

    def _apply(self, request: CommandRequest) -> str:
        command = request.command
        if isinstance(command, SendMessage):
            message = self._messages.send(RELAY_SENDER, command.to, command.content, command.message_type)
            return message.id
        if isinstance(command, BroadcastMessage):
            return self._messages.broadcast(RELAY_SENDER, command.content).id
        if isinstance(command, CreateTask):
            metadata = {"priority": command.priority} if command.priority else {}
            task = self._tasks.create(command.title, description=command.description, metadata=metadata)
            if command.assigned_to:
                self._tasks.claim(task.id, command.assigned_to)
            return task.id
        if isinstance(command, StartAgent):
            self._agents.start(command.agent_id)
            return f"started {command.agent_id}"
        if isinstance(command, StopAgent):
            self._agents.stop(command.agent_id)
            return f"stopped {command.agent_id}"
        if isinstance(command, RestartAgent):
            self._agents.restart(command.agent_id)
            return f"restarted {command.agent_id}"
        raise ValueError(f"Unsupported command: {command.command}")


def build_state_update(
    task_store: TaskStore,
    agents: AgentRegistry,
    messages: MessageBoard,
    message_limit: int = 50,
) -> StateUpdate:
    return StateUpdate(
        timestamp=datetime.now(timezone.utc),
        agents=agents.states(),
        tasks=[t.model_dump(mode="json") for t in task_store.list_tasks()],
        messages=messages.recent(message_limit),
    )


class RelayPublisher:
    """Pushes a state snapshot to ``sink`` shortly after state changes."""

    def __init__(
        self,
        sink: Callable[[StateUpdate], None],
        task_store: TaskStore,
        agents: AgentRegistry,
        messages: MessageBoard,
        delay: float = 0.1,
    ):
        if sink is None:
            raise ValueError("sink is required")
        self._sink = sink
        self._task_store = task_store
        self._agents = agents
        self._messages = messages
        self._debouncer = Debouncer(self.publish, delay, name="relay-publish")

    def attach(self, sync: StateSync) -> None:
        sync.subscribe(self._on_change)

    def _on_change(self, committed: Committed) -> None:
        self._debouncer.schedule()

    def publish(self) -> StateUpdate:
        update = build_state_update(self._task_store, self._agents, self._messages)
        try:
            self._sink(update)
        except Exception as e:
            logger.warning(f"Relay sink failed: {e}")
        return update

    def flush(self) -> bool:
        return self._debouncer.flush()

    def close(self) -> None:
        self._debouncer.close()
