"""Unit tests for the relay command handler, message board and publisher."""

import threading

import pytest
from pydantic import ValidationError

from models.config import SharedStateConfig, StateBackend
from models.relay import AgentStatus, CommandRequest, StateUpdate
from models.task import TaskStatus
from services.agents import AgentRegistry, CallableAgent
from services.command_handler import CommandHandler, RelayPublisher, build_state_update
from services.messages import MessageBoard
from services.state_sync import PersistenceError, StateSync
from services.task_store import TaskStore


@pytest.fixture
def sync():
    state = StateSync(SharedStateConfig(backend=StateBackend.MEMORY, debounce_ms=10_000))
    state.open()
    yield state
    state.close()


@pytest.fixture
def tasks(sync):
    return TaskStore(sync)


@pytest.fixture
def messages(sync):
    return MessageBoard(sync)


@pytest.fixture
def agents():
    registry = AgentRegistry()
    registry.register(CallableAgent("analyst", lambda i, c: None), role="analysis")
    return registry


@pytest.fixture
def handler(tasks, messages, agents):
    return CommandHandler(tasks, messages, agents)


def request(request_id, **command):
    return CommandRequest.model_validate({"request_id": request_id, "command": command})


class TestMessageBoard:
    """Tests for MessageBoard."""

    def test_send_and_read(self, messages):
        message = messages.send("alice", "bob", "hello")
        assert message.id.startswith("msg-")
        assert messages.messages_for("bob") == [message]
        assert messages.messages_for("carol") == []

    def test_broadcast_reaches_everyone(self, messages):
        direct = messages.send("alice", "bob", "hi bob")
        everyone = messages.broadcast("alice", "standup")
        assert messages.messages_for("bob") == [direct, everyone]
        assert messages.messages_for("carol") == [everyone]

    def test_recent_limit(self, messages):
        for i in range(5):
            messages.send("alice", "bob", f"m{i}")
        assert [m.content for m in messages.recent(2)] == ["m3", "m4"]
        assert messages.recent(0) == []

    def test_empty_content_raises(self, messages):
        with pytest.raises(ValueError, match="content is required"):
            messages.send("alice", "bob", "")

    def test_load(self, sync, messages):
        messages.send("alice", "bob", "persisted")
        reloaded = MessageBoard(sync)
        assert reloaded.load() == 1
        assert reloaded.messages_for("bob")[0].content == "persisted"

    def test_without_sync(self):
        board = MessageBoard()
        board.send("alice", "bob", "memory only")
        assert board.load() == 0


class TestCommandRequest:
    """Tests for command parsing."""

    def test_unknown_command_rejected(self):
        with pytest.raises(ValidationError):
            request("r1", command="format_disk")

    def test_empty_request_id_rejected(self):
        with pytest.raises(ValidationError):
            request(" ", command="broadcast_message", content="x")


class TestCommandHandler:
    """Tests for CommandHandler."""

    def test_init_validation(self, tasks, messages, agents):
        with pytest.raises(ValueError, match="task_store is required"):
            CommandHandler(None, messages, agents)
        with pytest.raises(ValueError, match="cache_size must be positive"):
            CommandHandler(tasks, messages, agents, cache_size=0)

    def test_create_task(self, handler, tasks):
        result = handler.handle(request("r1", command="create_task", title="Review PR", priority="high"))
        assert result.success
        task = tasks.get(result.output)
        assert task.title == "Review PR"
        assert task.metadata == {"priority": "high"}
        assert task.status == TaskStatus.READY

    def test_create_assigned_task(self, handler, tasks):
        result = handler.handle(request("r1", command="create_task", title="Fix bug", assigned_to="analyst"))
        task = tasks.get(result.output)
        assert task.assigned == "analyst"
        assert task.status == TaskStatus.IN_PROGRESS

    def test_redelivered_request_is_applied_once(self, handler, tasks):
        first = handler.handle(request("r1", command="create_task", title="Once"))
        second = handler.handle(request("r1", command="create_task", title="Once"))
        assert first == second
        assert len(tasks.list_tasks()) == 1

    def test_send_and_broadcast(self, handler, messages):
        sent = handler.handle(request("r1", command="send_message", to="analyst", content="hi"))
        broadcast = handler.handle(request("r2", command="broadcast_message", content="all hands"))
        assert sent.success and broadcast.success
        inbox = messages.messages_for("analyst")
        assert [m.id for m in inbox] == [sent.output, broadcast.output]
        assert inbox[0].sender == "relay"

    def test_agent_commands(self, handler, agents):
        assert handler.handle(request("r1", command="stop_agent", agent_id="analyst")).output == "stopped analyst"
        assert agents.status("analyst") == AgentStatus.STOPPED
        assert handler.handle(request("r2", command="start_agent", agent_id="analyst")).output == "started analyst"
        assert handler.handle(request("r3", command="restart_agent", agent_id="analyst")).output == "restarted analyst"
        assert agents.status("analyst") == AgentStatus.IDLE

    def test_rejected_command_is_remembered(self, handler, agents):
        result = handler.handle(request("r1", command="stop_agent", agent_id="ghost"))
        assert not result.success
        assert "Agent not found: ghost" in result.error

        agents.register(CallableAgent("ghost", lambda i, c: None))
        assert handler.handle(request("r1", command="stop_agent", agent_id="ghost")) == result

    def test_persistence_failure_is_not_remembered(self, handler, sync, tasks, monkeypatch):
        original = sync.apply

        def fail(mutation):
            raise PersistenceError(mutation.schema, mutation.key, "disk full")

        monkeypatch.setattr(sync, "apply", fail)
        failed = handler.handle(request("r1", command="create_task", title="Retry me"))
        assert not failed.success
        assert "disk full" in failed.error

        monkeypatch.setattr(sync, "apply", original)
        retried = handler.handle(request("r1", command="create_task", title="Retry me"))
        assert retried.success
        assert tasks.get(retried.output).title == "Retry me"

    def test_cache_is_bounded(self, tasks, messages, agents):
        handler = CommandHandler(tasks, messages, agents, cache_size=2)
        handler.handle(request("r1", command="create_task", title="one"))
        handler.handle(request("r2", command="create_task", title="two"))
        handler.handle(request("r3", command="create_task", title="three"))
        handler.handle(request("r1", command="create_task", title="one"))
        assert [t.title for t in tasks.list_tasks()] == ["one", "two", "three", "one"]


class TestStateUpdate:
    """Tests for outbound snapshots."""

    def test_build_state_update(self, tasks, messages, agents):
        tasks.create("Write docs")
        messages.broadcast("alice", "hello")
        update = build_state_update(tasks, agents, messages)

        assert [a.id for a in update.agents] == ["analyst"]
        assert update.tasks[0]["title"] == "Write docs"
        assert update.tasks[0]["status"] == "ready"
        assert update.messages[0].content == "hello"

    def test_publisher_debounces_state_changes(self, sync, tasks, messages, agents):
        published: list[StateUpdate] = []
        done = threading.Event()

        def sink(update):
            published.append(update)
            done.set()

        publisher = RelayPublisher(sink, tasks, agents, messages, delay=0.1)
        publisher.attach(sync)
        for i in range(5):
            tasks.create(f"task {i}")

        assert done.wait(2.0)
        publisher.close()
        assert len(published) == 1
        assert len(published[0].tasks) == 5

    def test_publisher_survives_sink_failure(self, tasks, messages, agents):
        def sink(update):
            raise RuntimeError("socket closed")

        publisher = RelayPublisher(sink, tasks, agents, messages)
        assert isinstance(publisher.publish(), StateUpdate)
