"""Unit tests for agents and the agent registry."""

import json
import sys
import threading
import time

import httpx
import pytest
from pytest_httpx import HTTPXMock

from models.relay import AgentStatus
from services.agents import (
    AgentContext,
    AgentError,
    AgentNotFoundError,
    AgentRegistry,
    CallableAgent,
    HttpAgent,
    SubprocessAgent,
)


@pytest.fixture
def context():
    return AgentContext(
        run_id="wf-1",
        workflow_name="pipeline",
        step_name="fetch",
        invocation_id="wf-1.0",
        input={"url": "https://example.com"},
        outputs={"prepare": "ok"},
    )


class TestAgentContext:
    """Tests for AgentContext."""

    def test_payload(self, context):
        payload = context.to_payload()
        assert payload["run_id"] == "wf-1"
        assert payload["step_name"] == "fetch"
        assert payload["outputs"] == {"prepare": "ok"}
        assert payload["attempt"] == 1

    def test_remaining_without_deadline(self, context):
        assert context.remaining() is None

    def test_remaining_never_negative(self):
        ctx = AgentContext("r", "w", "s", "r.0", deadline=time.monotonic() - 5)
        assert ctx.remaining() == 0.0

    def test_cancelled_follows_event(self, context):
        assert not context.cancelled
        context.cancel_event.set()
        assert context.cancelled


class TestCallableAgent:
    """Tests for CallableAgent."""

    def test_init_without_name_raises(self):
        with pytest.raises(ValueError, match="name is required"):
            CallableAgent("", lambda i, c: None)

    def test_returns_output(self, context):
        agent = CallableAgent("fetcher", lambda instructions, ctx: f"{instructions}:{ctx.step_name}")
        assert agent.execute("go", context) == "go:fetch"

    def test_wraps_errors(self, context):
        def fail(instructions, ctx):
            raise KeyError("missing")

        with pytest.raises(AgentError, match="Agent fetcher failed"):
            CallableAgent("fetcher", fail).execute("go", context)


class TestSubprocessAgent:
    """Tests for SubprocessAgent."""

    def test_init_without_command_raises(self):
        with pytest.raises(ValueError, match="command is required"):
            SubprocessAgent("worker", [])

    def test_json_output(self, context):
        script = (
            "import json, os, sys; "
            "ctx = json.loads(os.environ['COLONY_CONTEXT']); "
            "print(json.dumps({'echo': sys.stdin.read(), 'step': ctx['step_name']}))"
        )
        agent = SubprocessAgent("worker", [sys.executable, "-c", script])
        assert agent.execute("do it", context) == {"echo": "do it", "step": "fetch"}

    def test_text_output(self, context):
        agent = SubprocessAgent("worker", [sys.executable, "-c", "print('plain text')"])
        assert agent.execute("", context) == "plain text"

    def test_extra_env(self, context):
        script = "import os; print(os.environ['COLONY_ROLE'])"
        agent = SubprocessAgent("worker", [sys.executable, "-c", script], env={"COLONY_ROLE": "analyst"})
        assert agent.execute("", context) == "analyst"

    def test_nonzero_exit_reports_stderr(self, context):
        script = "import sys; sys.stderr.write('first\\nbad input\\n'); sys.exit(3)"
        agent = SubprocessAgent("worker", [sys.executable, "-c", script])
        with pytest.raises(AgentError, match="bad input"):
            agent.execute("", context)

    def test_missing_executable(self, context):
        agent = SubprocessAgent("worker", ["/nonexistent/colony-agent"])
        with pytest.raises(AgentError, match="could not start"):
            agent.execute("", context)

    def test_deadline_terminates_process(self):
        ctx = AgentContext("r", "w", "s", "r.0", deadline=time.monotonic() + 0.3)
        agent = SubprocessAgent("worker", [sys.executable, "-c", "import time; time.sleep(30)"], poll_interval=0.05)
        started = time.monotonic()
        with pytest.raises(AgentError, match="deadline exceeded"):
            agent.execute("", ctx)
        assert time.monotonic() - started < 10

    def test_cancel_terminates_process(self):
        cancel = threading.Event()
        ctx = AgentContext("r", "w", "s", "r.0", cancel_event=cancel)
        agent = SubprocessAgent("worker", [sys.executable, "-c", "import time; time.sleep(30)"], poll_interval=0.05)
        threading.Timer(0.2, cancel.set).start()
        with pytest.raises(AgentError, match="cancelled"):
            agent.execute("", ctx)


class TestHttpAgent:
    """Tests for HttpAgent."""

    def test_init_validation(self):
        with pytest.raises(ValueError, match="base_url is required"):
            HttpAgent("remote", "  ")
        with pytest.raises(ValueError, match="timeout must be positive"):
            HttpAgent("remote", "http://agent:8080", timeout=0)

    def test_execute_success(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_response(
            url="http://agent:8080/execute",
            method="POST",
            json={"status": "complete", "output": {"rows": 3}},
        )
        agent = HttpAgent("remote", "http://agent:8080/")
        assert agent.execute("analyze", context) == {"rows": 3}

        body = json.loads(httpx_mock.get_request().content)
        assert body["instructions"] == "analyze"
        assert body["context"]["invocation_id"] == "wf-1.0"

    def test_remote_failure(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_response(json={"status": "failed", "error": "no data"})
        with pytest.raises(AgentError, match="no data"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)

    def test_http_error_status(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_response(status_code=500, text="boom")
        with pytest.raises(AgentError, match="HTTP 500"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)

    def test_invalid_response(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_response(json={"unexpected": True})
        with pytest.raises(AgentError, match="Invalid response"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)

    def test_connection_error(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_exception(httpx.ConnectError("refused"))
        with pytest.raises(AgentError, match="Connection failed"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)

    def test_timeout(self, httpx_mock: HTTPXMock, context):
        httpx_mock.add_exception(httpx.ReadTimeout("slow"))
        with pytest.raises(AgentError, match="Request timed out"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)

    def test_cancelled_context_skips_request(self, context):
        context.cancel_event.set()
        with pytest.raises(AgentError, match="cancelled"):
            HttpAgent("remote", "http://agent:8080").execute("x", context)


class RecordingLauncher:
    def __init__(self):
        self.calls = []

    def start(self, agent_id):
        self.calls.append(("start", agent_id))

    def stop(self, agent_id):
        self.calls.append(("stop", agent_id))


class TestAgentRegistry:
    """Tests for AgentRegistry."""

    def test_from_mapping(self):
        agent = CallableAgent("fetcher", lambda i, c: None)
        registry = AgentRegistry.from_mapping({"fetch": agent})
        assert registry.get("fetch") is agent
        assert registry.names() == ["fetch"]
        assert registry.status("fetch") == AgentStatus.IDLE

    def test_get_unknown_raises(self):
        with pytest.raises(AgentNotFoundError):
            AgentRegistry().get("ghost")

    def test_mark_updates_state(self):
        registry = AgentRegistry()
        registry.register(CallableAgent("fetcher", lambda i, c: None), role="collector")
        registry.mark("fetcher", AgentStatus.RUNNING)

        [state] = registry.states()
        assert state.id == "fetcher"
        assert state.role == "collector"
        assert state.status == AgentStatus.RUNNING
        assert state.last_activity is not None

    def test_mark_unknown_is_ignored(self):
        AgentRegistry().mark("ghost", AgentStatus.RUNNING)

    def test_stop_and_start_without_launcher(self):
        registry = AgentRegistry()
        registry.register(CallableAgent("fetcher", lambda i, c: None))
        registry.stop("fetcher")
        assert registry.status("fetcher") == AgentStatus.STOPPED
        registry.start("fetcher")
        assert registry.status("fetcher") == AgentStatus.IDLE

    def test_start_unknown_without_launcher_raises(self):
        with pytest.raises(AgentNotFoundError):
            AgentRegistry().start("ghost")

    def test_launcher_receives_calls(self):
        launcher = RecordingLauncher()
        registry = AgentRegistry(launcher=launcher)
        registry.start("worker-1")
        registry.restart("worker-1")
        assert launcher.calls == [
            ("start", "worker-1"),
            ("stop", "worker-1"),
            ("start", "worker-1"),
        ]
        assert registry.status("worker-1") == AgentStatus.IDLE
