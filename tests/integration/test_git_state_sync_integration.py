"""Integration tests for git-backed StateSync with a real git binary."""

import shutil
import subprocess

import pytest

from models.config import SharedStateConfig
from models.task import TaskStatus
from services.git_repository import GitError, GitRepository
from services.state_sync import MergeConflictError, StateSync
from services.task_store import TaskStore

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
]


def git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    ).stdout.strip()


@pytest.fixture
def remote(tmp_path):
    path = tmp_path / "remote.git"
    subprocess.run(["git", "init", "--bare", str(path)], check=True, capture_output=True)
    return path


def config(**overrides):
    values = {"debounce_ms": 60_000, "push_retry_attempts": 1, "push_retry_delay_ms": 0}
    values.update(overrides)
    return SharedStateConfig(**values)


class TestGitRepository:
    """Integration tests for GitRepository."""

    def test_init_creates_first_commit(self, tmp_path):
        repo = GitRepository(tmp_path / "state")
        assert repo.init() is True
        assert repo.init() is False
        assert git(repo.path, "log", "--format=%s") == "Initialize colony state"
        assert git(repo.path, "rev-parse", "--abbrev-ref", "HEAD") == "main"

    def test_commit_without_changes(self, tmp_path):
        repo = GitRepository(tmp_path / "state")
        repo.init()
        assert repo.commit("nothing") is False

    def test_failed_command_raises(self, tmp_path):
        repo = GitRepository(tmp_path / "state")
        repo.init()
        with pytest.raises(GitError) as exc:
            repo.push()
        assert exc.value.command == "push origin main"

    def test_ensure_remote(self, tmp_path, remote):
        repo = GitRepository(tmp_path / "state")
        repo.init()
        assert not repo.has_remote()
        repo.ensure_remote(str(remote))
        repo.ensure_remote(str(remote))
        assert git(repo.path, "remote", "get-url", "origin") == str(remote)


class TestGitStateSyncIntegration:
    """Integration tests for git-backed shared state."""

    def test_flush_commits_dirty_logs(self, tmp_path):
        sync = StateSync(config(commit_message="Update {schema}"), repo_root=tmp_path)
        with sync:
            tasks = TaskStore(sync)
            tasks.create("A")
            tasks.create("B")
            assert sync.flush() is True

            state_dir = tmp_path / ".colony" / "state"
            assert sync.state_dir == state_dir
            assert (state_dir / "tasks.jsonl").exists()
            assert git(state_dir, "log", "-1", "--format=%s") == "Update tasks"
            assert git(state_dir, "status", "--porcelain") == ""

    def test_close_flushes(self, tmp_path):
        sync = StateSync(config(), repo_root=tmp_path)
        sync.open()
        TaskStore(sync).create("A")
        sync.close()
        log = git(tmp_path / ".colony" / "state", "log", "--format=%s")
        assert log.splitlines() == ["Update colony state [skip ci]", "Initialize colony state"]

    def test_state_survives_restart(self, tmp_path):
        with StateSync(config(), repo_root=tmp_path) as sync:
            tasks = TaskStore(sync)
            a = tasks.create("A")
            b = tasks.create("B", blockers=[a.id])
            tasks.claim(a.id, "agent-1")
            tasks.complete(a.id)

        with StateSync(config(), repo_root=tmp_path) as sync:
            tasks = TaskStore(sync)
            assert tasks.load() == 2
            assert tasks.get(a.id).status == TaskStatus.COMPLETED
            assert tasks.get(b.id).status == TaskStatus.READY

    def test_auto_push_reaches_remote(self, tmp_path, remote):
        sync = StateSync(
            config(repository=str(remote), auto_push=True), repo_root=tmp_path / "host-a"
        )
        with sync:
            TaskStore(sync).create("A")
            sync.flush()
            local_head = git(sync.state_dir, "rev-parse", "HEAD")

        assert git(remote, "rev-parse", "main") == local_head

    def test_failed_push_keeps_local_commit(self, tmp_path):
        missing = tmp_path / "missing.git"
        sync = StateSync(
            config(repository=str(missing), auto_push=True), repo_root=tmp_path / "host-a"
        )
        with sync:
            TaskStore(sync).create("A")
            assert sync.flush() is True
            assert git(sync.state_dir, "log", "-1", "--format=%s") == "Update colony state [skip ci]"

    def test_second_host_pulls_state(self, tmp_path, remote):
        shared = {"repository": str(remote), "auto_push": True, "auto_pull": True}
        with StateSync(config(**shared), repo_root=tmp_path / "host-a") as first:
            task = TaskStore(first).create("Shared task")

        with StateSync(config(**shared), repo_root=tmp_path / "host-b") as second:
            tasks = TaskStore(second)
            tasks.load()
            assert tasks.get(task.id).title == "Shared task"

    def test_concurrent_edits_surface_merge_conflict(self, tmp_path, remote):
        shared = {"repository": str(remote), "auto_push": True, "auto_pull": True}
        first = StateSync(config(**shared), repo_root=tmp_path / "host-a")
        first.open()
        TaskStore(first).create("Base")
        first.flush()

        second = StateSync(config(**shared), repo_root=tmp_path / "host-b")
        second.open()
        try:
            first_tasks = TaskStore(first)
            first_tasks.load()
            first_tasks.create("From host A")
            first.flush()

            second_tasks = TaskStore(second)
            second_tasks.load()
            second_tasks.create("From host B")
            second.flush()

            with pytest.raises(MergeConflictError):
                second.pull()
            with pytest.raises(MergeConflictError):
                second.replay("tasks")
        finally:
            first.close()
            second.close()
