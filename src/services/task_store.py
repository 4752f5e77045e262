"""Task board: blocker graph, readiness and claim/transition operations."""

import logging
import threading
from collections.abc import Collection
from datetime import datetime, timezone
from typing import Any

from models.task import Task, TaskStatistics, TaskStatus
from services.id_generator import generate_id
from services.metrics import MetricsSink, emit_safely
from services.state_sync import Mutation, StateSync

logger = logging.getLogger(__name__)

TASKS_SCHEMA = "tasks"


class TaskNotFoundError(Exception):
    """Raised when a task is not found."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ClaimConflict(Exception):
    """Raised when a task cannot be claimed by an agent."""

    def __init__(self, task_id: str, agent_id: str, reason: str):
        self.task_id = task_id
        self.agent_id = agent_id
        self.reason = reason
        super().__init__(f"Cannot claim {task_id} for {agent_id}: {reason}")


class InvalidTransition(Exception):
    """Raised when a status change is not allowed by the task lifecycle."""

    def __init__(
        self,
        task_id: str,
        from_status: TaskStatus,
        to_status: TaskStatus,
        reason: str | None = None,
    ):
        self.task_id = task_id
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        message = f"Invalid transition for {task_id}: {from_status.value} -> {to_status.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TaskStore:
    """Owns the tasks of one colony.

    Every mutation is written through ``StateSync`` first; the in-memory copy is
    replaced only once the append succeeded.
    """

    def __init__(self, sync: StateSync, metrics: MetricsSink | None = None):
        if sync is None:
            raise ValueError("sync is required")
        self._sync = sync
        self._metrics = metrics
        self._tasks: dict[str, Task] = {}
        self._lock = threading.RLock()

    def _utc_now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _commit(self, task: Task) -> Task:
        self._sync.apply(Mutation(TASKS_SCHEMA, task.id, task.model_dump(mode="json")))
        self._tasks[task.id] = task
        return task

    def load(self) -> int:
        """Rehydrate from the tasks log. Returns the number of tasks loaded."""
        records = self._sync.replay(TASKS_SCHEMA)
        with self._lock:
            self._tasks = {r["id"]: Task.model_validate(r) for r in records}
        logger.info(f"Loaded {len(records)} tasks")
        return len(records)

    def completed_ids(self) -> set[str]:
        with self._lock:
            return {t.id for t in self._tasks.values() if t.status == TaskStatus.COMPLETED}

    def get(self, task_id: str) -> Task:
        if not task_id:
            raise ValueError("task_id is required")
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    def exists(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self._tasks

    def create(
        self,
        title: str,
        blockers: list[str] | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Create a task; it is ready without blockers and blocked otherwise."""
        if not title:
            raise ValueError("title is required")

        with self._lock:
            blockers = list(dict.fromkeys(blockers or []))
            for blocker in blockers:
                if blocker not in self._tasks:
                    raise TaskNotFoundError(blocker)

            task = Task(
                id=generate_id("task", exists=self.exists),
                title=title,
                description=description,
                status=TaskStatus.BLOCKED if blockers else TaskStatus.READY,
                created=self._utc_now(),
                blockers=blockers,
                metadata=metadata or {},
            )
            self._commit(task)

        logger.info(f"Created task {task.id} ({task.status.value}): {title}")
        emit_safely(self._metrics, "task_created")
        return task

    def is_ready(self, task: Task, completed_ids: Collection[str] | None = None) -> bool:
        if completed_ids is None:
            completed_ids = self.completed_ids()
        return task.is_ready(completed_ids)

    def claim(self, task_id: str, agent_id: str) -> Task:
        """Assign a ready task to agent_id and start it."""
        if not agent_id:
            raise ValueError("agent_id is required")

        with self._lock:
            task = self.get(task_id)
            if task.assigned == agent_id and task.status == TaskStatus.IN_PROGRESS:
                return task
            if task.assigned and task.assigned != agent_id:
                raise ClaimConflict(task_id, agent_id, f"assigned to {task.assigned}")
            if not self.is_ready(task):
                raise ClaimConflict(task_id, agent_id, f"task is {task.status.value}, not ready")

            claimed = self._commit(
                task.model_copy(update={"status": TaskStatus.IN_PROGRESS, "assigned": agent_id})
            )

        logger.info(f"Task {task_id} claimed by {agent_id}")
        emit_safely(self._metrics, "task_claimed", agent=agent_id)
        return claimed

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        agent_id: str | None = None,
        reason: str | None = None,
        blockers: list[str] | None = None,
    ) -> Task:
        """Move a task to new_status through the matching lifecycle operation."""
        new_status = TaskStatus(new_status)
        if new_status == TaskStatus.IN_PROGRESS:
            return self.progress(task_id, agent_id)
        if new_status == TaskStatus.BLOCKED:
            return self.block(task_id, reason, blockers)
        if new_status == TaskStatus.READY:
            return self.unblock(task_id)
        if new_status == TaskStatus.COMPLETED:
            return self.complete(task_id, agent_id)
        return self.cancel(task_id, reason)

    def progress(self, task_id: str, agent_id: str | None = None) -> Task:
        with self._lock:
            task = self.get(task_id)
            agent_id = agent_id or task.assigned
            if not agent_id:
                raise ValueError("agent_id is required")
            if task.status == TaskStatus.IN_PROGRESS and task.assigned != agent_id:
                raise ClaimConflict(task_id, agent_id, f"assigned to {task.assigned}")
            if task.status not in (TaskStatus.READY, TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS):
                raise InvalidTransition(task_id, task.status, TaskStatus.IN_PROGRESS)
            return self.claim(task_id, agent_id)

    def block(self, task_id: str, reason: str | None, blockers: list[str] | None = None) -> Task:
        """Park an in-progress task, optionally on further blockers."""
        if not reason:
            raise ValueError("reason is required")

        with self._lock:
            task = self.get(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise InvalidTransition(task_id, task.status, TaskStatus.BLOCKED)

            added = [b for b in dict.fromkeys(blockers or []) if b not in task.blockers]
            for blocker in added:
                if blocker == task_id:
                    raise InvalidTransition(
                        task_id, task.status, TaskStatus.BLOCKED, "a task cannot block itself"
                    )
                if blocker not in self._tasks:
                    raise TaskNotFoundError(blocker)

            blocked = self._commit(
                task.model_copy(
                    update={
                        "status": TaskStatus.BLOCKED,
                        "blockers": task.blockers + added,
                        "metadata": {**task.metadata, "blocked_reason": reason},
                    }
                )
            )

        logger.info(f"Task {task_id} blocked: {reason}")
        return blocked

    def unblock(self, task_id: str) -> Task:
        with self._lock:
            task = self.get(task_id)
            if task.status != TaskStatus.BLOCKED:
                raise InvalidTransition(task_id, task.status, TaskStatus.READY)
            if not self.is_ready(task):
                raise InvalidTransition(
                    task_id, task.status, TaskStatus.READY, "blockers are not completed"
                )
            return self._commit(self._as_ready(task))

    def complete(self, task_id: str, agent_id: str | None = None) -> Task:
        """Finish an in-progress task and release the tasks waiting on it."""
        with self._lock:
            task = self.get(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise InvalidTransition(task_id, task.status, TaskStatus.COMPLETED)
            if agent_id and task.assigned != agent_id:
                raise ClaimConflict(task_id, agent_id, f"assigned to {task.assigned}")

            completed = self._commit(
                task.model_copy(
                    update={"status": TaskStatus.COMPLETED, "completed": self._utc_now()}
                )
            )
            released = self._release_dependents(task_id)

        logger.info(f"Task {task_id} completed, released {len(released)} dependents")
        emit_safely(self._metrics, "task_completed")
        return completed

    def cancel(self, task_id: str, reason: str | None = None) -> Task:
        with self._lock:
            task = self.get(task_id)
            if task.is_terminal:
                raise InvalidTransition(task_id, task.status, TaskStatus.CANCELLED)
            metadata = dict(task.metadata)
            if reason:
                metadata["cancel_reason"] = reason
            cancelled = self._commit(
                task.model_copy(update={"status": TaskStatus.CANCELLED, "metadata": metadata})
            )

        logger.info(f"Task {task_id} cancelled")
        emit_safely(self._metrics, "task_cancelled")
        return cancelled

    def delete(self, task_id: str) -> None:
        """Remove a task and scrub it from every other task's blockers."""
        with self._lock:
            self.get(task_id)
            self._sync.apply(Mutation(TASKS_SCHEMA, task_id, None))
            del self._tasks[task_id]

            completed_ids = self.completed_ids()
            for other in list(self._tasks.values()):
                if task_id not in other.blockers:
                    continue
                scrubbed = other.model_copy(
                    update={"blockers": [b for b in other.blockers if b != task_id]}
                )
                if scrubbed.status == TaskStatus.BLOCKED and scrubbed.is_ready(completed_ids):
                    scrubbed = self._as_ready(scrubbed)
                self._commit(scrubbed)

        logger.info(f"Deleted task {task_id}")
        emit_safely(self._metrics, "task_deleted")

    def list_tasks(
        self,
        status: TaskStatus | None = None,
        agent_id: str | None = None,
    ) -> list[Task]:
        """Tasks in creation order, optionally filtered."""
        with self._lock:
            tasks = list(self._tasks.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        if agent_id is not None:
            tasks = [t for t in tasks if t.assigned == agent_id]
        return tasks

    def tasks_for_agent(self, agent_id: str) -> list[Task]:
        if not agent_id:
            raise ValueError("agent_id is required")
        return self.list_tasks(agent_id=agent_id)

    def list_claimable(self, agent_id: str) -> list[Task]:
        """Ready, unassigned tasks in creation order."""
        if not agent_id:
            raise ValueError("agent_id is required")
        with self._lock:
            completed_ids = self.completed_ids()
            return [
                t for t in self._tasks.values()
                if t.assigned is None and t.is_ready(completed_ids)
            ]

    def statistics(self) -> TaskStatistics:
        counts = {status.value: 0 for status in TaskStatus}
        with self._lock:
            for task in self._tasks.values():
                counts[task.status.value] += 1
            total = len(self._tasks)
        return TaskStatistics(total=total, **counts)

    def _as_ready(self, task: Task) -> Task:
        metadata = {k: v for k, v in task.metadata.items() if k != "blocked_reason"}
        return task.model_copy(update={"status": TaskStatus.READY, "metadata": metadata})

    def _release_dependents(self, task_id: str) -> list[Task]:
        completed_ids = self.completed_ids()
        released = []
        for task in list(self._tasks.values()):
            if (
                task.status == TaskStatus.BLOCKED
                and task_id in task.blockers
                and task.is_ready(completed_ids)
            ):
                released.append(self._commit(self._as_ready(task)))
                logger.debug(f"Task {task.id} is now ready")
        return released
