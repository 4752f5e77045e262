"""FastAPI REST API for the colony task board and workflow runs."""

import logging
from typing import Any

from fastapi import BackgroundTasks, FastAPI, HTTPException

from api.models import (
    ClaimRequest,
    ErrorResponse,
    ExecutionOrderResponse,
    FlushResponse,
    HealthResponse,
    RunListResponse,
    RunStartRequest,
    TaskCreateRequest,
    TaskListResponse,
    TransitionRequest,
    WorkflowListResponse,
)
from models.relay import CommandRequest, CommandResult
from models.state import WorkflowRun, WorkflowRunStatus
from models.task import Task, TaskStatistics, TaskStatus
from services.command_handler import CommandHandler
from services.state_sync import PersistenceError, StateSync
from services.task_store import ClaimConflict, InvalidTransition, TaskNotFoundError, TaskStore
from services.workflow_catalog import ValidationError, WorkflowCatalog, WorkflowNotFoundError
from services.workflow_engine import RunNotFoundError, RunStateError, WorkflowRunEngine

logger = logging.getLogger(__name__)

ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    code: {"model": ErrorResponse} for code in (400, 404, 409, 503)
}


HTTP_STATUS_BY_ERROR: list[tuple[tuple[type[Exception], ...], int]] = [
    ((TaskNotFoundError, WorkflowNotFoundError, RunNotFoundError), 404),
    ((ClaimConflict, InvalidTransition, RunStateError), 409),
    ((PersistenceError,), 503),
    ((ValidationError, ValueError), 400),
]

SERVICE_ERRORS = tuple(t for types, _ in HTTP_STATUS_BY_ERROR for t in types)


def _http_error(e: Exception) -> HTTPException:
    status_code = next(code for types, code in HTTP_STATUS_BY_ERROR if isinstance(e, types))
    if isinstance(e, ValidationError):
        return HTTPException(status_code=status_code, detail=[str(issue) for issue in e.issues])
    if status_code == 503:
        logger.error(f"Persistence failure: {e}")
    return HTTPException(status_code=status_code, detail=str(e))


class ColonyAPI:
    """REST API over the task store, workflow catalog and run engine.

    Reads and writes go through the services; the API never touches the
    state logs directly.
    """

    def __init__(
        self,
        task_store: TaskStore,
        catalog: WorkflowCatalog,
        engine: WorkflowRunEngine,
        sync: StateSync,
        commands: CommandHandler,
    ):
        if task_store is None:
            raise ValueError("task_store is required")
        if catalog is None:
            raise ValueError("catalog is required")
        if engine is None:
            raise ValueError("engine is required")
        if sync is None:
            raise ValueError("sync is required")
        if commands is None:
            raise ValueError("commands is required")

        self._tasks = task_store
        self._catalog = catalog
        self._engine = engine
        self._sync = sync
        self._commands = commands

    def create_app(self, lifespan: Any = None) -> FastAPI:
        """Create FastAPI application."""
        app = FastAPI(
            title="Colony API",
            description="Task board, workflow definitions and workflow runs",
            version="0.1.0",
            lifespan=lifespan,
        )
        self._add_task_routes(app)
        self._add_workflow_routes(app)
        self._add_run_routes(app)

        @app.post("/commands", response_model=CommandResult)
        def handle_command(request: CommandRequest) -> CommandResult:
            """Apply a relay command, once per request_id."""
            return self._commands.handle(request)

        @app.post("/state/flush", response_model=FlushResponse, responses=ERROR_RESPONSES)
        def flush_state() -> FlushResponse:
            """Commit pending state changes now instead of waiting for the debounce."""
            try:
                return FlushResponse(flushed=self._sync.flush())
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.get("/health", response_model=HealthResponse)
        def health_check() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(status="ok", state="open" if self._sync.is_open else "closed")

        return app

    def _add_task_routes(self, app: FastAPI) -> None:
        @app.get("/tasks", response_model=TaskListResponse)
        def list_tasks(status: TaskStatus | None = None, agent_id: str | None = None) -> TaskListResponse:
            """List tasks in creation order."""
            return TaskListResponse(tasks=self._tasks.list_tasks(status=status, agent_id=agent_id))

        @app.post("/tasks", response_model=Task, status_code=201, responses=ERROR_RESPONSES)
        def create_task(request: TaskCreateRequest) -> Task:
            try:
                return self._tasks.create(
                    request.title,
                    blockers=request.blockers,
                    description=request.description,
                    metadata=request.metadata,
                )
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.get("/tasks/claimable", response_model=TaskListResponse, responses=ERROR_RESPONSES)
        def list_claimable(agent_id: str) -> TaskListResponse:
            try:
                return TaskListResponse(tasks=self._tasks.list_claimable(agent_id))
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.get("/tasks/statistics", response_model=TaskStatistics)
        def task_statistics() -> TaskStatistics:
            return self._tasks.statistics()

        @app.get("/tasks/{task_id}", response_model=Task, responses=ERROR_RESPONSES)
        def get_task(task_id: str) -> Task:
            try:
                return self._tasks.get(task_id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.post("/tasks/{task_id}/claim", response_model=Task, responses=ERROR_RESPONSES)
        def claim_task(task_id: str, request: ClaimRequest) -> Task:
            try:
                return self._tasks.claim(task_id, request.agent_id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.post("/tasks/{task_id}/transition", response_model=Task, responses=ERROR_RESPONSES)
        def transition_task(task_id: str, request: TransitionRequest) -> Task:
            try:
                return self._tasks.transition(
                    task_id,
                    request.status,
                    agent_id=request.agent_id,
                    reason=request.reason,
                    blockers=request.blockers,
                )
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.delete("/tasks/{task_id}", responses=ERROR_RESPONSES)
        def delete_task(task_id: str) -> dict:
            try:
                self._tasks.delete(task_id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            return {"status": "deleted"}

    def _add_workflow_routes(self, app: FastAPI) -> None:
        @app.get("/workflows", response_model=WorkflowListResponse)
        def list_workflows() -> WorkflowListResponse:
            return WorkflowListResponse(
                workflows=[
                    d.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for d in self._catalog.list_workflows()
                ]
            )

        @app.post("/workflows", status_code=201, responses=ERROR_RESPONSES)
        def register_workflow(document: dict[str, Any]) -> dict:
            """Validate and register a workflow definition."""
            try:
                definition = self._catalog.register(document)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            return definition.model_dump(mode="json", by_alias=True, exclude_none=True)

        @app.get("/workflows/{name}", responses=ERROR_RESPONSES)
        def get_workflow(name: str) -> dict:
            try:
                definition = self._catalog.get(name)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            return definition.model_dump(mode="json", by_alias=True, exclude_none=True)

        @app.get("/workflows/{name}/order", response_model=ExecutionOrderResponse, responses=ERROR_RESPONSES)
        def get_execution_order(name: str) -> ExecutionOrderResponse:
            try:
                levels = self._catalog.topological_order(self._catalog.get(name))
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            return ExecutionOrderResponse(workflow_name=name, levels=levels)

        @app.delete("/workflows/{name}", responses=ERROR_RESPONSES)
        def delete_workflow(name: str) -> dict:
            try:
                self._catalog.delete(name)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            return {"status": "deleted"}

        @app.post("/workflows/{name}/runs", response_model=WorkflowRun, status_code=201, responses=ERROR_RESPONSES)
        def start_run(name: str, request: RunStartRequest, background_tasks: BackgroundTasks) -> WorkflowRun:
            """Start a run. With wait=false it executes after the response is sent."""
            try:
                run = self._engine.start_run(name, request.input)
                if request.wait:
                    return self._engine.execute(run.id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
            background_tasks.add_task(self._engine.execute, run.id)
            return run

    def _add_run_routes(self, app: FastAPI) -> None:
        @app.get("/runs", response_model=RunListResponse)
        def list_runs(
            status: WorkflowRunStatus | None = None,
            workflow_name: str | None = None,
        ) -> RunListResponse:
            return RunListResponse(runs=self._engine.list_runs(status=status, workflow_name=workflow_name))

        @app.get("/runs/{run_id}", response_model=WorkflowRun, responses=ERROR_RESPONSES)
        def get_run(run_id: str) -> WorkflowRun:
            try:
                return self._engine.get_run(run_id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)

        @app.post("/runs/{run_id}/cancel", response_model=WorkflowRun, responses=ERROR_RESPONSES)
        def cancel_run(run_id: str) -> WorkflowRun:
            try:
                return self._engine.cancel(run_id)
            except SERVICE_ERRORS as e:
                raise _http_error(e)
