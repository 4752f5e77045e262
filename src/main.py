"""Main entry point for the colony API server."""

import argparse
import logging
import os
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import redis
import uvicorn
from fastapi import FastAPI

from api.app import ColonyAPI
from models.config import SharedStateConfig, StateBackend, load_state_config
from services.agents import AgentRegistry
from services.command_handler import CommandHandler
from services.log_service import configure_logging
from services.messages import MessageBoard
from services.metrics import LoggingMetrics
from services.state_cache import RedisStateCache
from services.state_sync import StateSync
from services.task_store import TaskStore
from services.workflow_catalog import WorkflowCatalog
from services.workflow_engine import WorkflowRunEngine

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = ".colony/config.yml"
DEFAULT_WORKFLOWS_DIR = ".colony/workflows"


@dataclass
class Colony:
    """All services of one colony, wired to a single shared state."""

    sync: StateSync
    tasks: TaskStore
    catalog: WorkflowCatalog
    engine: WorkflowRunEngine
    messages: MessageBoard
    agents: AgentRegistry
    commands: CommandHandler
    workflows_dir: Path | None = None

    def open(self) -> None:
        """Open shared state and rehydrate every service from it."""
        self.sync.open()
        self.tasks.load()
        self.catalog.hydrate()
        if self.workflows_dir is not None:
            self.catalog.load_directory(self.workflows_dir)
        self.engine.hydrate()
        self.messages.load()

    def close(self) -> None:
        self.sync.close()


def get_redis_client(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


def build_colony(
    config: SharedStateConfig,
    repo_root: Path,
    redis_client: redis.Redis | None = None,
    agents: AgentRegistry | None = None,
) -> Colony:
    """Wire the services together. Nothing is opened yet."""
    metrics = LoggingMetrics()
    cache = None
    if redis_client is not None:
        cache = RedisStateCache(redis_client, prefix=config.key_prefix, schemas=config.schemas)

    sync = StateSync(config, repo_root=repo_root, cache=cache, metrics=metrics)
    tasks = TaskStore(sync, metrics=metrics)
    catalog = WorkflowCatalog(sync)
    agents = agents or AgentRegistry()
    engine = WorkflowRunEngine(catalog, agents, sync=sync, task_store=tasks, metrics=metrics)
    messages = MessageBoard(sync)
    commands = CommandHandler(tasks, messages, agents)

    workflows_dir = repo_root / DEFAULT_WORKFLOWS_DIR
    return Colony(
        sync=sync,
        tasks=tasks,
        catalog=catalog,
        engine=engine,
        messages=messages,
        agents=agents,
        commands=commands,
        workflows_dir=workflows_dir if workflows_dir.is_dir() else None,
    )


def create_app() -> FastAPI:
    """Create FastAPI application with all dependencies."""
    repo_root = Path(os.environ.get("COLONY_REPO_ROOT", os.getcwd()))
    config = load_state_config(os.environ.get("COLONY_CONFIG", repo_root / DEFAULT_CONFIG_PATH))
    if "REDIS_URL" in os.environ:
        config = config.model_copy(update={"cache_url": os.environ["REDIS_URL"]})

    redis_client = None
    if config.backend == StateBackend.GIT_BACKED:
        redis_client = get_redis_client(config.cache_url)
    colony = build_colony(config, repo_root, redis_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        colony.open()
        logger.info(f"Colony state open at {colony.sync.state_dir or 'memory'}")
        try:
            yield
        finally:
            colony.close()

    api = ColonyAPI(colony.tasks, colony.catalog, colony.engine, colony.sync, colony.commands)
    return api.create_app(lifespan=lifespan)


def main() -> int:
    """Run the colony API server."""
    parser = argparse.ArgumentParser(description="Colony API Server")
    parser.add_argument(
        "--host",
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=os.environ.get("LOG_LEVEL", "info").lower(),
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    repo_root = Path(os.environ.get("COLONY_REPO_ROOT", os.getcwd()))
    configure_logging(log_dir=repo_root / ".colony" / "logs", level=args.log_level)

    logger.info("Starting colony API server")
    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


if __name__ == "__main__":
    sys.exit(main())
