"""Configuration for git-backed shared state."""

from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field


class StateBackend(str, Enum):
    GIT_BACKED = "git-backed"
    MEMORY = "memory"


class StateLocation(str, Enum):
    IN_REPO = "in-repo"
    EXTERNAL = "external"


class StateSchema(BaseModel):
    """One append-only log file and its cache settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    file: str
    cache: bool = True
    indexes: list[str] = []


def default_schemas() -> list[StateSchema]:
    return [
        StateSchema(name="tasks", file="tasks.jsonl", indexes=["status", "assigned"]),
        StateSchema(name="workflows", file="workflows.jsonl"),
        StateSchema(name="runs", file="runs.jsonl", indexes=["status", "workflow_name"]),
        StateSchema(name="messages", file="messages.jsonl", indexes=["to"]),
    ]


class SharedStateConfig(BaseModel):
    """Where shared state lives and how it is synchronised with git."""

    model_config = ConfigDict(extra="forbid")

    backend: StateBackend = StateBackend.GIT_BACKED
    location: StateLocation = StateLocation.IN_REPO
    path: str = ".colony/state"
    cache_url: str = "redis://localhost:6379/0"
    cache_prefix: str = "colony"
    branch: str = "main"
    auto_commit: bool = True
    auto_push: bool = False
    commit_message: str = "Update colony state [skip ci]"
    auto_pull: bool = False
    sync_on_start: bool = True
    debounce_ms: int = Field(default=5000, ge=0)
    repository: str | None = None
    project_id: str | None = None
    push_retry_attempts: int = Field(default=3, ge=0)
    push_retry_delay_ms: int = Field(default=1000, ge=0)
    schemas: list[StateSchema] = Field(default_factory=default_schemas)

    def state_dir_path(self, repo_root: Path) -> Path:
        """In-repo paths are relative to the repo root; external ones absolute or ~-relative."""
        if self.location == StateLocation.IN_REPO:
            return Path(repo_root) / self.path
        return Path(self.path).expanduser()

    def get_schema(self, name: str) -> StateSchema | None:
        for schema in self.schemas:
            if schema.name == name:
                return schema
        return None

    @property
    def key_prefix(self) -> str:
        return f"{self.cache_prefix}:{self.project_id or 'default'}"


def load_state_config(path: str | Path | None) -> SharedStateConfig:
    """Read the shared_state section of a colony config file."""
    if path is None:
        return SharedStateConfig()

    file_path = Path(path)
    if not file_path.exists():
        return SharedStateConfig()

    with open(file_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")

    return SharedStateConfig.model_validate(data.get("shared_state") or {})
