"""Workflow definition loading, validation, ordering and storage."""

import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pydantic
import yaml

from models.workflow import ScheduleTrigger, WebhookTrigger, WorkflowDefinition
from services.state_sync import Mutation, StateSync

logger = logging.getLogger(__name__)

WORKFLOWS_SCHEMA = "workflows"

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd]?)$")
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> float:
    """Seconds in a duration such as ``30s``, ``5m``, ``1h`` or ``2d``."""
    if not value:
        raise ValueError("duration is required")
    match = _DURATION_PATTERN.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid duration: {value}")
    amount, unit = match.groups()
    return float(int(amount) * _DURATION_UNITS[unit])


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    message: str
    step: str | None = None

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class ValidationError(Exception):
    """Raised when a workflow definition is rejected. Carries every issue found."""

    def __init__(self, workflow_name: str | None, issues: list[ValidationIssue]):
        self.workflow_name = workflow_name
        self.issues = list(issues)
        details = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Invalid workflow {workflow_name or '<unnamed>'}: {details}")


class CycleError(ValidationError):
    """Raised when step dependencies form a cycle."""

    def __init__(
        self,
        workflow_name: str | None,
        cycle: list[str],
        issues: list[ValidationIssue] | None = None,
    ):
        self.cycle = list(cycle)
        if issues is None:
            issues = [_cycle_issue(cycle)]
        super().__init__(workflow_name, issues)


class WorkflowNotFoundError(Exception):
    """Raised when workflow is not found."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Workflow not found: {name}")


def _cycle_issue(cycle: list[str]) -> ValidationIssue:
    return ValidationIssue("cycle", f"dependency cycle: {' -> '.join(cycle)}", cycle[0])


def _dependency_graph(definition: WorkflowDefinition) -> dict[str, list[str]]:
    names = {step.name for step in definition.steps}
    graph: dict[str, list[str]] = {}
    for step in definition.steps:
        deps = graph.setdefault(step.name, [])
        deps.extend(d for d in step.dependencies if d in names and d not in deps)
    return graph


def find_cycles(definition: WorkflowDefinition) -> list[list[str]]:
    """Strongly connected components that contain a cycle, smallest first.

    Members are listed in declaration order; ties are broken by the earliest
    declared member.
    """
    graph = _dependency_graph(definition)
    position = {name: i for i, name in enumerate(graph)}

    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    components: list[list[str]] = []
    counter = 0

    for root in graph:
        if root in index_of:
            continue
        # Iterative Tarjan: (node, iterator over its dependencies)
        work = [(root, iter(graph[root]))]
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)

        while work:
            node, deps = work[-1]
            advanced = False
            for dep in deps:
                if dep not in index_of:
                    index_of[dep] = lowlink[dep] = counter
                    counter += 1
                    stack.append(dep)
                    on_stack.add(dep)
                    work.append((dep, iter(graph[dep])))
                    advanced = True
                    break
                if dep in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[dep])
            if advanced:
                continue

            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph[node]:
                    components.append(sorted(component, key=position.__getitem__))

    return sorted(components, key=lambda c: (len(c), position[c[0]]))


class WorkflowCatalog:
    """Loads, validates and keeps workflow definitions.

    With a ``StateSync`` the catalog persists registered definitions to the
    workflows log; without one it is a purely in-memory registry.
    """

    def __init__(self, sync: StateSync | None = None):
        self._sync = sync
        self._definitions: dict[str, WorkflowDefinition] = {}
        self._lock = threading.RLock()

    def load(self, doc: dict[str, Any] | str) -> WorkflowDefinition:
        """Parse a mapping or YAML text into a validated definition."""
        if doc is None:
            raise ValueError("doc is required")

        if isinstance(doc, str):
            try:
                doc = yaml.safe_load(doc)
            except yaml.YAMLError as e:
                raise ValidationError(None, [ValidationIssue("syntax", f"invalid YAML: {e}")])

        if not isinstance(doc, dict):
            raise ValidationError(None, [ValidationIssue("syntax", "document must be a mapping")])

        try:
            definition = WorkflowDefinition.model_validate(doc)
        except pydantic.ValidationError as e:
            issues = [
                ValidationIssue("schema", f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}")
                for err in e.errors()
            ]
            raise ValidationError(doc.get("name"), issues)

        issues = self.validate(definition)
        if issues:
            cycles = [i for i in issues if i.code == "cycle"]
            if cycles:
                raise CycleError(definition.name, find_cycles(definition)[0], issues)
            raise ValidationError(definition.name, issues)
        return definition

    def load_file(self, path: str | Path) -> WorkflowDefinition:
        if not path:
            raise ValueError("path is required")

        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Workflow file not found: {path}")

        with open(file_path, "r", encoding="utf-8") as f:
            return self.load(f.read())

    def validate(self, definition: WorkflowDefinition) -> list[ValidationIssue]:
        """Every structural problem with the definition, in document order."""
        issues: list[ValidationIssue] = []

        if not definition.name or not definition.name.strip():
            issues.append(ValidationIssue("name", "workflow name is required"))
        elif "/" in definition.name or "\\" in definition.name:
            issues.append(ValidationIssue("name", "workflow name must not contain path separators"))

        issues.extend(self._validate_trigger(definition))

        if not definition.steps:
            issues.append(ValidationIssue("steps", "workflow has no steps"))

        names = [step.name for step in definition.steps]
        handler_steps = {h.step for h in definition.error_handling or []}
        seen: set[str] = set()

        for step in definition.steps:
            if not step.name or not step.name.strip():
                issues.append(ValidationIssue("step_name", "step name is required"))
            elif step.name in seen:
                issues.append(ValidationIssue("duplicate", "duplicate step name", step.name))
            seen.add(step.name)

            if not step.agent or not step.agent.strip():
                issues.append(ValidationIssue("agent", "agent is required", step.name))
            if not step.instructions or not step.instructions.strip():
                issues.append(ValidationIssue("instructions", "instructions are required", step.name))

            for dep in step.dependencies:
                if dep == step.name:
                    issues.append(ValidationIssue("self_dependency", "step depends on itself", step.name))
                elif dep not in names:
                    issues.append(ValidationIssue("unknown_dependency", f"unknown dependency '{dep}'", step.name))

            if step.parallel is not None and step.parallel < 1:
                issues.append(ValidationIssue("parallel", "parallel must be at least 1", step.name))
            if step.retry is not None:
                if step.retry.max_attempts < 1:
                    issues.append(ValidationIssue("retry", "max_attempts must be at least 1", step.name))
                if step.retry.base_delay < 0:
                    issues.append(ValidationIssue("retry", "base_delay must not be negative", step.name))
            if step.timeout is not None:
                try:
                    if parse_duration(step.timeout) <= 0:
                        raise ValueError(step.timeout)
                except ValueError:
                    issues.append(
                        ValidationIssue("timeout", f"invalid timeout '{step.timeout}'", step.name)
                    )
            if step.on_failure is not None and step.on_failure not in handler_steps:
                issues.append(
                    ValidationIssue(
                        "on_failure", f"no error handler for '{step.on_failure}'", step.name
                    )
                )

        for handler in definition.error_handling or []:
            if handler.step not in names:
                issues.append(
                    ValidationIssue("handler", f"error handler targets unknown step '{handler.step}'")
                )
            if not handler.agent or not handler.agent.strip():
                issues.append(ValidationIssue("handler", "handler agent is required", handler.step))
            if not handler.instructions or not handler.instructions.strip():
                issues.append(ValidationIssue("handler", "handler instructions are required", handler.step))

        for cycle in find_cycles(definition):
            if len(cycle) > 1:
                issues.append(_cycle_issue(cycle))

        return issues

    def _validate_trigger(self, definition: WorkflowDefinition) -> list[ValidationIssue]:
        trigger = definition.trigger
        if isinstance(trigger, ScheduleTrigger):
            if len(trigger.cron.split()) not in (5, 6):
                return [ValidationIssue("trigger", f"invalid cron expression '{trigger.cron}'")]
        elif isinstance(trigger, WebhookTrigger):
            if not trigger.path.startswith("/"):
                return [ValidationIssue("trigger", f"webhook path must start with '/': {trigger.path}")]
        return []

    def topological_order(self, definition: WorkflowDefinition) -> list[list[str]]:
        """Group steps into levels that can run together, in declaration order."""
        if definition is None:
            raise ValueError("definition is required")

        graph = _dependency_graph(definition)
        remaining = list(graph)
        done: set[str] = set()
        levels: list[list[str]] = []

        while remaining:
            level = [name for name in remaining if all(dep in done for dep in graph[name])]
            if not level:
                cycles = find_cycles(definition)
                raise CycleError(definition.name, cycles[0] if cycles else remaining)
            levels.append(level)
            done.update(level)
            remaining = [name for name in remaining if name not in done]

        logger.debug(f"Execution order for {definition.name}: {levels}")
        return levels

    def dump(self, definition: WorkflowDefinition) -> str:
        return yaml.safe_dump(self._document(definition), sort_keys=False)

    def save(self, definition: WorkflowDefinition, path: str | Path) -> Path:
        file_path = Path(path)
        if file_path.is_dir():
            file_path = file_path / f"{definition.name}.yaml"
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "w", encoding="utf-8") as f:
            f.write(self.dump(definition))
        return file_path

    def _document(self, definition: WorkflowDefinition) -> dict[str, Any]:
        return definition.model_dump(mode="json", by_alias=True, exclude_none=True)

    def register(self, definition: WorkflowDefinition | dict[str, Any] | str) -> WorkflowDefinition:
        """Validate and store a definition, replacing any with the same name."""
        if not isinstance(definition, WorkflowDefinition):
            definition = self.load(definition)
        else:
            issues = self.validate(definition)
            if issues:
                raise ValidationError(definition.name, issues)

        with self._lock:
            if self._sync is not None:
                self._sync.apply(
                    Mutation(WORKFLOWS_SCHEMA, definition.name, {"definition": self._document(definition)})
                )
            self._definitions[definition.name] = definition

        logger.info(f"Registered workflow {definition.name} ({len(definition.steps)} steps)")
        return definition

    def get(self, name: str) -> WorkflowDefinition:
        if not name:
            raise ValueError("name is required")
        with self._lock:
            definition = self._definitions.get(name)
        if definition is None:
            raise WorkflowNotFoundError(name)
        return definition

    def list_workflows(self) -> list[WorkflowDefinition]:
        with self._lock:
            return sorted(self._definitions.values(), key=lambda d: d.name)

    def delete(self, name: str) -> None:
        with self._lock:
            self.get(name)
            if self._sync is not None:
                self._sync.apply(Mutation(WORKFLOWS_SCHEMA, name, None))
            del self._definitions[name]
        logger.info(f"Deleted workflow {name}")

    def load_directory(self, path: str | Path) -> list[WorkflowDefinition]:
        """Register every *.yaml / *.yml file in a directory."""
        directory = Path(path)
        if not directory.is_dir():
            return []
        files = sorted([*directory.glob("*.yaml"), *directory.glob("*.yml")])
        registered = []
        for file_path in files:
            definition = self.load_file(file_path)
            with self._lock:
                unchanged = self._definitions.get(definition.name) == definition
            registered.append(definition if unchanged else self.register(definition))
        return registered

    def hydrate(self) -> int:
        """Rebuild the registry from the workflows log."""
        if self._sync is None:
            return 0
        records = self._sync.replay(WORKFLOWS_SCHEMA)
        with self._lock:
            self._definitions = {
                r["id"]: WorkflowDefinition.model_validate(r["definition"]) for r in records
            }
        logger.info(f"Loaded {len(records)} workflow definitions")
        return len(records)
