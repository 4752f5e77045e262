"""Write-through persistence: append-only logs, query cache and git durability."""

import json
import logging
import threading
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from redis.exceptions import RedisError

from models.config import SharedStateConfig, StateBackend, StateSchema
from services.append_log import EMPTY_DIGEST, FileAppendLog, MemoryAppendLog, chain_digest
from services.git_repository import GitConflictError, GitError, GitRepository
from services.metrics import MetricsSink, emit_safely
from services.scheduler import Debouncer
from services.state_cache import CacheCorruption, RedisStateCache

logger = logging.getLogger(__name__)

CONFLICT_MARKERS = ("<<<<<<<", "=======", ">>>>>>>")

# Lock and scratch files kept out of the state repository
UNTRACKED_PATTERNS = [".*.lock", ".*.tmp"]


class PersistenceError(Exception):
    """Raised when a mutation cannot be made durable locally."""

    def __init__(self, schema: str, key: str | None, reason: str):
        self.schema = schema
        self.key = key
        self.reason = reason
        target = f"{schema}/{key}" if key else schema
        super().__init__(f"Persistence failed for {target}: {reason}")


class MergeConflictError(PersistenceError):
    """Raised when pulled state contains unresolved merge conflicts."""


@dataclass(frozen=True)
class Mutation:
    """A full replacement record for ``key`` in ``schema``; ``record=None`` deletes it."""

    schema: str
    key: str
    record: dict[str, Any] | None = None

    @property
    def is_delete(self) -> bool:
        return self.record is None


@dataclass(frozen=True)
class Committed:
    """Acknowledgement that a mutation was appended to its log."""

    schema: str
    key: str
    sequence: int
    digest: str
    deleted: bool = False


def canonical_line(record: dict[str, Any]) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"), default=str)


class StateSync:
    """Owns the per-schema logs and every path by which they change.

    Lifecycle: ``open()`` prepares the state directory, pulls when configured and
    verifies the cache; ``close()`` flushes pending work and stops the timer.
    """

    def __init__(
        self,
        config: SharedStateConfig,
        repo_root: Path | None = None,
        cache: RedisStateCache | None = None,
        metrics: MetricsSink | None = None,
    ):
        if config is None:
            raise ValueError("config is required")

        self.config = config
        self._cache = cache
        self._metrics = metrics
        self._schemas: dict[str, StateSchema] = {s.name: s for s in config.schemas}
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._closing = threading.Event()
        self._listeners: list[Callable[[Committed], None]] = []
        self._dirty: set[str] = set()
        self._digests: dict[str, tuple[str, int]] = {}
        self._stale_caches: set[str] = set()
        self._push_pending = False
        self._opened = False
        self.flush_count = 0

        if config.backend == StateBackend.MEMORY:
            self.state_dir = None
            self._git = None
            self._logs = {name: MemoryAppendLog(name) for name in self._schemas}
        else:
            self.state_dir = config.state_dir_path(Path(repo_root or Path.cwd()))
            self._git = GitRepository(self.state_dir, branch=config.branch)
            self._logs = {
                name: FileAppendLog(self.state_dir / schema.file)
                for name, schema in self._schemas.items()
            }

        self._debouncer = Debouncer(
            self.flush, config.debounce_ms / 1000.0, name="state-sync-flush"
        )

    @property
    def schemas(self) -> list[str]:
        return list(self._schemas)

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def flush_pending(self) -> bool:
        return self._debouncer.pending

    def _log(self, schema: str) -> FileAppendLog | MemoryAppendLog:
        if schema not in self._logs:
            raise ValueError(f"Unknown schema: {schema}")
        return self._logs[schema]

    def _cached(self, schema: str) -> bool:
        return self._cache is not None and self._schemas[schema].cache

    def _cache_readable(self, schema: str) -> bool:
        return self._cached(schema) and schema not in self._stale_caches

    def open(self) -> None:
        if self._opened:
            return
        self._closing.clear()

        if self._git is not None:
            try:
                self._git.init()
                self._git.exclude(UNTRACKED_PATTERNS)
                if self.config.repository:
                    self._git.ensure_remote(self.config.repository)
            except GitError as e:
                raise PersistenceError("*", None, str(e)) from e
            if self.config.sync_on_start:
                self.pull()

        self._refresh()

        self._opened = True
        logger.info(f"Opened shared state ({self.config.backend.value}) at {self.state_dir or 'memory'}")

    def close(self) -> None:
        if not self._opened:
            return
        self._closing.set()
        self._debouncer.close()
        self._debouncer = Debouncer(
            self.flush, self.config.debounce_ms / 1000.0, name="state-sync-flush"
        )
        self._opened = False
        logger.info("Closed shared state")

    def __enter__(self) -> "StateSync":
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def pull(self) -> bool:
        """Pull remote state. Returns False when pulling is disabled or failed non-fatally."""
        if self._git is None or not self.config.auto_pull:
            return False
        if not self.config.repository:
            logger.debug("No repository configured, skipping pull")
            return False
        try:
            self._git.pull()
        except GitConflictError as e:
            raise MergeConflictError("*", None, e.stderr) from e
        except GitError as e:
            logger.warning(f"Pull failed, using local state: {e}")
            return False
        logger.info("Pulled latest shared state")
        if self._opened:
            self._refresh()
        return True

    def apply(self, mutation: Mutation) -> Committed:
        """Append the mutation to its log and mirror it into the cache."""
        if mutation is None:
            raise ValueError("mutation is required")
        if not mutation.key:
            raise ValueError("mutation key is required")
        if not self._opened:
            raise PersistenceError(mutation.schema, mutation.key, "shared state is not open")

        log = self._log(mutation.schema)
        if mutation.is_delete:
            record = {"id": mutation.key, "_deleted": True}
        else:
            record = {**mutation.record, "id": mutation.key}
        line = canonical_line(record)

        try:
            with log.locked():
                offset = log.append(line)
                previous = self._digests.get(mutation.schema, (EMPTY_DIGEST, 0))
                digest = chain_digest(previous[0], line)
                count = previous[1] + 1
                self._digests[mutation.schema] = (digest, count)
                try:
                    self._mirror(mutation, record, digest, count)
                except RedisError:
                    # A failed mutation leaves no line behind
                    log.truncate(offset)
                    self._digests[mutation.schema] = previous
                    self._invalidate_cache(mutation.schema)
                    raise
        except (OSError, RedisError) as e:
            logger.error(f"Failed to persist {mutation.schema}/{mutation.key}: {e}")
            raise PersistenceError(mutation.schema, mutation.key, str(e)) from e

        with self._lock:
            self._dirty.add(mutation.schema)
        self._debouncer.schedule()

        committed = Committed(
            schema=mutation.schema,
            key=mutation.key,
            sequence=count,
            digest=digest,
            deleted=mutation.is_delete,
        )
        self._notify(committed)
        return committed

    def subscribe(self, listener: Callable[[Committed], None]) -> None:
        """Call ``listener`` after every committed mutation."""
        if listener is None:
            raise ValueError("listener is required")
        self._listeners.append(listener)

    def _notify(self, committed: Committed) -> None:
        for listener in list(self._listeners):
            try:
                listener(committed)
            except Exception as e:
                logger.warning(f"State listener failed for {committed.schema}/{committed.key}: {e}")

    def flush(self) -> bool:
        """Commit dirty logs and push when configured. Returns False if there was nothing to do."""
        with self._flush_lock:
            with self._lock:
                dirty = sorted(self._dirty)
                self._dirty.clear()

            if not dirty and not self._push_pending:
                return False

            if dirty:
                try:
                    self._commit(dirty)
                except GitError as e:
                    with self._lock:
                        self._dirty.update(dirty)
                    raise PersistenceError(",".join(dirty), None, str(e)) from e
                self.flush_count += 1
                emit_safely(self._metrics, "state_flushed", schemas=",".join(dirty))

            if self._push_pending:
                self._push_with_retry()
            return True

    def _commit(self, dirty: list[str]) -> None:
        if self._git is None or not self.config.auto_commit:
            return
        with ExitStack() as stack:
            for schema in dirty:
                stack.enter_context(self._log(schema).locked())
            paths = [self._log(s).path for s in dirty if self._log(s).path.exists()]
            self._git.add(paths)
            message = self.config.commit_message.replace("{schema}", ", ".join(dirty))
            if self._git.commit(message):
                logger.info(f"Committed shared state: {', '.join(dirty)}")
                if self.config.auto_push:
                    self._push_pending = True

    def _push_with_retry(self) -> None:
        attempts = max(1, self.config.push_retry_attempts)
        delay = self.config.push_retry_delay_ms / 1000.0
        for attempt in range(1, attempts + 1):
            try:
                self._git.push()
            except GitError as e:
                logger.warning(f"Push attempt {attempt}/{attempts} failed: {e}")
                emit_safely(self._metrics, "push_failed", attempt=str(attempt))
                if attempt < attempts and self._closing.wait(delay * 2 ** (attempt - 1)):
                    break
                continue
            self._push_pending = False
            logger.info(f"Pushed shared state to {self.config.branch}")
            return
        logger.warning("Push still pending, local commits are kept and will be pushed on the next flush")

    def replay(self, schema: str) -> list[dict[str, Any]]:
        """Rebuild the current records of schema from its log.

        The last record per id wins; tombstones remove; first-seen order is kept.
        """
        log = self._log(schema)
        source = log.path or schema
        records: dict[str, dict[str, Any]] = {}
        for lineno, line in enumerate(log.lines(), start=1):
            if line.startswith(CONFLICT_MARKERS):
                raise MergeConflictError(schema, None, f"{source}:{lineno}: unresolved merge conflict")
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                raise PersistenceError(schema, None, f"{source}:{lineno}: malformed line: {e}") from e
            if not isinstance(data, dict) or not data.get("id"):
                raise PersistenceError(schema, None, f"{source}:{lineno}: record has no id")

            key = data["id"]
            if data.get("_deleted"):
                records.pop(key, None)
            else:
                records[key] = data
        return list(records.values())

    def get(self, schema: str, key: str) -> dict[str, Any] | None:
        if self._cache_readable(schema):
            return self._cache.get(schema, key)
        for record in self.replay(schema):
            if record["id"] == key:
                return record
        return None

    def query(self, schema: str, **filters: Any) -> list[dict[str, Any]]:
        """Records matching every filter. Served from the cache, so eventually consistent."""
        if self._cache_readable(schema):
            return self._cache.query(schema, **filters)
        filters = {k: v for k, v in filters.items() if v is not None}
        return [
            r for r in self.replay(schema)
            if all(r.get(field) == value for field, value in filters.items())
        ]

    def compact(self, schema: str) -> int:
        """Rewrite the log of schema as its replayed records. Returns the new line count."""
        log = self._log(schema)
        try:
            with log.locked():
                records = self.replay(schema)
                log.rewrite(canonical_line(r) for r in records)
                digest, count = log.digest()
                self._digests[schema] = (digest, count)
                if self._cached(schema):
                    self._cache.rebuild(schema, records, digest, count)
                    self._stale_caches.discard(schema)
        except (OSError, RedisError) as e:
            raise PersistenceError(schema, None, str(e)) from e

        with self._lock:
            self._dirty.add(schema)
        self._debouncer.schedule()
        logger.info(f"Compacted {schema} to {count} records")
        return count

    def rebuild_cache(self, schema: str) -> None:
        if self._cache is None:
            return
        log = self._log(schema)
        with log.locked():
            records = self.replay(schema)
            digest, count = log.digest()
            self._digests[schema] = (digest, count)
            self._cache.rebuild(schema, records, digest, count)
            self._stale_caches.discard(schema)
        emit_safely(self._metrics, "cache_rebuilt", schema=schema)

    def _refresh(self) -> None:
        """Re-read log digests and bring the cache in line with them."""
        for schema in self._schemas:
            log = self._log(schema)
            with log.locked():
                self._digests[schema] = log.digest()
            if self._cached(schema):
                self._ensure_cache(schema)

    def _mirror(self, mutation: Mutation, record: dict[str, Any], digest: str, count: int) -> None:
        schema = mutation.schema
        if not self._cached(schema):
            return
        if schema in self._stale_caches:
            self.rebuild_cache(schema)
        elif mutation.is_delete:
            self._cache.remove(schema, mutation.key, digest, count)
        else:
            self._cache.put(schema, mutation.key, record, digest, count)

    def _invalidate_cache(self, schema: str) -> None:
        """Serve schema from the log until the cache has been rebuilt."""
        self._stale_caches.add(schema)
        try:
            self._cache.invalidate(schema)
        except RedisError as e:
            logger.warning(f"Could not invalidate cache for {schema}: {e}")

    def _ensure_cache(self, schema: str) -> None:
        digest, count = self._digests[schema]
        try:
            if schema in self._stale_caches:
                raise CacheCorruption(schema, "invalidated after a failed write")
            self._cache.verify(schema, digest, count)
        except CacheCorruption as e:
            logger.warning(f"{e}; rebuilding from log")
            self.rebuild_cache(schema)
