"""Unit tests for StateSync on the memory backend."""

import time

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from models.config import SharedStateConfig, StateBackend
from services.metrics import RecordingMetrics
from services.state_cache import RedisStateCache
from services.state_sync import (
    Committed,
    MergeConflictError,
    Mutation,
    PersistenceError,
    StateSync,
    canonical_line,
)


def memory_config(**overrides):
    return SharedStateConfig(backend=StateBackend.MEMORY, **overrides)


@pytest.fixture
def sync():
    state = StateSync(memory_config(debounce_ms=10_000))
    state.open()
    yield state
    state.close()


class TestStateSyncInit:
    """Tests for StateSync initialization."""

    def test_init_without_config_raises(self):
        with pytest.raises(ValueError, match="config is required"):
            StateSync(None)

    def test_memory_backend_has_no_state_dir(self):
        state = StateSync(memory_config())
        assert state.state_dir is None
        assert state.schemas == ["tasks", "workflows", "runs", "messages"]
        assert not state.is_open

    def test_context_manager_opens_and_closes(self):
        with StateSync(memory_config()) as state:
            assert state.is_open
        assert not state.is_open


class TestApply:
    """Tests for apply."""

    def test_apply_requires_open(self):
        state = StateSync(memory_config())
        with pytest.raises(PersistenceError, match="not open"):
            state.apply(Mutation("tasks", "t1", {"title": "x"}))

    def test_apply_returns_sequence_and_digest(self, sync):
        first = sync.apply(Mutation("tasks", "t1", {"title": "a"}))
        second = sync.apply(Mutation("tasks", "t2", {"title": "b"}))
        assert isinstance(first, Committed)
        assert (first.sequence, second.sequence) == (1, 2)
        assert first.digest != second.digest
        assert not first.deleted

    def test_apply_sets_id_from_key(self, sync):
        sync.apply(Mutation("tasks", "t1", {"id": "other", "title": "a"}))
        assert sync.get("tasks", "t1") == {"id": "t1", "title": "a"}

    def test_apply_unknown_schema_raises(self, sync):
        with pytest.raises(ValueError, match="Unknown schema"):
            sync.apply(Mutation("nope", "k", {}))

    def test_apply_without_key_raises(self, sync):
        with pytest.raises(ValueError, match="key is required"):
            sync.apply(Mutation("tasks", "", {}))

    def test_apply_marks_flush_pending(self, sync):
        sync.apply(Mutation("tasks", "t1", {"title": "a"}))
        assert sync.flush_pending

    def test_listeners_are_notified(self, sync):
        seen = []
        sync.subscribe(seen.append)
        sync.apply(Mutation("tasks", "t1", {"title": "a"}))
        sync.apply(Mutation("tasks", "t1"))
        assert [(c.key, c.deleted) for c in seen] == [("t1", False), ("t1", True)]

    def test_listener_failure_does_not_fail_apply(self, sync):
        def broken(committed):
            raise RuntimeError("listener down")

        sync.subscribe(broken)
        assert sync.apply(Mutation("tasks", "t1", {"title": "a"})).sequence == 1


class TestReplay:
    """Tests for replay."""

    def test_last_record_wins_in_first_seen_order(self, sync):
        sync.apply(Mutation("tasks", "a", {"v": 1}))
        sync.apply(Mutation("tasks", "b", {"v": 1}))
        sync.apply(Mutation("tasks", "a", {"v": 2}))
        assert sync.replay("tasks") == [{"id": "a", "v": 2}, {"id": "b", "v": 1}]

    def test_tombstone_removes_record(self, sync):
        sync.apply(Mutation("tasks", "a", {"v": 1}))
        sync.apply(Mutation("tasks", "b", {"v": 1}))
        sync.apply(Mutation("tasks", "a"))
        assert sync.replay("tasks") == [{"id": "b", "v": 1}]
        assert sync.get("tasks", "a") is None

    def test_malformed_line_names_position(self, sync):
        sync.apply(Mutation("tasks", "a", {"v": 1}))
        sync._log("tasks").append("{not json")
        with pytest.raises(PersistenceError, match="tasks:2: malformed line"):
            sync.replay("tasks")

    def test_record_without_id_is_rejected(self, sync):
        sync._log("tasks").append(canonical_line({"title": "orphan"}))
        with pytest.raises(PersistenceError, match="record has no id"):
            sync.replay("tasks")

    def test_conflict_markers_raise_merge_conflict(self, sync):
        sync._log("tasks").append("<<<<<<< HEAD")
        with pytest.raises(MergeConflictError):
            sync.replay("tasks")

    def test_query_filters_replayed_records(self, sync):
        sync.apply(Mutation("tasks", "a", {"status": "ready"}))
        sync.apply(Mutation("tasks", "b", {"status": "blocked"}))
        assert [r["id"] for r in sync.query("tasks", status="ready")] == ["a"]
        assert len(sync.query("tasks", status=None)) == 2


class TestCompact:
    """Tests for compact."""

    def test_compact_keeps_current_records(self, sync):
        sync.apply(Mutation("tasks", "a", {"v": 1}))
        sync.apply(Mutation("tasks", "a", {"v": 2}))
        sync.apply(Mutation("tasks", "b", {"v": 1}))
        sync.apply(Mutation("tasks", "b"))

        before = sync.replay("tasks")
        assert sync.compact("tasks") == 1
        assert sync.replay("tasks") == before
        assert sync._log("tasks").lines() == [canonical_line({"id": "a", "v": 2})]

    def test_apply_after_compact_continues_sequence(self, sync):
        sync.apply(Mutation("tasks", "a", {"v": 1}))
        sync.apply(Mutation("tasks", "a", {"v": 2}))
        sync.compact("tasks")
        assert sync.apply(Mutation("tasks", "b", {"v": 1})).sequence == 2


class TestFlush:
    """Tests for debounced flushing."""

    def test_flush_without_changes_returns_false(self, sync):
        assert sync.flush() is False

    def test_explicit_flush(self):
        metrics = RecordingMetrics()
        state = StateSync(memory_config(debounce_ms=10_000), metrics=metrics)
        state.open()
        try:
            state.apply(Mutation("tasks", "a", {"v": 1}))
            assert state.flush() is True
            assert state.flush_count == 1
            assert metrics.count("state_flushed") == 1
            assert state.flush() is False
        finally:
            state.close()

    def test_burst_of_mutations_flushes_once(self):
        state = StateSync(memory_config(debounce_ms=200))
        state.open()
        try:
            for i in range(10):
                state.apply(Mutation("tasks", f"t{i}", {"v": i}))
            assert state.flush_count == 0
            time.sleep(0.6)
            assert state.flush_count == 1
            assert not state.flush_pending
        finally:
            state.close()

    def test_mutations_spaced_beyond_the_window_flush_separately(self):
        state = StateSync(memory_config(debounce_ms=100))
        state.open()
        try:
            state.apply(Mutation("tasks", "a", {"v": 1}))
            time.sleep(0.4)
            assert state.flush_count == 1

            state.apply(Mutation("tasks", "b", {"v": 2}))
            time.sleep(0.4)
            assert state.flush_count == 2
        finally:
            state.close()

    def test_close_flushes_pending_changes(self):
        state = StateSync(memory_config(debounce_ms=10_000))
        state.open()
        state.apply(Mutation("tasks", "a", {"v": 1}))
        state.close()
        assert state.flush_count == 1


class TestCache:
    """Tests for the query cache mirror."""

    @pytest.fixture
    def redis_client(self):
        return fakeredis.FakeRedis(decode_responses=False)

    def make_sync(self, redis_client, metrics=None):
        config = memory_config(debounce_ms=10_000)
        cache = RedisStateCache(redis_client, prefix=config.key_prefix, schemas=config.schemas)
        return StateSync(config, cache=cache, metrics=metrics), cache

    def test_writes_are_mirrored(self, redis_client):
        state, cache = self.make_sync(redis_client)
        with state:
            state.apply(Mutation("tasks", "a", {"status": "ready"}))
            state.apply(Mutation("tasks", "b", {"status": "blocked"}))
            assert cache.get("tasks", "a") == {"id": "a", "status": "ready"}
            assert [r["id"] for r in state.query("tasks", status="blocked")] == ["b"]

            digest, count = state._log("tasks").digest()
            cache.verify("tasks", digest, count)

    def test_stale_cache_is_rebuilt_on_open(self, redis_client):
        metrics = RecordingMetrics()
        state, cache = self.make_sync(redis_client, metrics)
        cache.put("tasks", "ghost", {"id": "ghost"}, "bogus", 7)

        state.open()
        try:
            assert cache.get("tasks", "ghost") is None
            assert metrics.count("cache_rebuilt") == len(state.schemas)
        finally:
            state.close()

    def test_cache_failure_is_a_persistence_error(self, redis_client, monkeypatch):
        state, cache = self.make_sync(redis_client)
        with state:
            def down(*args, **kwargs):
                raise RedisConnectionError("cache down")

            monkeypatch.setattr(cache, "put", down)
            with pytest.raises(PersistenceError, match="cache down"):
                state.apply(Mutation("tasks", "a", {"v": 1}))

    def test_failed_cache_write_leaves_no_line_in_the_log(self, redis_client, monkeypatch):
        state, cache = self.make_sync(redis_client)
        with state:
            state.apply(Mutation("tasks", "a", {"status": "ready"}))

            def down(*args, **kwargs):
                raise RedisConnectionError("cache down")

            with monkeypatch.context() as m:
                m.setattr(cache, "put", down)
                with pytest.raises(PersistenceError):
                    state.apply(Mutation("tasks", "a", {"status": "in_progress"}))

            assert state.replay("tasks") == [{"id": "a", "status": "ready"}]
            assert state.get("tasks", "a") == {"id": "a", "status": "ready"}
            assert cache.meta("tasks") is None

            state.apply(Mutation("tasks", "b", {"status": "ready"}))
            digest, count = state._log("tasks").digest()
            assert count == 2
            cache.verify("tasks", digest, count)
            assert cache.get("tasks", "a") == {"id": "a", "status": "ready"}
            assert [r["id"] for r in state.query("tasks", status="ready")] == ["a", "b"]

    def test_failed_delete_keeps_the_record(self, redis_client, monkeypatch):
        state, cache = self.make_sync(redis_client)
        with state:
            state.apply(Mutation("tasks", "a", {"status": "ready"}))

            def down(*args, **kwargs):
                raise RedisConnectionError("cache down")

            monkeypatch.setattr(cache, "remove", down)
            with pytest.raises(PersistenceError):
                state.apply(Mutation("tasks", "a"))

            assert state.replay("tasks") == [{"id": "a", "status": "ready"}]
            assert state._log("tasks").digest()[1] == 1

    def test_cache_invalidated_by_failed_write_is_rebuilt_on_reopen(self, redis_client, monkeypatch):
        metrics = RecordingMetrics()
        state, cache = self.make_sync(redis_client, metrics)
        state.open()
        state.apply(Mutation("tasks", "a", {"status": "ready"}))

        def down(*args, **kwargs):
            raise RedisConnectionError("cache down")

        with monkeypatch.context() as m:
            m.setattr(cache, "put", down)
            with pytest.raises(PersistenceError):
                state.apply(Mutation("tasks", "b", {"status": "ready"}))
        state.close()
        rebuilt = metrics.count("cache_rebuilt")

        state.open()
        try:
            assert metrics.count("cache_rebuilt") == rebuilt + 1
            digest, count = state._log("tasks").digest()
            cache.verify("tasks", digest, count)
            assert cache.get("tasks", "b") is None
        finally:
            state.close()
