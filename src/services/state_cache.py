"""Redis-backed query cache mirroring the shared state logs."""

import json
import logging
from enum import Enum
from typing import Any

from redis import Redis

from models.config import StateSchema

logger = logging.getLogger(__name__)


class CacheCorruption(Exception):
    """Raised when the cache does not match the log it mirrors."""

    def __init__(self, schema: str, reason: str):
        self.schema = schema
        self.reason = reason
        super().__init__(f"Cache for {schema} is out of sync: {reason}")


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _index_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class RedisStateCache:
    """Keeps, per schema, the replayed records plus the digest of the log they came from.

    Keys, under ``<prefix>:<schema>``:
      ``:records``  hash of id -> record JSON
      ``:order``    list of ids in first-seen order
      ``:idx:<field>:<value>``  set of ids, for each configured indexed field
      ``:meta``     hash with ``count`` and ``digest`` of the mirrored log
    """

    def __init__(
        self,
        redis_client: Redis,
        prefix: str = "colony:default",
        schemas: list[StateSchema] | None = None,
    ):
        if redis_client is None:
            raise ValueError("redis_client is required")
        if not prefix:
            raise ValueError("prefix is required")
        self._redis = redis_client
        self._prefix = prefix
        self._indexes = {schema.name: list(schema.indexes) for schema in schemas or []}

    def _records_key(self, schema: str) -> str:
        return f"{self._prefix}:{schema}:records"

    def _order_key(self, schema: str) -> str:
        return f"{self._prefix}:{schema}:order"

    def _meta_key(self, schema: str) -> str:
        return f"{self._prefix}:{schema}:meta"

    def _index_key(self, schema: str, field: str, value: str) -> str:
        return f"{self._prefix}:{schema}:idx:{field}:{value}"

    def _indexed_fields(self, schema: str) -> list[str]:
        return self._indexes.get(schema, [])

    def get(self, schema: str, key: str) -> dict | None:
        data = self._redis.hget(self._records_key(schema), key)
        if data is None:
            return None
        return json.loads(_decode(data))

    def put(self, schema: str, key: str, record: dict, digest: str, count: int) -> None:
        """Store one record and advance the meta to the log's new digest."""
        if not key:
            raise ValueError("key is required")

        previous = self.get(schema, key)
        pipe = self._redis.pipeline()
        if previous is None:
            pipe.rpush(self._order_key(schema), key)
        else:
            self._unindex(pipe, schema, key, previous)
        pipe.hset(self._records_key(schema), key, json.dumps(record, sort_keys=True))
        self._index(pipe, schema, key, record)
        pipe.hset(self._meta_key(schema), mapping={"count": count, "digest": digest})
        pipe.execute()

    def remove(self, schema: str, key: str, digest: str, count: int) -> None:
        previous = self.get(schema, key)
        pipe = self._redis.pipeline()
        if previous is not None:
            self._unindex(pipe, schema, key, previous)
            pipe.hdel(self._records_key(schema), key)
            pipe.lrem(self._order_key(schema), 0, key)
        pipe.hset(self._meta_key(schema), mapping={"count": count, "digest": digest})
        pipe.execute()

    def all(self, schema: str) -> list[dict]:
        """Every cached record in first-seen order."""
        ids = [_decode(i) for i in self._redis.lrange(self._order_key(schema), 0, -1)]
        if not ids:
            return []
        values = self._redis.hmget(self._records_key(schema), ids)
        return [json.loads(_decode(v)) for v in values if v is not None]

    def query(self, schema: str, **filters: Any) -> list[dict]:
        """Records whose fields equal every filter value, in first-seen order."""
        filters = {k: v for k, v in filters.items() if v is not None}
        indexed = {
            field: _index_value(value)
            for field, value in filters.items()
            if field in self._indexed_fields(schema)
        }

        if indexed:
            keys = [self._index_key(schema, f, v) for f, v in indexed.items()]
            candidates = {_decode(i) for i in self._redis.sinter(keys)}
            if not candidates:
                return []
            records = [r for r in self.all(schema) if r.get("id") in candidates]
        else:
            records = self.all(schema)

        return [
            r
            for r in records
            if all(_index_value(r.get(f)) == _index_value(v) for f, v in filters.items())
        ]

    def meta(self, schema: str) -> tuple[str, int] | None:
        data = self._redis.hgetall(self._meta_key(schema))
        if not data:
            return None
        decoded = {_decode(k): _decode(v) for k, v in data.items()}
        return decoded.get("digest", ""), int(decoded.get("count", 0))

    def verify(self, schema: str, digest: str, count: int) -> None:
        """Raise CacheCorruption unless the cache mirrors the log with this digest."""
        meta = self.meta(schema)
        if meta is None:
            raise CacheCorruption(schema, "missing metadata")
        cached_digest, cached_count = meta
        if cached_count != count:
            raise CacheCorruption(schema, f"line count {cached_count} != {count}")
        if cached_digest != digest:
            raise CacheCorruption(schema, "digest mismatch")

    def rebuild(self, schema: str, records: list[dict], digest: str, count: int) -> None:
        """Replace everything cached for schema with records."""
        self.clear(schema)
        pipe = self._redis.pipeline()
        for record in records:
            key = record["id"]
            pipe.rpush(self._order_key(schema), key)
            pipe.hset(self._records_key(schema), key, json.dumps(record, sort_keys=True))
            self._index(pipe, schema, key, record)
        pipe.hset(self._meta_key(schema), mapping={"count": count, "digest": digest})
        pipe.execute()
        logger.info(f"Rebuilt cache for {schema} with {len(records)} records")

    def invalidate(self, schema: str) -> None:
        """Drop the meta hash so the next verify fails and forces a rebuild."""
        self._redis.delete(self._meta_key(schema))

    def clear(self, schema: str) -> None:
        keys = list(self._redis.scan_iter(match=f"{self._prefix}:{schema}:*"))
        if keys:
            self._redis.delete(*keys)

    def _index(self, pipe: Any, schema: str, key: str, record: dict) -> None:
        for field in self._indexed_fields(schema):
            value = _index_value(record.get(field))
            if value is not None:
                pipe.sadd(self._index_key(schema, field, value), key)

    def _unindex(self, pipe: Any, schema: str, key: str, record: dict) -> None:
        for field in self._indexed_fields(schema):
            value = _index_value(record.get(field))
            if value is not None:
                pipe.srem(self._index_key(schema, field, value), key)
