"""
Key-value store used for credential, account and resource records.

The engine only needs get/put/delete, prefix scans, and an atomic
multi-key conditional write (``commit``). All coordination between
concurrent requests goes through ``commit``; there is no engine-level lock.
"""

import json
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .errors import ConfigurationError, StoreError
from .logging import get_logger

Record = Dict[str, Any]

# Sentinel for "the key must not exist" in commit checks.
ABSENT = None


def _encode(value: Record) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class KeyValueStore(ABC):
    """Abstract record store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def put(self, key: str, value: Record) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        """Return every (key, record) whose key starts with ``prefix``."""

    @abstractmethod
    async def commit(self, checks: Mapping[str, Optional[Record]],
                     writes: Mapping[str, Optional[Record]]) -> bool:
        """Apply ``writes`` only if every key in ``checks`` holds the expected record.

        ``None`` as an expected value means the key must be absent; ``None`` as
        a written value deletes the key. Returns False, with nothing applied,
        when any check fails.
        """

    async def compare_and_set(self, key: str, expected: Optional[Record], new: Optional[Record]) -> bool:
        return await self.commit({key: expected}, {key: new})

    async def close(self) -> None:
        return None


class InMemoryStore(KeyValueStore):
    """Process-local store. Records are kept JSON-encoded so reads return copies."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._mutex = threading.Lock()

    async def get(self, key: str) -> Optional[Record]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Record) -> None:
        with self._mutex:
            self._data[key] = _encode(value)

    async def delete(self, key: str) -> bool:
        with self._mutex:
            return self._data.pop(key, None) is not None

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        with self._mutex:
            items = [(k, v) for k, v in self._data.items() if k.startswith(prefix)]
        return [(k, json.loads(v)) for k, v in sorted(items)]

    async def commit(self, checks: Mapping[str, Optional[Record]],
                     writes: Mapping[str, Optional[Record]]) -> bool:
        with self._mutex:
            for key, expected in checks.items():
                current = self._data.get(key)
                if expected is None:
                    if current is not None:
                        return False
                elif current is None or current != _encode(expected):
                    return False
            for key, value in writes.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._data[key] = _encode(value)
            return True

    def __len__(self) -> int:
        return len(self._data)


class RedisStore(KeyValueStore):
    """Redis-backed store; ``commit`` uses WATCH/MULTI/EXEC."""

    def __init__(self, redis_url: str, key_prefix: str = "access:"):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("shared.store.redis")
        self._redis: Optional[redis.Redis] = None

    def _client(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30
            )
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def get(self, key: str) -> Optional[Record]:
        try:
            raw = await self._client().get(self._key(key))
        except RedisError as e:
            self.logger.error("Store read failed", key=key, error=str(e))
            raise StoreError("Store read failed") from e
        return json.loads(raw) if raw is not None else None

    async def put(self, key: str, value: Record) -> None:
        try:
            await self._client().set(self._key(key), _encode(value))
        except RedisError as e:
            self.logger.error("Store write failed", key=key, error=str(e))
            raise StoreError("Store write failed") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client().delete(self._key(key)))
        except RedisError as e:
            self.logger.error("Store delete failed", key=key, error=str(e))
            raise StoreError("Store delete failed") from e

    async def scan(self, prefix: str) -> List[Tuple[str, Record]]:
        client = self._client()
        try:
            keys = sorted([k async for k in client.scan_iter(match=f"{self._key(prefix)}*")])
            if not keys:
                return []
            values = await client.mget(keys)
        except RedisError as e:
            self.logger.error("Store scan failed", prefix=prefix, error=str(e))
            raise StoreError("Store scan failed") from e

        strip = len(self.key_prefix)
        return [(k[strip:], json.loads(v)) for k, v in zip(keys, values) if v is not None]

    async def commit(self, checks: Mapping[str, Optional[Record]],
                     writes: Mapping[str, Optional[Record]]) -> bool:
        client = self._client()
        watched = [self._key(k) for k in checks]
        try:
            async with client.pipeline(transaction=True) as pipe:
                if watched:
                    await pipe.watch(*watched)
                for key, expected in checks.items():
                    current = await pipe.get(self._key(key))
                    if expected is None:
                        if current is not None:
                            await pipe.unwatch()
                            return False
                    elif current is None or current != _encode(expected):
                        await pipe.unwatch()
                        return False
                pipe.multi()
                for key, value in writes.items():
                    if value is None:
                        pipe.delete(self._key(key))
                    else:
                        pipe.set(self._key(key), _encode(value))
                await pipe.execute()
                return True
        except WatchError:
            self.logger.debug("Conditional write lost a race", keys=list(checks))
            return False
        except RedisError as e:
            self.logger.error("Conditional write failed", keys=list(checks), error=str(e))
            raise StoreError("Conditional write failed") from e

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_store(backend: str, redis_url: Optional[str] = None) -> KeyValueStore:
    """Build the configured store backend."""
    if backend == "memory":
        return InMemoryStore()
    if backend == "redis":
        return RedisStore(redis_url or "redis://localhost:6379/0")
    raise ConfigurationError(f"Unknown store backend: {backend}", {"store_backend": backend})
