from __future__ import annotations

import fcntl
import json
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Protocol

import redis.asyncio as aioredis
from redis import Redis

from wso2auth.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Shared key-value store for browser sessions and sync timestamps."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def pop(self, key: str) -> Optional[str]: ...

    def verify_connection(self) -> None: ...


async def get_json(store: KeyValueStore, key: str) -> Optional[Dict[str, Any]]:
    raw = await store.get(key)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("kv_json_decode_failed", key=key)
        return None
    return data if isinstance(data, dict) else None


async def set_json(
    store: KeyValueStore, key: str, value: Dict[str, Any], *, ttl: Optional[int] = None
) -> None:
    await store.set(key, json.dumps(value, separators=(",", ":")), ttl=ttl)


class RedisCache:
    """Thin Redis wrapper used as the shared key-value store."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl)) if ttl else None)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        pipe = self.client.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        value, _ = await pipe.execute()
        return value

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis client behind the async store interface.

    Used in TEST_MODE so the client is never bound to a pytest event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        self.client.set(key, value, ex=max(1, int(ttl)) if ttl else None)

    async def delete(self, key: str) -> None:
        self.client.delete(key)

    async def pop(self, key: str) -> Optional[str]:
        pipe = self.client.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        value, _ = pipe.execute()
        return value

    async def close(self) -> None:
        self.client.close()


class FileStateStore:
    """Key-value store persisted as one JSON document on the shared filesystem.

    Fallback when Redis is unavailable. Every operation re-reads the file
    under an exclusive ``flock`` so workers on the same host see each other's
    writes. Expired entries are dropped lazily.
    """

    def __init__(self, fs_root: str):
        state_dir = Path(fs_root) / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        self.path = state_dir / "kv_store.json"
        self._lock_path = state_dir / "kv_store.lock"
        self._thread_lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[Dict[str, Any]]:
        with self._thread_lock, open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                data = self._read()
                before = json.dumps(data, sort_keys=True)
                yield data
                if json.dumps(data, sort_keys=True) != before:
                    self._write(data)
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> Dict[str, Any]:
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError:
            logger.warning("kv_state_file_corrupt", path=str(self.path))
            return {}
        now = time.time()
        return {
            key: entry
            for key, entry in raw.items()
            if entry.get("expires_at") is None or entry["expires_at"] > now
        }

    def _write(self, data: Dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data))
        tmp_path.replace(self.path)

    def verify_connection(self) -> None:
        with self._locked():
            pass

    async def get(self, key: str) -> Optional[str]:
        with self._locked() as data:
            entry = data.get(key)
            return entry["value"] if entry else None

    async def set(self, key: str, value: str, *, ttl: Optional[int] = None) -> None:
        with self._locked() as data:
            data[key] = {
                "value": value,
                "expires_at": time.time() + ttl if ttl else None,
            }

    async def delete(self, key: str) -> None:
        with self._locked() as data:
            data.pop(key, None)

    async def pop(self, key: str) -> Optional[str]:
        with self._locked() as data:
            entry = data.pop(key, None)
            return entry["value"] if entry else None

    async def close(self) -> None:
        return None
