from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Set

import httpx

from realty_agent.realty_core.config import Settings, get_settings
from realty_agent.realty_core.db import get_connection, kv_get, kv_set, purge_expired_kv
from realty_agent.realty_core.flow import ConversationState

logger = logging.getLogger(__name__)

KEY_PREFIX = "conv:"


def identity_key(channel: str, external_user_id: str) -> str:
    return f"{channel}:{external_user_id}"


class KeyValueBackend(Protocol):
    provider: str

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        ...

    async def purge_expired(self) -> int:
        ...

    async def aclose(self) -> None:
        ...


class SQLiteKeyValueBackend:
    provider = "sqlite"

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = get_connection(self.db_path)
        try:
            return kv_get(conn, key)
        finally:
            conn.close()

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        conn = get_connection(self.db_path)
        try:
            kv_set(conn, key, value, ttl_seconds=ttl_seconds)
        finally:
            conn.close()

    async def purge_expired(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return purge_expired_kv(conn)
        finally:
            conn.close()

    async def aclose(self) -> None:
        return None


class UpstashKeyValueBackend:
    """Upstash Redis over its REST API; expiry is delegated to Redis ``EX``."""

    provider = "upstash"

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.token = token.strip()
        self.timeout_seconds = timeout_seconds
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.base_url and self.token)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def _command(self, *parts: Any) -> Any:
        if not self.is_configured():
            raise RuntimeError("Upstash is not configured. Fill UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN.")
        response = await self._get_client().post(
            self.base_url,
            headers={"Authorization": f"Bearer {self.token}"},
            json=[str(part) for part in parts],
        )
        response.raise_for_status()
        payload = response.json() if response.text else {}
        if isinstance(payload, dict) and payload.get("error"):
            raise RuntimeError(f"Upstash error: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else None

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raw = await self._command("GET", key)
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        if ttl_seconds:
            await self._command("SET", key, encoded, "EX", int(ttl_seconds))
        else:
            await self._command("SET", key, encoded)

    async def purge_expired(self) -> int:
        return 0

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class InMemoryKeyValueBackend:
    provider = "memory"

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.items.get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def set(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        self.items[key] = json.loads(json.dumps(value))

    async def purge_expired(self) -> int:
        return 0

    async def aclose(self) -> None:
        return None


def build_kv_backend(settings: Optional[Settings] = None) -> KeyValueBackend:
    cfg = settings or get_settings()
    if cfg.kv_provider == "memory":
        return InMemoryKeyValueBackend()
    if cfg.kv_provider == "upstash":
        backend = UpstashKeyValueBackend(
            base_url=cfg.upstash_redis_rest_url,
            token=cfg.upstash_redis_rest_token,
            timeout_seconds=cfg.outbound_timeout_seconds,
        )
        if backend.is_configured():
            return backend
        logger.warning("KV_PROVIDER=upstash but Upstash credentials are empty; using sqlite state storage.")
    return SQLiteKeyValueBackend(cfg.database_path)


class ConversationStateStore:
    """Per-identity conversation state: in-process cache with write-through.

    The cache is authoritative for the lifetime of the process. Entries whose
    last write-through failed stay pinned in the cache until a later write
    succeeds; only durably written entries are evicted when the cache is full.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        ttl_seconds: Optional[int] = None,
        max_cache_entries: int = 1000,
    ) -> None:
        self.backend = backend
        self.ttl_seconds = ttl_seconds
        self.max_cache_entries = max(1, int(max_cache_entries))
        self._cache: "OrderedDict[str, ConversationState]" = OrderedDict()
        self._dirty: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @staticmethod
    def _key(identity: str) -> str:
        return f"{KEY_PREFIX}{identity}"

    def lock(self, identity: str) -> asyncio.Lock:
        lock = self._locks.get(identity)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity] = lock
        return lock

    @asynccontextmanager
    async def turn(self, identity: str) -> AsyncIterator[None]:
        """Hold the identity's lock for one turn.

        Waiters count as users, so the lock is only dropped once no turn holds
        or waits on it.
        """
        lock = self.lock(identity)
        self._lock_users[identity] = self._lock_users.get(identity, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[identity] - 1
            if remaining:
                self._lock_users[identity] = remaining
            else:
                del self._lock_users[identity]
                self._locks.pop(identity, None)

    def cached(self, identity: str) -> Optional[ConversationState]:
        state = self._cache.get(identity)
        return state.copy() if state is not None else None

    def is_dirty(self, identity: str) -> bool:
        return identity in self._dirty

    async def load(self, identity: str) -> ConversationState:
        cached = self._cache.get(identity)
        if cached is not None:
            self._cache.move_to_end(identity)
            return cached.copy()

        payload: Optional[Dict[str, Any]] = None
        try:
            payload = await self.backend.get(self._key(identity))
        except Exception:
            logger.warning("State backend read failed for %s; starting from idle", identity, exc_info=True)

        state = ConversationState.from_dict(payload) if payload else ConversationState()
        self._remember(identity, state)
        return state.copy()

    async def save(self, identity: str, state: ConversationState) -> bool:
        """Store the state; returns False when only the cache was updated."""
        snapshot = state.copy()
        snapshot.updated_at = datetime.now(timezone.utc).isoformat()
        state.updated_at = snapshot.updated_at
        self._dirty.add(identity)
        self._remember(identity, snapshot)

        try:
            await self.backend.set(self._key(identity), snapshot.to_dict(), ttl_seconds=self.ttl_seconds)
        except Exception:
            logger.warning("State write-through failed for %s; keeping cached copy", identity, exc_info=True)
            return False
        self._dirty.discard(identity)
        self._evict()
        return True

    async def purge_expired(self) -> int:
        try:
            return await self.backend.purge_expired()
        except Exception:
            logger.warning("State backend purge failed", exc_info=True)
            return 0

    async def aclose(self) -> None:
        await self.backend.aclose()

    def _remember(self, identity: str, state: ConversationState) -> None:
        self._cache[identity] = state
        self._cache.move_to_end(identity)
        self._evict()

    def _evict(self) -> None:
        if len(self._cache) <= self.max_cache_entries:
            return
        for identity in list(self._cache.keys()):
            if len(self._cache) <= self.max_cache_entries:
                break
            if identity in self._dirty:
                continue
            del self._cache[identity]
