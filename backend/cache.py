"""
Cache layer for ClipsCommerce
Redis when reachable, in-process dictionary otherwise.

Entries are stored as JSON envelopes {data, timestamp, ttl, tags} so expiry and
tag invalidation behave the same on both backends.
"""

import os
import json
import time
import fnmatch
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

import redis

from monitoring import record_cache_operation

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv('REDIS_URL', 'memory://')
CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'clipscommerce:')
DEFAULT_TTL = 3600  # 1 hour
MAX_MEMORY_ENTRIES = 10000


class CacheService:
    """Key/value cache with TTLs, tag invalidation and hit statistics"""

    def __init__(self, redis_url: str = None, key_prefix: str = CACHE_KEY_PREFIX,
                 default_ttl: int = DEFAULT_TTL):
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl
        self._redis = None
        self._mem: Dict[str, str] = {}
        self._tags: Dict[str, set] = {}
        self._lock = threading.RLock()
        self._stats = {'hits': 0, 'misses': 0, 'sets': 0, 'deletes': 0, 'errors': 0}

        if redis_url and redis_url.startswith('redis'):
            try:
                self._redis = redis.from_url(redis_url, socket_connect_timeout=2)
                self._redis.ping()
                logger.info("[CACHE] Connected to Redis")
            except redis.RedisError as e:
                logger.warning(f"[CACHE] Redis connection failed, using memory: {e}")
                self._redis = None

    @property
    def backend(self) -> str:
        return 'redis' if self._redis else 'memory'

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}tag:{tag}"

    def _count(self, stat: str, operation: str, result: str):
        self._stats[stat] += 1
        record_cache_operation(operation, result)

    def _raw_get(self, full_key: str) -> Optional[str]:
        if self._redis:
            raw = self._redis.get(full_key)
            return raw.decode() if isinstance(raw, bytes) else raw
        return self._mem.get(full_key)

    def _raw_delete(self, full_key: str) -> bool:
        if self._redis:
            raw = self._redis.get(full_key)
            deleted = bool(self._redis.delete(full_key))
            if raw is not None:
                for tag in json.loads(raw).get('tags', []):
                    self._redis.srem(self._tag_key(tag), full_key)
            return deleted
        with self._lock:
            return self._drop_memory_key(full_key)

    def _drop_memory_key(self, full_key: str) -> bool:
        """Remove an in-memory entry and its tag memberships; caller holds the lock"""
        raw = self._mem.pop(full_key, None)
        if raw is None:
            return False
        for tag in json.loads(raw).get('tags', []):
            members = self._tags.get(tag)
            if members is None:
                continue
            members.discard(full_key)
            if not members:
                del self._tags[tag]
        return True

    def _decode(self, full_key: str, raw: Optional[str]) -> Optional[Dict]:
        """Return a live entry or None, dropping it if expired"""
        if raw is None:
            return None
        entry = json.loads(raw)
        if time.time() - entry['timestamp'] > entry['ttl']:
            self._raw_delete(full_key)
            return None
        return entry

    def _memory_evict(self):
        now = time.time()
        expired = []
        for k, raw in self._mem.items():
            entry = json.loads(raw)
            if now - entry['timestamp'] > entry['ttl']:
                expired.append(k)
        for k in expired:
            self._drop_memory_key(k)
        if len(self._mem) > MAX_MEMORY_ENTRIES:
            for k in list(self._mem)[:len(self._mem) - MAX_MEMORY_ENTRIES]:
                self._drop_memory_key(k)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: int = None, tags: Iterable[str] = None) -> bool:
        ttl = ttl or self.default_ttl
        tags = list(tags or [])
        full_key = self._key(key)
        payload = json.dumps({
            'data': value,
            'timestamp': time.time(),
            'ttl': ttl,
            'tags': tags
        }, default=str)

        try:
            if self._redis:
                pipe = self._redis.pipeline()
                pipe.setex(full_key, ttl, payload)
                for tag in tags:
                    pipe.sadd(self._tag_key(tag), full_key)
                    pipe.ttl(self._tag_key(tag))
                remaining = pipe.execute()[2::2]
                # a tag set lives as long as its longest-lived member
                short = [tag for tag, left in zip(tags, remaining) if left < ttl]
                if short:
                    pipe = self._redis.pipeline()
                    for tag in short:
                        pipe.expire(self._tag_key(tag), ttl)
                    pipe.execute()
            else:
                with self._lock:
                    self._drop_memory_key(full_key)
                    self._mem[full_key] = payload
                    for tag in tags:
                        self._tags.setdefault(tag, set()).add(full_key)
                    if len(self._mem) > MAX_MEMORY_ENTRIES:
                        self._memory_evict()
            self._count('sets', 'set', 'ok')
            return True
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.error(f"[CACHE] Set error for {key}: {e}")
            self._count('errors', 'set', 'error')
            return False

    def get(self, key: str, default: Any = None) -> Any:
        full_key = self._key(key)
        try:
            entry = self._decode(full_key, self._raw_get(full_key))
        except (redis.RedisError, ValueError) as e:
            logger.error(f"[CACHE] Get error for {key}: {e}")
            self._count('errors', 'get', 'error')
            return default

        if entry is None:
            self._count('misses', 'get', 'miss')
            return default

        self._count('hits', 'get', 'hit')
        return entry['data']

    def delete(self, key: str) -> bool:
        try:
            deleted = self._raw_delete(self._key(key))
            if deleted:
                self._count('deletes', 'delete', 'ok')
            return deleted
        except redis.RedisError as e:
            logger.error(f"[CACHE] Delete error for {key}: {e}")
            self._count('errors', 'delete', 'error')
            return False

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern (without prefix)"""
        full_pattern = self._key(pattern)
        try:
            if self._redis:
                keys = list(self._redis.scan_iter(match=full_pattern))
                deleted = self._redis.delete(*keys) if keys else 0
            else:
                with self._lock:
                    keys = [k for k in self._mem if fnmatch.fnmatchcase(k, full_pattern)]
                    for k in keys:
                        self._drop_memory_key(k)
                    deleted = len(keys)
            self._stats['deletes'] += deleted
            return deleted
        except redis.RedisError as e:
            logger.error(f"[CACHE] Pattern delete error for {pattern}: {e}")
            self._count('errors', 'delete', 'error')
            return 0

    def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """Delete every entry carrying any of the tags"""
        deleted = 0
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                if self._redis:
                    members = [m.decode() if isinstance(m, bytes) else m
                               for m in self._redis.smembers(tag_key)]
                    if members:
                        deleted += self._redis.delete(*members)
                    self._redis.delete(tag_key)
                else:
                    with self._lock:
                        for full_key in self._tags.pop(tag, set()):
                            if self._mem.pop(full_key, None) is not None:
                                deleted += 1
            self._stats['deletes'] += deleted
            if deleted:
                logger.info(f"[CACHE] Invalidated {deleted} entries for tags {list(tags)}")
            return deleted
        except redis.RedisError as e:
            logger.error(f"[CACHE] Tag invalidation error: {e}")
            self._count('errors', 'invalidate', 'error')
            return deleted

    def exists(self, key: str) -> bool:
        full_key = self._key(key)
        try:
            return self._decode(full_key, self._raw_get(full_key)) is not None
        except (redis.RedisError, ValueError):
            return False

    def get_or_set(self, key: str, factory: Callable[[], Any], ttl: int = None,
                   tags: Iterable[str] = None) -> Any:
        sentinel = object()
        value = self.get(key, sentinel)
        if value is not sentinel:
            return value
        value = factory()
        self.set(key, value, ttl, tags)
        return value

    def increment(self, key: str, amount: int = 1, ttl: int = None) -> int:
        with self._lock:
            current = self.get(key, 0)
            if not isinstance(current, (int, float)):
                current = 0
            value = current + amount
            self.set(key, value, ttl)
            return value

    def clear(self) -> int:
        """Remove every key under this cache's prefix"""
        try:
            if self._redis:
                keys = list(self._redis.scan_iter(match=f"{self.key_prefix}*"))
                count = self._redis.delete(*keys) if keys else 0
            else:
                with self._lock:
                    count = len(self._mem)
                    self._mem.clear()
                    self._tags.clear()
            logger.info(f"[CACHE] Cleared {count} keys")
            return count
        except redis.RedisError as e:
            logger.error(f"[CACHE] Clear error: {e}")
            self._count('errors', 'clear', 'error')
            return 0

    def size(self) -> int:
        if self._redis:
            return sum(1 for k in self._redis.scan_iter(match=f"{self.key_prefix}*")
                       if not (k.decode() if isinstance(k, bytes) else k).startswith(self._tag_key('')))
        return len(self._mem)

    def health_check(self) -> Dict[str, Any]:
        start = time.time()
        try:
            probe = f"health:{int(start * 1000)}"
            self.set(probe, 'ok', ttl=5)
            healthy = self.get(probe) == 'ok'
            self.delete(probe)
        except redis.RedisError as e:
            logger.error(f"[CACHE] Health check failed: {e}")
            healthy = False
        return {
            'healthy': healthy,
            'backend': self.backend,
            'latency_ms': round((time.time() - start) * 1000, 2)
        }

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._stats['hits'] + self._stats['misses']
        hit_rate = round(self._stats['hits'] / lookups * 100, 2) if lookups else 0.0
        return {**self._stats, 'hit_rate': hit_rate, 'backend': self.backend}

    def reset_stats(self):
        for stat in self._stats:
            self._stats[stat] = 0

    # ------------------------------------------------------------------
    # Domain helpers
    # ------------------------------------------------------------------

    def cache_user_permissions(self, user_id: str, permissions: List[str], ttl: int = 600) -> bool:
        return self.set(f"permissions:{user_id}", permissions, ttl, tags=[f"user:{user_id}"])

    def get_cached_user_permissions(self, user_id: str) -> Optional[List[str]]:
        return self.get(f"permissions:{user_id}")

    def cache_analytics(self, user_id: str, key: str, data: Any, ttl: int = 300) -> bool:
        return self.set(f"analytics:{user_id}:{key}", data, ttl,
                        tags=[f"user:{user_id}", 'analytics'])

    def get_cached_analytics(self, user_id: str, key: str) -> Any:
        return self.get(f"analytics:{user_id}:{key}")

    def invalidate_user_cache(self, user_id: str) -> int:
        return self.invalidate_by_tags([f"user:{user_id}"])

    def invalidate_team_cache(self, team_id: str) -> int:
        return self.invalidate_by_tags([f"team:{team_id}"])

# ==============================================================================
# IDEMPOTENCY STORE
# ==============================================================================

class IdempotencyStore:
    """Replay store for write endpoints keyed by the Idempotency-Key header"""

    def __init__(self, cache: CacheService, ttl: int = 600):
        self.cache = cache
        self.ttl = ttl

    def get(self, key: str) -> Optional[Dict]:
        return self.cache.get(f"idem:{key}")

    def set(self, key: str, status: int, headers: Dict[str, str], body: str, ttl: int = None) -> bool:
        return self.cache.set(
            f"idem:{key}",
            {'status': status, 'headers': headers, 'body': body},
            ttl or self.ttl,
            tags=['idempotency']
        )

# ==============================================================================
# SHARED INSTANCE
# ==============================================================================

_cache_instance: Optional[CacheService] = None
_cache_lock = threading.Lock()


def get_cache() -> CacheService:
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = CacheService(REDIS_URL)
    return _cache_instance
