"""Response caching with deterministic keys and tag-based invalidation.

Keys are a pure function of (provider, operation, normalized params):
nested mappings are key-sorted and the ``stream`` / ``user`` fields are
dropped before hashing, so two semantically identical requests always map to
one entry.

Every entry carries the group tags ``llm_dispatch`` and
``llm_dispatch_response``; the typed helpers add operation, provider and
model tags so entries can be flushed without knowing their keys:

    >>> cache = ResponseCache()
    >>> cache.cache_embeddings("openai", "hello", {}, response.to_dict())
    >>> cache.flush_by_provider("openai")

Caching is best-effort. Backend failures are logged and behave as a miss or
a no-op store; they never reach the caller.
"""

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    Mapping,
    Optional,
    Protocol,
    runtime_checkable,
)

logger = logging.getLogger(__name__)

TAG_PREFIX = "llm_dispatch"
GROUP_TAGS = (TAG_PREFIX, f"{TAG_PREFIX}_response")

COMPLETION_TTL = 3600
EMBEDDING_TTL = 86400

# Fields that never change the response of an operation
IGNORED_PARAMS = ("stream", "user")


def _sanitize(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "_", name)


def provider_tag(provider: str) -> str:
    return f"{TAG_PREFIX}_provider_{_sanitize(provider)}"


def model_tag(model: str) -> str:
    return f"{TAG_PREFIX}_model_{_sanitize(model)}"


def operation_tag(operation: str) -> str:
    return f"{TAG_PREFIX}_{_sanitize(operation)}"


def _sort_recursive(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k): _sort_recursive(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_sort_recursive(item) for item in value]
    return value


def normalize_params(params: Mapping[str, Any]) -> Dict[str, Any]:
    """Key-sort all nested mappings and drop fields irrelevant to the result.

    ``stream`` and ``user`` are removed at the top level and from a nested
    ``options`` mapping.
    """
    normalized = _sort_recursive(params)
    for name in IGNORED_PARAMS:
        normalized.pop(name, None)
    options = normalized.get("options")
    if isinstance(options, dict):
        for name in IGNORED_PARAMS:
            options.pop(name, None)
    return normalized


# =============================================================================
# Backends
# =============================================================================


@runtime_checkable
class CacheBackend(Protocol):
    """Storage for cache entries. A ttl of 0 means the entry never expires."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any, tags: Iterable[str], ttl: int) -> None:
        ...

    def has(self, key: str) -> bool:
        ...

    def remove(self, key: str) -> None:
        ...

    def flush(self) -> None:
        ...

    def flush_by_tag(self, tag: str) -> int:
        """Remove every entry carrying ``tag``; return how many were removed."""
        ...


@dataclass
class CacheEntry:
    """A stored value with its tags and absolute expiry (0 = never)."""

    value: Any
    tags: FrozenSet[str] = field(default_factory=frozenset)
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return self.expires_at > 0 and now >= self.expires_at


class MemoryCacheBackend:
    """In-process cache with a tag index, guarded by a lock."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, set] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tag_index[tag]

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                self._drop(key)
                return None
            return entry.value

    def set(self, key: str, value: Any, tags: Iterable[str], ttl: int) -> None:
        expires_at = self._clock() + ttl if ttl > 0 else 0.0
        entry = CacheEntry(value=value, tags=frozenset(tags), expires_at=expires_at)
        with self._lock:
            self._drop(key)
            self._entries[key] = entry
            for tag in entry.tags:
                self._tag_index.setdefault(tag, set()).add(key)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def remove(self, key: str) -> None:
        with self._lock:
            self._drop(key)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tag_index.clear()

    def flush_by_tag(self, tag: str) -> int:
        with self._lock:
            keys = list(self._tag_index.get(tag, ()))
            for key in keys:
                self._drop(key)
            return len(keys)

    def entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry lookup, including expiry metadata."""
        with self._lock:
            return self._entries.get(key)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"backend": "memory", "entries": len(self._entries), "tags": len(self._tag_index)}


class FileCacheBackend:
    """One JSON file per entry in a cache directory.

    Each file stores the value with ``_cached_at``, ``ttl`` and ``tags``.
    Expired or unreadable files are deleted when encountered. OSError and
    JSON errors propagate to ResponseCache, which treats them as a miss.
    """

    def __init__(self, directory: Path, clock: Callable[[], float] = time.time):
        self.directory = Path(directory)
        self._clock = clock
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / f"{re.sub(r'[^A-Za-z0-9_.-]', '_', key)}.json"

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                cached = json.load(f)
        except json.JSONDecodeError:
            # Invalid cache file, delete it
            path.unlink(missing_ok=True)
            return None

        ttl = cached.get("ttl", 0)
        if ttl > 0 and self._clock() - cached.get("_cached_at", 0) > ttl:
            path.unlink(missing_ok=True)
            return None
        return cached

    def get(self, key: str) -> Optional[Any]:
        cached = self._read(self._path(key))
        if cached is None or cached.get("_cache_key") != key:
            return None
        return cached.get("value")

    def set(self, key: str, value: Any, tags: Iterable[str], ttl: int) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        cache_data = {
            "_cached_at": self._clock(),
            "_cache_key": key,
            "ttl": ttl,
            "tags": sorted(set(tags)),
            "value": value,
        }
        with self._lock:
            with open(self._path(key), "w") as f:
                json.dump(cache_data, f, indent=2, default=str)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def flush(self) -> None:
        if not self.directory.exists():
            return
        for cache_file in self.directory.glob("*.json"):
            cache_file.unlink(missing_ok=True)

    def flush_by_tag(self, tag: str) -> int:
        if not self.directory.exists():
            return 0
        count = 0
        for cache_file in self.directory.glob("*.json"):
            cached = self._read(cache_file)
            if cached is not None and tag in cached.get("tags", ()):
                cache_file.unlink(missing_ok=True)
                count += 1
        return count

    def stats(self) -> Dict[str, Any]:
        if not self.directory.exists():
            return {"backend": "file", "entries": 0, "total_size_bytes": 0, "cache_dir": str(self.directory)}
        entries = list(self.directory.glob("*.json"))
        return {
            "backend": "file",
            "entries": len(entries),
            "total_size_bytes": sum(f.stat().st_size for f in entries),
            "cache_dir": str(self.directory),
        }


# =============================================================================
# Response cache
# =============================================================================


class ResponseCache:
    """Deterministic, tag-invalidatable cache for provider responses.

    Args:
        backend: Storage backend (defaults to an in-memory backend)
        default_ttl: Lifetime for set() without an explicit ttl
        completion_ttl: Default lifetime of cached completions
        embedding_ttl: Default lifetime of cached embeddings
        log_events: Log hits and misses at debug level
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        default_ttl: int = COMPLETION_TTL,
        completion_ttl: int = COMPLETION_TTL,
        embedding_ttl: int = EMBEDDING_TTL,
        log_events: bool = True,
    ):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.default_ttl = default_ttl
        self.completion_ttl = completion_ttl
        self.embedding_ttl = embedding_ttl
        self._log_events = log_events

    @staticmethod
    def generate_cache_key(provider: str, operation: str, params: Mapping[str, Any]) -> str:
        """Derive the cache key for a request.

        Returns:
            ``"{provider}_{operation}_{sha256}"``
        """
        serialized = json.dumps(
            {"provider": provider, "operation": operation, "params": normalize_params(params)},
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )
        digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
        return f"{provider}_{operation}_{digest}"

    # Plain keyed access

    def get(self, key: str) -> Optional[Any]:
        try:
            value = self.backend.get(key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if self._log_events:
            logger.debug(f"Cache {'hit' if value is not None else 'miss'}: {key}")
        return value

    def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> None:
        """Store ``value`` under ``key``; the group tags are always attached."""
        all_tags = set(GROUP_TAGS) | set(tags)
        try:
            self.backend.set(key, value, all_tags, self.default_ttl if ttl is None else ttl)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    def has(self, key: str) -> bool:
        try:
            return self.backend.has(key)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {key}: {e}")
            return False

    def remove(self, key: str) -> None:
        try:
            self.backend.remove(key)
        except Exception as e:
            logger.warning(f"Cache remove failed for {key}: {e}")

    def flush(self) -> None:
        try:
            self.backend.flush()
        except Exception as e:
            logger.warning(f"Cache flush failed: {e}")

    def flush_by_tag(self, tag: str) -> int:
        try:
            return self.backend.flush_by_tag(tag)
        except Exception as e:
            logger.warning(f"Cache flush by tag {tag} failed: {e}")
            return 0

    def flush_by_provider(self, provider: str) -> int:
        return self.flush_by_tag(provider_tag(provider))

    # Operation helpers

    def cache_response(
        self,
        provider: str,
        operation: str,
        params: Mapping[str, Any],
        value: Any,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> str:
        """Store a response under its derived key with operation and provider tags.

        Returns:
            The cache key
        """
        key = self.generate_cache_key(provider, operation, params)
        all_tags = {operation_tag(operation), provider_tag(provider)} | set(tags)
        self.set(key, value, ttl, all_tags)
        return key

    def get_cached_response(
        self, provider: str, operation: str, params: Mapping[str, Any]
    ) -> Optional[Any]:
        return self.get(self.generate_cache_key(provider, operation, params))

    def cache_completion(
        self,
        provider: str,
        messages: Any,
        options: Mapping[str, Any],
        response: Mapping[str, Any],
        ttl: Optional[int] = None,
    ) -> str:
        """Cache a completion; tagged by model when the options name one."""
        tags = set()
        model = options.get("model") if options else None
        if model:
            tags.add(model_tag(str(model)))
        return self.cache_response(
            provider,
            "completion",
            {"messages": messages, "options": dict(options or {})},
            response,
            self.completion_ttl if ttl is None else ttl,
            tags,
        )

    def get_cached_completion(
        self, provider: str, messages: Any, options: Mapping[str, Any]
    ) -> Optional[Any]:
        return self.get_cached_response(
            provider, "completion", {"messages": messages, "options": dict(options or {})}
        )

    def cache_embeddings(
        self,
        provider: str,
        input: Any,
        options: Mapping[str, Any],
        response: Mapping[str, Any],
        ttl: Optional[int] = None,
    ) -> str:
        return self.cache_response(
            provider,
            "embeddings",
            {"input": input, "options": dict(options or {})},
            response,
            self.embedding_ttl if ttl is None else ttl,
        )

    def get_cached_embeddings(
        self, provider: str, input: Any, options: Mapping[str, Any]
    ) -> Optional[Any]:
        return self.get_cached_response(
            provider, "embeddings", {"input": input, "options": dict(options or {})}
        )

    def stats(self) -> Dict[str, Any]:
        stats_fn = getattr(self.backend, "stats", None)
        if stats_fn is None:
            return {}
        try:
            return stats_fn()
        except OSError as e:
            logger.warning(f"Cache stats unavailable: {e}")
            return {}
