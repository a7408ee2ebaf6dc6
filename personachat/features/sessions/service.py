"""
Session -> provider affinity cache.

Remembers which upstream provider last answered for a chat session so the
next request can skip providers that are failing. Entries are process-local,
idle-expire after ``ttl_seconds`` and are capped at ``max_entries``; above
the cap the least recently used entries are evicted.

Thread-safe: FastAPI runs sync endpoints on a worker pool, so every
operation holds the cache lock.
"""

import logging
import random
import string
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from personachat.core.config import settings
from personachat.core.metrics import affinity_sessions_active


logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60
DEFAULT_MAX_ENTRIES = 10000

_SESSION_SUFFIX_CHARS = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class SessionAffinity:
    session_id: str
    provider_id: str
    provider_kind: str
    created_at: float
    last_used_at: float
    request_count: int = 1
    last_error: Optional[str] = None


class ProviderAffinityCache:
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.time_fn = time_fn or time.time
        self._entries: Dict[str, SessionAffinity] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _expired(self, entry: SessionAffinity, now: float) -> bool:
        return now - entry.last_used_at > self.ttl_seconds

    def _publish_size(self) -> None:
        affinity_sessions_active.set(len(self._entries))

    def get(self, session_id: str) -> Optional[SessionAffinity]:
        """Live entry for ``session_id``; expired entries are dropped on read."""
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            now = self.time_fn()
            if self._expired(entry, now):
                del self._entries[session_id]
                self._publish_size()
                return None
            entry = replace(entry, last_used_at=now)
            self._entries[session_id] = entry
            return entry

    def put(self, session_id: str, provider_id: str, provider_kind: str) -> SessionAffinity:
        """Bind ``session_id`` to a provider that just succeeded."""
        with self._lock:
            now = self.time_fn()
            existing = self._entries.get(session_id)
            if existing is not None and not self._expired(existing, now):
                entry = replace(
                    existing,
                    provider_id=provider_id,
                    provider_kind=provider_kind,
                    last_used_at=now,
                    request_count=existing.request_count + 1,
                    last_error=None,
                )
            else:
                entry = SessionAffinity(
                    session_id=session_id,
                    provider_id=provider_id,
                    provider_kind=provider_kind,
                    created_at=now,
                    last_used_at=now,
                )
            self._entries[session_id] = entry
            self.sweep()
            return entry

    def evict(self, session_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(session_id, None) is not None
            if removed:
                self._publish_size()
            return removed

    def record_error(self, session_id: str, error: str) -> None:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is not None:
                self._entries[session_id] = replace(entry, last_error=error[:200])

    def sweep(self) -> int:
        """Drop idle-expired entries, then LRU-evict down to the cap.

        Returns the number of entries removed.
        """
        with self._lock:
            now = self.time_fn()
            expired = [sid for sid, entry in self._entries.items() if self._expired(entry, now)]
            for sid in expired:
                del self._entries[sid]
            removed = len(expired)

            overflow = len(self._entries) - self.max_entries
            if overflow > 0:
                oldest = sorted(self._entries.values(), key=lambda e: e.last_used_at)[:overflow]
                for entry in oldest:
                    del self._entries[entry.session_id]
                removed += len(oldest)

            self._publish_size()
            if removed:
                logger.debug("[sessions] swept %s entries", removed)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._publish_size()

    def session_stats(self, session_id: str) -> Optional[Dict[str, object]]:
        with self._lock:
            entry = self._entries.get(session_id)
            if entry is None or self._expired(entry, self.time_fn()):
                return None
            return {
                "sessionId": entry.session_id,
                "requestCount": entry.request_count,
                "provider": entry.provider_kind,
                "age": int(self.time_fn() - entry.created_at),
                "lastError": entry.last_error,
            }

    def active_sessions(self) -> List[SessionAffinity]:
        with self._lock:
            now = self.time_fn()
            return [e for e in self._entries.values() if not self._expired(e, now)]

    def manager_stats(self) -> Dict[str, object]:
        with self._lock:
            now = self.time_fn()
            entries = list(self._entries.values())
            by_provider: Dict[str, int] = {}
            for entry in entries:
                by_provider[entry.provider_kind] = by_provider.get(entry.provider_kind, 0) + 1
            total_age = sum(now - e.created_at for e in entries)
            return {
                "totalSessions": len(entries),
                "sessionsByProvider": by_provider,
                "averageAge": int(total_age / len(entries)) if entries else 0,
                "totalRequests": sum(e.request_count for e in entries),
                "ttlSeconds": self.ttl_seconds,
                "maxSessions": self.max_entries,
            }

    def generate_session_id(self) -> str:
        millis = int(self.time_fn() * 1000)
        suffix = "".join(random.choices(_SESSION_SUFFIX_CHARS, k=9))
        return f"session_{millis}_{suffix}"


# Process-wide cache; restarts start empty.
affinity_cache = ProviderAffinityCache(
    ttl_seconds=settings.SESSION_TTL_SECONDS,
    max_entries=settings.SESSION_MAX_ENTRIES,
)
