from __future__ import annotations

import hashlib
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Protocol

import cachetools

from .config import REPORT_TTL_S
from .models import Report


def url_hash(url: str) -> str:
    return hashlib.md5(url.encode("utf-8")).hexdigest()


def report_key(accessible_url: str) -> str:
    return f"seo_analyze_{url_hash(accessible_url)}"


class TTLCache:
    """Thread-safe, size-bounded key/value store with a fixed time to live.

    Wraps ``cachetools.TTLCache``; the clock is injectable for tests.
    """

    def __init__(self, ttl_seconds: float, maxsize: int = 1024, clock: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._items: cachetools.TTLCache = cachetools.TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=clock)

    def get(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = value

    def __len__(self) -> int:
        with self._lock:
            self._items.expire()
            return len(self._items)


class ReportStore(Protocol):
    def get(self, domain_key: str) -> Report | None: ...

    def put(self, domain_key: str, report: Report) -> None: ...


class InMemoryReportStore:
    def __init__(
        self,
        ttl_seconds: float = REPORT_TTL_S,
        maxsize: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = TTLCache(ttl_seconds, maxsize=maxsize, clock=clock)

    def get(self, domain_key: str) -> Report | None:
        return self._cache.get(domain_key)

    def put(self, domain_key: str, report: Report) -> None:
        self._cache.put(domain_key, report)


class KeyedLocks:
    """One mutex per key, dropped again when nobody holds or waits for it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                _, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def active_keys(self) -> list[str]:
        with self._guard:
            return list(self._locks)
