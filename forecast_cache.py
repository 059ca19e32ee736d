from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Tuple, Type

from weather_data import utc_now

FORECAST_CACHE_DIR = os.getenv("FORECAST_CACHE_DIR", "cache")
FORECAST_CACHE_TTL_SECONDS = float(os.getenv("FORECAST_CACHE_TTL_SECONDS", "10800"))
MARINE_CACHE_TTL_SECONDS = float(os.getenv("MARINE_CACHE_TTL_SECONDS", "3600"))
LOGGER = logging.getLogger("howe_forecast.cache")

SOURCE_FRESH = "fresh"
SOURCE_REBUILT = "rebuilt"
SOURCE_STALE = "stale"


@dataclass(frozen=True)
class CacheEntry:
    payload: str
    created_at: datetime

    def document(self) -> Dict[str, object]:
        return json.loads(self.payload)


@dataclass(frozen=True)
class CachedPayload:
    payload: str
    source: str


def serialize_document(document: Dict[str, object]) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False)


def forecast_cache_key(days: int) -> str:
    return f"forecast_{int(days)}d"


class JsonFileCache:
    """One JSON document per key on disk; ``created_at`` is the file mtime."""

    def __init__(self, cache_dir: Path | str = FORECAST_CACHE_DIR, clock: Callable[[], datetime] = utc_now) -> None:
        self._cache_dir = Path(cache_dir)
        self._clock = clock
        self._key_locks: Dict[str, threading.Lock] = {}
        self._key_locks_guard = threading.Lock()

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    def path_for(self, key: str) -> Path:
        return self._cache_dir / f"{key}_latest.json"

    def read(self, key: str) -> CacheEntry | None:
        path = self.path_for(key)
        try:
            payload = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError:
            LOGGER.warning("Failed to read cache entry path=%s", path)
            return None
        return CacheEntry(payload=payload, created_at=datetime.fromtimestamp(mtime, tz=timezone.utc))

    def is_fresh(self, entry: CacheEntry, ttl_seconds: float) -> bool:
        age = (self._clock() - entry.created_at).total_seconds()
        return age < ttl_seconds

    def write(self, key: str, payload: str) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(path.suffix + f".{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            self._cache_dir.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError:
            LOGGER.warning("Failed to write cache entry path=%s", path)
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                pass
            return
        LOGGER.debug("Saved cache entry key=%s bytes=%d", key, len(payload))

    def key_lock(self, key: str) -> threading.Lock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock


def read_through(
    cache: JsonFileCache,
    key: str,
    ttl_seconds: float,
    build: Callable[[], Dict[str, object]],
    stale_on: Tuple[Type[BaseException], ...] = (),
) -> CachedPayload:
    """Serve ``key`` from cache while fresh, otherwise rebuild and store it.

    Exceptions listed in ``stale_on`` fall back to any existing entry regardless
    of age; everything else propagates and leaves the previous entry in place.
    """
    entry = cache.read(key)
    if entry is not None and cache.is_fresh(entry, ttl_seconds):
        return CachedPayload(entry.payload, SOURCE_FRESH)

    with cache.key_lock(key):
        # Another request may have rebuilt the entry while we waited.
        entry = cache.read(key)
        if entry is not None and cache.is_fresh(entry, ttl_seconds):
            return CachedPayload(entry.payload, SOURCE_FRESH)
        try:
            document = build()
        except stale_on as exc:
            if entry is None:
                raise
            LOGGER.warning("Refresh failed for key=%s, serving stale entry from %s: %s", key, entry.created_at, exc)
            return CachedPayload(entry.payload, SOURCE_STALE)
        payload = serialize_document(document)
        cache.write(key, payload)
        return CachedPayload(payload, SOURCE_REBUILT)


class CacheRefresher:
    """Best-effort background loop that rebuilds cache entries on a schedule."""

    def __init__(self, poll_seconds: float = 60.0, clock: Callable[[], datetime] = utc_now) -> None:
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._jobs: List[Tuple[str, float, Callable[[], None]]] = []
        self._last_run: Dict[str, datetime] = {}
        self._guard = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def add_job(self, name: str, interval_seconds: float, refresh: Callable[[], None]) -> None:
        with self._guard:
            self._jobs = [job for job in self._jobs if job[0] != name]
            self._jobs.append((name, float(interval_seconds), refresh))

    def start(self) -> None:
        with self._guard:
            if self._thread is not None:
                return
            # Each thread owns its event so a stopped loop can never be revived.
            stop_event = threading.Event()
            self._stop = stop_event
            self._thread = threading.Thread(target=self._loop, args=(stop_event,), name="cache-refresh", daemon=True)
            self._thread.start()
        LOGGER.info("Started cache refresh thread jobs=%s", [name for name, _, _ in self._jobs])

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._guard:
            self._stop.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        LOGGER.info("Stopped cache refresh thread")

    def run_due_jobs(self) -> List[str]:
        now = self._clock()
        ran: List[str] = []
        with self._guard:
            jobs = list(self._jobs)
        for name, interval, refresh in jobs:
            last = self._last_run.get(name)
            if last is not None and (now - last).total_seconds() < interval:
                continue
            self._last_run[name] = now
            try:
                refresh()
            except Exception:
                LOGGER.exception("Scheduled refresh failed job=%s", name)
                continue
            ran.append(name)
        return ran

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.run_due_jobs()
            stop_event.wait(self._poll_seconds)
