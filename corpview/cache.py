"""Two-tier stale-while-revalidate cache.

The in-process dict answers most reads. Behind it sits an optional
durable ``KeyValueStore`` that survives restarts and is shared between
processes. The durable tier is best effort: its failures are logged and
counted, never raised to the caller.
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from .kv_store import KeyValueStore
from .run_logger import log_event


logger = logging.getLogger(__name__)

# Seconds. Company list is a plain TTL entry; the rest are served with SWR.
CACHE_TTL = {
    "company_list": 86400,
    "company_info": 3600,
    "financial_data": 3600,
    "disclosures": 1800,
    "news": 900,
}

COMPANY_LIST_KEY = "company-list"

Fetch = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class SWROptions:
    max_age: int
    stale_time: int


SWR_CONFIG = {
    "company_info": SWROptions(max_age=3600, stale_time=1800),
    "financial_data": SWROptions(max_age=3600, stale_time=1800),
    "disclosures": SWROptions(max_age=1800, stale_time=900),
    "news": SWROptions(max_age=900, stale_time=450),
}


def company_info_key(corp_code: str) -> str:
    return f"company-info:{corp_code}"


def financial_key(corp_code: str, day: Union[date, str]) -> str:
    if isinstance(day, date):
        day = day.isoformat()
    return f"financial:{corp_code}:{day}"


def financial_details_key(corp_code: str, year: int) -> str:
    return f"financial-details:{corp_code}:{year}"


def disclosures_key(corp_code: str) -> str:
    return f"disclosures:{corp_code}"


def news_key(corp_code: str) -> str:
    return f"news:{corp_code}"


class CacheStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"
    MISSING = "missing"


@dataclass(frozen=True)
class CacheEntry:
    data: Any
    timestamp: float
    ttl: float
    stale_time: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now - self.timestamp > self.ttl

    def status(self, now: float) -> CacheStatus:
        age = now - self.timestamp
        if age > self.ttl:
            return CacheStatus.EXPIRED
        if self.stale_time is None or age <= self.stale_time:
            return CacheStatus.FRESH
        return CacheStatus.STALE

    def to_bytes(self) -> bytes:
        payload = {
            "data": self.data,
            "timestamp": self.timestamp,
            "ttl": self.ttl,
            "staleTime": self.stale_time,
        }
        return json.dumps(payload, ensure_ascii=False).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> "CacheEntry":
        payload = json.loads(raw.decode("utf-8"))
        stale_time = payload.get("staleTime")
        return cls(
            data=payload["data"],
            timestamp=float(payload["timestamp"]),
            ttl=float(payload["ttl"]),
            stale_time=None if stale_time is None else float(stale_time),
        )


@dataclass
class SWRResult:
    data: Any
    is_stale: bool = False
    is_validating: bool = False
    error: Optional[BaseException] = None

    @property
    def status(self) -> str:
        return CacheStatus.STALE.value if self.is_stale else CacheStatus.FRESH.value


@dataclass
class CacheStats:
    memory_hits: int = 0
    durable_hits: int = 0
    misses: int = 0
    durable_errors: int = 0
    revalidations: int = 0
    revalidation_failures: int = 0
    fetch_failures: int = 0


class CacheManager:
    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
        fetch_timeout: Optional[float] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._fetch_timeout = fetch_timeout
        self._memory: Dict[str, CacheEntry] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._stats = CacheStats()
        self.revalidating_keys: Set[str] = set()

    async def get(self, key: str) -> Optional[Any]:
        entry = await self._lookup(key)
        if entry is None or entry.is_expired(self._clock()):
            return None
        return entry.data

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float,
        stale_time: Optional[float] = None,
    ) -> None:
        entry = CacheEntry(data=value, timestamp=self._clock(), ttl=ttl, stale_time=stale_time)
        self._memory[key] = entry
        if self._store is None:
            return
        try:
            await self._store.put(key, entry.to_bytes(), int(math.ceil(ttl)))
        except Exception as exc:
            self._stats.durable_errors += 1
            log_event(logger, "cache.durable_write_failed", logging.WARNING, key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        self._memory.pop(key, None)
        if self._store is None:
            return
        try:
            await self._store.delete(key)
        except Exception as exc:
            self._stats.durable_errors += 1
            log_event(logger, "cache.durable_delete_failed", logging.WARNING, key=key, error=str(exc))

    async def get_cache_status(self, key: str) -> CacheStatus:
        entry = await self._lookup(key)
        if entry is None:
            return CacheStatus.MISSING
        return entry.status(self._clock())

    async def get_with_swr(self, key: str, fetch: Fetch, options: SWROptions) -> SWRResult:
        entry = await self._lookup(key)
        now = self._clock()

        if entry is not None and not entry.is_expired(now):
            is_stale = entry.status(now) is CacheStatus.STALE
            if is_stale:
                self._start_revalidation(key, fetch, options)
            return SWRResult(
                data=entry.data,
                is_stale=is_stale,
                is_validating=key in self.revalidating_keys,
            )

        try:
            data = await self._run_fetch(fetch)
        except Exception as exc:
            self._stats.fetch_failures += 1
            log_event(
                logger,
                "cache.fetch_failed",
                logging.WARNING,
                key=key,
                error=str(exc),
                has_fallback=entry is not None,
            )
            if entry is not None:
                return SWRResult(data=entry.data, is_stale=True, error=exc)
            return SWRResult(data=None, error=exc)

        await self.set(key, data, options.max_age, options.stale_time)
        return SWRResult(data=data)

    async def wait_for_revalidations(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear_memory(self) -> None:
        self._memory.clear()

    def stats(self) -> Dict[str, Any]:
        data = asdict(self._stats)
        data["memory_entries"] = len(self._memory)
        data["revalidating"] = len(self.revalidating_keys)
        data["durable_tier"] = self._store is not None
        return data

    async def _lookup(self, key: str) -> Optional[CacheEntry]:
        """Freshest live entry across both tiers, else the newest expired one."""
        memory_entry = self._memory.get(key)
        if memory_entry is not None and not memory_entry.is_expired(self._clock()):
            self._stats.memory_hits += 1
            return memory_entry

        durable_entry = await self._read_durable(key)
        now = self._clock()
        # A concurrent set may have landed while the durable read was pending.
        memory_entry = self._memory.get(key)
        candidates = [e for e in (memory_entry, durable_entry) if e is not None]
        live = [e for e in candidates if not e.is_expired(now)]
        if live:
            best = max(live, key=lambda e: e.timestamp)
            if best is durable_entry:
                self._memory[key] = durable_entry
                self._stats.durable_hits += 1
            else:
                self._stats.memory_hits += 1
            return best

        self._stats.misses += 1
        if not candidates:
            return None
        return max(candidates, key=lambda e: e.timestamp)

    async def _read_durable(self, key: str) -> Optional[CacheEntry]:
        if self._store is None:
            return None
        try:
            raw = await self._store.get(key)
        except Exception as exc:
            self._stats.durable_errors += 1
            log_event(logger, "cache.durable_read_failed", logging.WARNING, key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_bytes(raw)
        except (ValueError, KeyError, TypeError) as exc:
            log_event(logger, "cache.durable_entry_corrupt", logging.WARNING, key=key, error=str(exc))
            return None

    async def _run_fetch(self, fetch: Fetch) -> Any:
        if self._fetch_timeout:
            return await asyncio.wait_for(fetch(), timeout=self._fetch_timeout)
        return await fetch()

    def _start_revalidation(self, key: str, fetch: Fetch, options: SWROptions) -> None:
        # Check-and-add happens before any await, so concurrent callers see the flag.
        if key in self.revalidating_keys:
            return
        self.revalidating_keys.add(key)
        self._stats.revalidations += 1
        task = asyncio.get_running_loop().create_task(self._revalidate(key, fetch, options))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _revalidate(self, key: str, fetch: Fetch, options: SWROptions) -> None:
        try:
            data = await self._run_fetch(fetch)
            await self.set(key, data, options.max_age, options.stale_time)
            log_event(logger, "cache.revalidated", logging.DEBUG, key=key)
        except Exception as exc:
            self._stats.revalidation_failures += 1
            log_event(logger, "cache.revalidation_failed", logging.WARNING, key=key, error=str(exc))
        finally:
            self.revalidating_keys.discard(key)
