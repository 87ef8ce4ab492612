# core/geo_cache.py
"""Geolocation cache: TTL-checked store of resolved IPs"""

import logging
from collections import OrderedDict
from typing import Optional

import aiosqlite

from core.errors import StoreError
from core.models import GeoCacheEntry, GeoResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60

GEO_COLUMNS = (
    'ip', 'country', 'country_code', 'region', 'city', 'latitude', 'longitude',
    'timezone', 'isp', 'continent', 'provider',
)


class GeoCache:
    """
    Cache interface used by the geolocation resolver.

    Implementations only store and return entries; freshness is decided with
    `is_fresh` so every backend applies the same TTL rule.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self.hits = 0
        self.misses = 0
        self.stale = 0

    async def get(self, ip: str) -> Optional[GeoCacheEntry]:
        raise NotImplementedError

    async def upsert(self, entry: GeoCacheEntry) -> None:
        raise NotImplementedError

    async def size(self) -> int:
        raise NotImplementedError

    def is_fresh(self, entry: GeoCacheEntry, now: Optional[float] = None) -> bool:
        return entry.is_fresh(self.ttl_seconds, now)

    def record_lookup(self, hit: bool, stale: bool = False):
        if hit:
            self.hits += 1
        else:
            self.misses += 1
            if stale:
                self.stale += 1

    async def get_stats(self) -> dict:
        """
        Cache statistics

        Returns:
            dict: size, hits, misses, stale refreshes and hit rate
        """
        total = self.hits + self.misses
        hit_rate = (self.hits / total * 100) if total > 0 else 0

        return {
            'backend': self.__class__.__name__,
            'size': await self.size(),
            'ttl_seconds': self.ttl_seconds,
            'hits': self.hits,
            'misses': self.misses,
            'stale': self.stale,
            'hit_rate': f"{hit_rate:.1f}%",
            'total_lookups': total,
        }


class MemoryGeoCache(GeoCache):
    """In-process cache with LRU eviction"""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, maxsize: int = 1000):
        super().__init__(ttl_seconds)
        self.cache: "OrderedDict[str, GeoCacheEntry]" = OrderedDict()
        self.maxsize = maxsize
        logger.debug(f"MemoryGeoCache initialized: maxsize={maxsize}, ttl={ttl_seconds}s")

    async def get(self, ip: str) -> Optional[GeoCacheEntry]:
        entry = self.cache.get(ip)
        if entry is not None:
            self.cache.move_to_end(ip)
        return entry

    async def upsert(self, entry: GeoCacheEntry) -> None:
        ip = entry.ip
        if ip in self.cache:
            self.cache.move_to_end(ip)
        self.cache[ip] = entry

        if len(self.cache) > self.maxsize:
            evicted_ip = self.cache.popitem(last=False)[0]
            logger.debug(f"Geo cache EVICT: {evicted_ip}")

    async def size(self) -> int:
        return len(self.cache)

    def clear(self):
        size_before = len(self.cache)
        self.cache.clear()
        self.hits = 0
        self.misses = 0
        self.stale = 0
        logger.info(f"Geo cache cleared: {size_before} items removed")

    def __len__(self) -> int:
        return len(self.cache)

    def __contains__(self, ip: str) -> bool:
        return ip in self.cache


class SqliteGeoCache(GeoCache):
    """Cache persisted in the `ip_geo_cache` table (see core.storage.SCHEMA)"""

    def __init__(self, db_path, ttl_seconds: float = DEFAULT_TTL_SECONDS, timeout: float = 5.0):
        super().__init__(ttl_seconds)
        self.db_path = str(db_path)
        self.timeout = timeout

    async def get(self, ip: str) -> Optional[GeoCacheEntry]:
        sql = f"SELECT {','.join(GEO_COLUMNS)}, created_at FROM ip_geo_cache WHERE ip = ?"
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(sql, (ip,)) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StoreError(f"geo cache read failed for {ip}: {e}") from e

        if row is None:
            return None
        result = GeoResult(**{c: row[c] for c in GEO_COLUMNS})
        return GeoCacheEntry(result=result, created_at=row['created_at'])

    async def upsert(self, entry: GeoCacheEntry) -> None:
        columns = GEO_COLUMNS + ('created_at',)
        updates = ','.join(f"{c}=excluded.{c}" for c in columns if c != 'ip')
        sql = (
            f"INSERT INTO ip_geo_cache ({','.join(columns)}) "
            f"VALUES ({','.join('?' for _ in columns)}) "
            f"ON CONFLICT(ip) DO UPDATE SET {updates}"
        )
        values = tuple(getattr(entry.result, c) for c in GEO_COLUMNS) + (entry.created_at,)
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                await db.execute(sql, values)
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"geo cache upsert failed for {entry.ip}: {e}") from e

    async def size(self) -> int:
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                async with db.execute("SELECT COUNT(*) FROM ip_geo_cache") as cursor:
                    row = await cursor.fetchone()
                    return row[0] if row else 0
        except aiosqlite.Error as e:
            logger.warning(f"Geo cache size query failed: {e}")
            return -1
