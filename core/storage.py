# core/storage.py
"""
Durable stores for analytics records and session history.

Two interchangeable backends:
    - SqliteAnalyticsStore: aiosqlite, one short-lived connection per operation
    - MemoryAnalyticsStore: process-local capped lists, for tests and `storage.backend = memory`

Both are append-only for access logs and episode events. The continuity
tracker reads recent history through `latest_for_session` / `latest_for_client`.
"""

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import aiosqlite

from core.errors import StoreError, HistoryLookupError
from core.models import AccessLogRecord, EpisodeEvent, SessionState

logger = logging.getLogger(__name__)

ACCESS_LOG_COLUMNS = (
    'domain', 'domain_id', 'path', 'method', 'status_code', 'client_ip', 'user_agent',
    'referer', 'device_type', 'country', 'city', 'bytes_transferred', 'response_time_ms',
    'cache_status', 'endpoint_type', 'session_id', 'episode_id', 'content_id',
    'previous_session_id', 'change_type', 'access_timestamp',
)

EPISODE_EVENT_COLUMNS = (
    'domain', 'domain_id', 'episode_id', 'session_id', 'client_ip', 'change_type',
    'content_id', 'device_type', 'country', 'user_agent', 'bytes_transferred',
    'duration_seconds', 'quality', 'bitrate', 'resolution', 'created_at',
)

SCHEMA = (
    """CREATE TABLE IF NOT EXISTS access_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT, domain TEXT NOT NULL, domain_id TEXT,
        path TEXT NOT NULL, method TEXT NOT NULL, status_code INTEGER NOT NULL,
        client_ip TEXT NOT NULL, user_agent TEXT, referer TEXT, device_type TEXT,
        country TEXT, city TEXT, bytes_transferred INTEGER DEFAULT 0,
        response_time_ms INTEGER, cache_status TEXT, endpoint_type TEXT, session_id TEXT,
        episode_id TEXT, content_id TEXT, previous_session_id TEXT, change_type TEXT,
        access_timestamp REAL NOT NULL)""",
    """CREATE TABLE IF NOT EXISTS episode_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT, domain TEXT NOT NULL, domain_id TEXT,
        episode_id TEXT NOT NULL, session_id TEXT NOT NULL, client_ip TEXT NOT NULL,
        change_type TEXT, content_id TEXT, device_type TEXT, country TEXT, user_agent TEXT,
        bytes_transferred INTEGER DEFAULT 0, duration_seconds REAL DEFAULT 0, quality TEXT,
        bitrate INTEGER, resolution TEXT, created_at REAL NOT NULL)""",
    """CREATE TABLE IF NOT EXISTS ip_geo_cache (
        ip TEXT PRIMARY KEY, country TEXT, country_code TEXT, region TEXT, city TEXT,
        latitude REAL, longitude REAL, timezone TEXT, isp TEXT, continent TEXT,
        provider TEXT, created_at REAL NOT NULL)""",
    "CREATE INDEX IF NOT EXISTS idx_access_session ON access_logs(session_id, access_timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_access_client ON access_logs(client_ip, access_timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_access_timestamp ON access_logs(access_timestamp DESC)",
)


async def init_database(db_path) -> None:
    """Create tables and indexes if missing"""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(str(db_path)) as db:
        for statement in SCHEMA:
            await db.execute(statement)
        await db.commit()
    logger.info(f"SQLite database ready: {db_path}")


def _state_from_row(row) -> Optional[SessionState]:
    if row is None:
        return None
    return SessionState(
        session_id=row['session_id'],
        client_ip=row['client_ip'],
        episode_id=row['episode_id'],
        last_seen=row['access_timestamp'],
    )


class AnalyticsStore:
    """Interface shared by the store backends"""

    async def initialize(self):
        pass

    async def insert_access_logs(self, records: Sequence[AccessLogRecord]) -> int:
        raise NotImplementedError

    async def insert_episode_events(self, events: Sequence[EpisodeEvent]) -> int:
        raise NotImplementedError

    async def latest_for_session(self, session_id: str) -> Optional[SessionState]:
        raise NotImplementedError

    async def latest_for_client(self, client_ip: str) -> Optional[SessionState]:
        raise NotImplementedError


class SqliteAnalyticsStore(AnalyticsStore):
    def __init__(self, db_path, timeout: float = 5.0):
        self.db_path = str(db_path)
        self.timeout = timeout

    async def initialize(self):
        await init_database(self.db_path)

    async def _insert_many(self, table: str, columns, rows) -> int:
        if not rows:
            return 0
        placeholders = ','.join('?' for _ in columns)
        sql = f"INSERT INTO {table} ({','.join(columns)}) VALUES ({placeholders})"
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                await db.executemany(sql, rows)
                await db.commit()
        except aiosqlite.Error as e:
            raise StoreError(f"insert into {table} failed: {e}") from e
        return len(rows)

    async def insert_access_logs(self, records: Sequence[AccessLogRecord]) -> int:
        rows = [tuple(getattr(r, c) for c in ACCESS_LOG_COLUMNS) for r in records]
        return await self._insert_many('access_logs', ACCESS_LOG_COLUMNS, rows)

    async def insert_episode_events(self, events: Sequence[EpisodeEvent]) -> int:
        rows = [tuple(getattr(e, c) for c in EPISODE_EVENT_COLUMNS) for e in events]
        return await self._insert_many('episode_events', EPISODE_EVENT_COLUMNS, rows)

    async def _latest(self, where: str, value: str) -> Optional[SessionState]:
        sql = (
            "SELECT session_id, client_ip, episode_id, access_timestamp FROM access_logs "
            f"WHERE {where} = ? AND session_id IS NOT NULL "
            "ORDER BY access_timestamp DESC, id DESC LIMIT 1"
        )
        try:
            async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(sql, (value,)) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise HistoryLookupError(f"history query on {where} failed: {e}") from e
        return _state_from_row(row)

    async def latest_for_session(self, session_id: str) -> Optional[SessionState]:
        return await self._latest('session_id', session_id)

    async def latest_for_client(self, client_ip: str) -> Optional[SessionState]:
        return await self._latest('client_ip', client_ip)

    async def count_access_logs(self) -> int:
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            async with db.execute("SELECT COUNT(*) FROM access_logs") as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0


class MemoryAnalyticsStore(AnalyticsStore):
    """
    In-process store for tests and single-node deployments.

    Keeps at most `max_records` rows per table; the oldest tenth is evicted
    when the cap is reached. Latest-state lookups go through per-session and
    per-client indexes rebuilt on eviction.
    """

    def __init__(self, max_records: int = 100000):
        self.max_records = max(1, max_records)
        self.access_logs: List[AccessLogRecord] = []
        self.episode_events: List[EpisodeEvent] = []
        self._by_session: Dict[str, AccessLogRecord] = {}
        self._by_client: Dict[str, AccessLogRecord] = {}
        self._lock = asyncio.Lock()

    def _index(self, record: AccessLogRecord):
        if not record.session_id:
            return
        # Later inserts win ties on timestamp
        for index, key in ((self._by_session, record.session_id), (self._by_client, record.client_ip)):
            current = index.get(key)
            if current is None or record.access_timestamp >= current.access_timestamp:
                index[key] = record

    def _evict(self, rows: list) -> bool:
        if len(rows) <= self.max_records:
            return False
        keep = self.max_records - max(1, self.max_records // 10)
        del rows[:len(rows) - keep]
        return True

    async def insert_access_logs(self, records: Sequence[AccessLogRecord]) -> int:
        async with self._lock:
            self.access_logs.extend(records)
            if self._evict(self.access_logs):
                logger.debug(f"Memory store evicted access logs, {len(self.access_logs)} kept")
                self._by_session.clear()
                self._by_client.clear()
                for record in self.access_logs:
                    self._index(record)
            else:
                for record in records:
                    self._index(record)
        return len(records)

    async def insert_episode_events(self, events: Sequence[EpisodeEvent]) -> int:
        async with self._lock:
            self.episode_events.extend(events)
            self._evict(self.episode_events)
        return len(events)

    @staticmethod
    def _state(record: Optional[AccessLogRecord]) -> Optional[SessionState]:
        if record is None:
            return None
        return SessionState(
            session_id=record.session_id,
            client_ip=record.client_ip,
            episode_id=record.episode_id,
            last_seen=record.access_timestamp,
        )

    async def latest_for_session(self, session_id: str) -> Optional[SessionState]:
        return self._state(self._by_session.get(session_id))

    async def latest_for_client(self, client_ip: str) -> Optional[SessionState]:
        return self._state(self._by_client.get(client_ip))

    async def count_access_logs(self) -> int:
        return len(self.access_logs)
