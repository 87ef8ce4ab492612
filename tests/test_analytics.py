"""Analytics validation, pipeline and stores"""

import asyncio

import aiosqlite
import pytest

from conftest import drain
from core.analytics import (
    AnalyticsPipeline, session_change_to_access_log, validate_access_log, validate_episode_event,
)
from core.errors import StoreError, ValidationError
from core.models import AccessLogRecord, ChangeType, EpisodeEvent
from core.storage import MemoryAnalyticsStore, SqliteAnalyticsStore

ACCESS_LOG = {
    'domain': 'tv.example.com',
    'path': '/show/s01e02/index.m3u8',
    'method': 'get',
    'status_code': 200,
    'client_ip': '8.8.8.8',
    'bytes_transferred': 2048,
    'response_time_ms': 35,
    'session_id': 'S1',
    'episode_id': 'S01E02',
    'change_type': 'new_episode',
}

EPISODE_METRICS = {
    'domain': 'tv.example.com',
    'episode_id': 'S01E03',
    'session_id': 'S1',
    'client_ip': '8.8.8.8',
    'change_type': 'new_episode',
    'duration_seconds': 1320.5,
    'quality': '1080p',
    'bitrate': 4500,
}


class FailingStore(MemoryAnalyticsStore):
    async def insert_access_logs(self, records):
        raise StoreError("disk full")


class SlowStore(MemoryAnalyticsStore):
    async def insert_access_logs(self, records):
        await asyncio.sleep(0.5)
        return await super().insert_access_logs(records)


def record(n=0):
    return AccessLogRecord(domain='tv.example.com', path=f'/seg{n}.ts', method='GET',
                           status_code=200, client_ip='8.8.8.8')


# =============================================================================
# Validation
# =============================================================================

class TestValidateAccessLog:
    def test_valid(self):
        rec = validate_access_log(ACCESS_LOG)
        assert rec.method == 'GET'
        assert rec.status_code == 200
        assert rec.bytes_transferred == 2048
        assert rec.response_time_ms == 35
        assert rec.change_type == 'new_episode'

    def test_missing_required(self):
        data = {k: v for k, v in ACCESS_LOG.items() if k not in ('domain', 'client_ip')}
        with pytest.raises(ValidationError) as exc:
            validate_access_log(data)
        assert set(exc.value.fields) == {'domain', 'client_ip'}

    @pytest.mark.parametrize('field,value', [
        ('status_code', -1),
        ('status_code', 'abc'),
        ('bytes_transferred', -5),
        ('status_code', True),
        ('change_type', 'rewind'),
        ('access_timestamp', 'yesterday'),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ValidationError):
            validate_access_log({**ACCESS_LOG, field: value})

    def test_optional_defaults(self):
        rec = validate_access_log({k: ACCESS_LOG[k] for k in
                                   ('domain', 'path', 'method', 'status_code', 'client_ip')})
        assert rec.bytes_transferred == 0
        assert rec.session_id is None
        assert rec.change_type is None

    def test_not_an_object(self):
        with pytest.raises(ValidationError):
            validate_access_log(['domain'])


class TestValidateEpisodeEvent:
    def test_valid(self):
        event = validate_episode_event(EPISODE_METRICS)
        assert event.episode_id == 'S01E03'
        assert event.duration_seconds == 1320.5
        assert event.bitrate == 4500

    @pytest.mark.parametrize('missing', ['session_id', 'client_ip', 'domain', 'episode_id'])
    def test_identifying_fields_required(self, missing):
        data = {k: v for k, v in EPISODE_METRICS.items() if k != missing}
        with pytest.raises(ValidationError) as exc:
            validate_episode_event(data)
        assert exc.value.fields == [missing]


class TestSessionChange:
    def test_stored_as_access_log(self):
        rec = session_change_to_access_log({
            'session_id': 'S2', 'client_ip': '8.8.8.8', 'previous_session_id': 'S1',
            'change_reason': 'device_switch', 'episode_id': 'S01E02',
        })
        assert rec.path == '/session-change'
        assert rec.method == 'SESSION'
        assert rec.change_type == ChangeType.SESSION_CHANGE.value
        assert rec.previous_session_id == 'S1'
        assert rec.content_id is None
        assert rec.session_id == 'S2'
        assert rec.domain == 'session-change'

    def test_requires_session_and_client(self):
        with pytest.raises(ValidationError) as exc:
            session_change_to_access_log({'previous_session_id': 'S1'})
        assert set(exc.value.fields) == {'session_id', 'client_ip'}


# =============================================================================
# Pipeline
# =============================================================================

class TestPipeline:
    async def test_ingest_writes(self, store):
        pipeline = AnalyticsPipeline(store)
        result = await pipeline.ingest(ACCESS_LOG)

        assert result.success
        assert result.written == 1
        assert store.access_logs[0].episode_id == 'S01E02'

    async def test_ingest_invalid_is_not_written(self, store):
        pipeline = AnalyticsPipeline(store)
        result = await pipeline.ingest({'domain': 'x'})

        assert not result.success
        assert result.deferred_failure
        assert store.access_logs == []
        assert pipeline.stats['invalid'] == 1

    async def test_ingest_write_failure_is_dropped(self):
        pipeline = AnalyticsPipeline(FailingStore())
        result = await pipeline.ingest(ACCESS_LOG)

        assert not result.success
        assert 'disk full' in result.error
        assert pipeline.stats['failed'] == 1

    async def test_submit_is_written_by_worker(self, store, pipeline):
        assert pipeline.submit(record(1))
        assert pipeline.submit(EpisodeEvent(domain='d', episode_id='E1', session_id='S1',
                                            client_ip='8.8.8.8'))
        await drain(pipeline)

        assert len(store.access_logs) == 1
        assert len(store.episode_events) == 1
        assert pipeline.stats['written'] == 2

    async def test_submit_does_not_wait_for_slow_store(self):
        pipeline = AnalyticsPipeline(SlowStore())
        await pipeline.start()
        try:
            loop = asyncio.get_running_loop()
            started = loop.time()
            for n in range(5):
                pipeline.submit(record(n))
            assert loop.time() - started < 0.1
        finally:
            await pipeline.stop(flush_timeout=2)
        assert pipeline.stats['written'] == 5

    async def test_failed_batch_is_dropped_and_worker_survives(self):
        store = FailingStore()
        pipeline = AnalyticsPipeline(store)
        await pipeline.start()
        try:
            pipeline.submit(record(1))
            await drain(pipeline)
            pipeline.submit(EpisodeEvent(domain='d', episode_id='E1', session_id='S1',
                                         client_ip='8.8.8.8'))
            await drain(pipeline)
        finally:
            await pipeline.stop()

        assert pipeline.stats['failed'] == 1
        assert len(store.episode_events) == 1

    async def test_full_queue_drops_oldest(self, store):
        pipeline = AnalyticsPipeline(store, queue_size=2)
        # Queue without a worker so nothing drains
        pipeline.queue = asyncio.Queue(maxsize=2)

        for n in range(3):
            assert pipeline.submit(record(n))

        assert pipeline.stats['dropped'] == 1
        queued = [pipeline.queue.get_nowait().path for _ in range(2)]
        assert queued == ['/seg1.ts', '/seg2.ts']

    def test_submit_when_disabled(self, store):
        pipeline = AnalyticsPipeline(store, enabled=False)
        assert not pipeline.submit(record())

    def test_submit_before_start_is_dropped(self, store):
        pipeline = AnalyticsPipeline(store)
        assert not pipeline.submit(record())
        assert pipeline.stats['dropped'] == 1

    def test_submit_invalid_record(self, store):
        pipeline = AnalyticsPipeline(store)
        bad = AccessLogRecord(domain='', path='/', method='GET', status_code=200,
                              client_ip='8.8.8.8')
        assert not pipeline.submit(bad)
        assert pipeline.stats['invalid'] == 1

    async def test_status(self, pipeline):
        status = pipeline.get_status()
        assert status['running']
        assert status['max_queue_size'] == 100
        assert status['queue_size'] == 0


# =============================================================================
# Memory store
# =============================================================================

def _log(session_id, episode_id, ts, client_ip='8.8.8.8'):
    return AccessLogRecord(domain='d', path='/a', method='GET', status_code=200,
                           client_ip=client_ip, session_id=session_id,
                           episode_id=episode_id, access_timestamp=ts)


class TestMemoryStore:
    async def test_latest_state(self):
        store = MemoryAnalyticsStore()
        await store.insert_access_logs([_log('S1', 'E1', 100), _log('S1', 'E2', 200),
                                        _log('S9', 'E5', 150, client_ip='1.1.1.1')])
        await store.insert_access_logs([_log('S1', 'E3', 200)])

        assert (await store.latest_for_session('S1')).episode_id == 'E3'
        assert (await store.latest_for_client('1.1.1.1')).session_id == 'S9'
        assert await store.latest_for_session('nope') is None

    async def test_capped_and_evicts_oldest(self):
        store = MemoryAnalyticsStore(max_records=10)
        for i in range(25):
            await store.insert_access_logs([_log(f'S{i}', 'E1', i)])

        assert await store.count_access_logs() <= 10
        assert store.access_logs[-1].session_id == 'S24'
        assert await store.latest_for_session('S0') is None
        assert (await store.latest_for_session('S24')).last_seen == 24
        assert (await store.latest_for_client('8.8.8.8')).session_id == 'S24'

    async def test_episode_events_capped(self):
        store = MemoryAnalyticsStore(max_records=5)
        await store.insert_episode_events([
            EpisodeEvent(domain='d', episode_id=f'E{i}', session_id='S1', client_ip='8.8.8.8')
            for i in range(12)
        ])
        assert len(store.episode_events) <= 5
        assert store.episode_events[-1].episode_id == 'E11'


# =============================================================================
# SQLite store
# =============================================================================

class TestSqliteStore:
    async def test_insert_and_history(self, tmp_path):
        store = SqliteAnalyticsStore(tmp_path / 'data' / 'analytics.db')
        await store.initialize()

        await store.insert_access_logs([
            AccessLogRecord(domain='d', path='/a', method='GET', status_code=200,
                            client_ip='8.8.8.8', session_id='S1', episode_id='E1',
                            access_timestamp=100),
            AccessLogRecord(domain='d', path='/b', method='GET', status_code=200,
                            client_ip='8.8.8.8', session_id='S1', episode_id='E2',
                            access_timestamp=200),
            AccessLogRecord(domain='d', path='/c', method='GET', status_code=200,
                            client_ip='1.1.1.1', session_id='S9', episode_id='E5',
                            access_timestamp=300),
        ])
        await store.insert_episode_events([
            EpisodeEvent(domain='d', episode_id='E2', session_id='S1', client_ip='8.8.8.8'),
        ])

        assert await store.count_access_logs() == 3

        state = await store.latest_for_session('S1')
        assert state.episode_id == 'E2'
        assert state.last_seen == 200

        state = await store.latest_for_client('1.1.1.1')
        assert state.session_id == 'S9'

        assert await store.latest_for_session('nope') is None

    async def test_previous_session_has_its_own_column(self, tmp_path):
        db_path = tmp_path / 'analytics.db'
        store = SqliteAnalyticsStore(db_path)
        await store.initialize()

        await store.insert_access_logs([session_change_to_access_log({
            'session_id': 'S2', 'client_ip': '8.8.8.8', 'previous_session_id': 'S1',
        })])

        async with aiosqlite.connect(str(db_path)) as db:
            async with db.execute(
                "SELECT previous_session_id, content_id, change_type FROM access_logs"
            ) as cursor:
                row = await cursor.fetchone()
        assert row == ('S1', None, 'session_change')
