# core/analytics.py
"""
Analytics ingestion pipeline.

Records are validated, queued without blocking the caller and written in
batches by a background worker. Delivery is at-most-once: a failed write is
logged and the batch is dropped.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from core.errors import ValidationError
from core.models import AccessLogRecord, EpisodeEvent, ChangeType
from core.storage import AnalyticsStore

logger = logging.getLogger(__name__)

ACCESS_LOG_REQUIRED = ('domain', 'path', 'method', 'status_code', 'client_ip')
EPISODE_REQUIRED = ('domain', 'episode_id', 'session_id', 'client_ip')
SESSION_CHANGE_REQUIRED = ('session_id', 'client_ip')

CHANGE_TYPES = {c.value for c in ChangeType}

Record = Union[AccessLogRecord, EpisodeEvent]


def _missing(data: Dict[str, Any], required) -> List[str]:
    return [name for name in required if data.get(name) in (None, '')]


def _non_negative_int(value: Any, name: str, default: Optional[int] = 0) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", [name])
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", [name])
    if value < 0:
        raise ValidationError(f"{name} must be non-negative", [name])
    return value


def _optional_str(data: Dict[str, Any], name: str, limit: int = 1000) -> Optional[str]:
    value = data.get(name)
    if value is None or value == '':
        return None
    return str(value)[:limit]


def _change_type(data: Dict[str, Any]) -> Optional[str]:
    value = data.get('change_type')
    if value is None:
        return None
    if isinstance(value, ChangeType):
        return value.value
    if value not in CHANGE_TYPES:
        raise ValidationError(f"change_type must be one of {sorted(CHANGE_TYPES)}", ['change_type'])
    return value


def validate_access_log(data: Dict[str, Any]) -> AccessLogRecord:
    """
    Build an AccessLogRecord from a raw dict.

    Raises:
        ValidationError: missing required fields or invalid values
    """
    if not isinstance(data, dict):
        raise ValidationError("access log must be a JSON object")

    missing = _missing(data, ACCESS_LOG_REQUIRED)
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}", missing)

    status_code = _non_negative_int(data.get('status_code'), 'status_code')
    response_time = data.get('response_time_ms', data.get('response_time'))
    try:
        access_timestamp = float(data.get('access_timestamp') or time.time())
    except (TypeError, ValueError):
        raise ValidationError("access_timestamp must be epoch seconds", ['access_timestamp'])

    return AccessLogRecord(
        domain=str(data['domain']),
        domain_id=_optional_str(data, 'domain_id'),
        path=str(data['path']),
        method=str(data['method']).upper(),
        status_code=status_code,
        client_ip=str(data['client_ip']),
        user_agent=_optional_str(data, 'user_agent', 500),
        referer=_optional_str(data, 'referer'),
        device_type=_optional_str(data, 'device_type'),
        country=_optional_str(data, 'country'),
        city=_optional_str(data, 'city'),
        bytes_transferred=_non_negative_int(data.get('bytes_transferred'), 'bytes_transferred'),
        response_time_ms=_non_negative_int(response_time, 'response_time_ms', None),
        cache_status=_optional_str(data, 'cache_status'),
        endpoint_type=_optional_str(data, 'endpoint_type'),
        session_id=_optional_str(data, 'session_id'),
        episode_id=_optional_str(data, 'episode_id'),
        content_id=_optional_str(data, 'content_id'),
        previous_session_id=_optional_str(data, 'previous_session_id'),
        change_type=_change_type(data),
        access_timestamp=access_timestamp,
    )


def validate_episode_event(data: Dict[str, Any]) -> EpisodeEvent:
    if not isinstance(data, dict):
        raise ValidationError("episode event must be a JSON object")

    missing = _missing(data, EPISODE_REQUIRED)
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}", missing)

    duration = data.get('duration_seconds') or 0
    try:
        duration = float(duration)
    except (TypeError, ValueError):
        raise ValidationError("duration_seconds must be a number", ['duration_seconds'])

    return EpisodeEvent(
        domain=str(data['domain']),
        domain_id=_optional_str(data, 'domain_id'),
        episode_id=str(data['episode_id']),
        session_id=str(data['session_id']),
        client_ip=str(data['client_ip']),
        change_type=_change_type(data),
        content_id=_optional_str(data, 'content_id'),
        device_type=_optional_str(data, 'device_type'),
        country=_optional_str(data, 'country'),
        user_agent=_optional_str(data, 'user_agent', 500),
        bytes_transferred=_non_negative_int(data.get('bytes_transferred'), 'bytes_transferred'),
        duration_seconds=duration,
        quality=_optional_str(data, 'quality'),
        bitrate=_non_negative_int(data.get('bitrate'), 'bitrate', None),
        resolution=_optional_str(data, 'resolution'),
    )


def session_change_to_access_log(data: Dict[str, Any]) -> AccessLogRecord:
    """A session-change notification is stored as a synthetic access log row"""
    if not isinstance(data, dict):
        raise ValidationError("session change must be a JSON object")

    missing = _missing(data, SESSION_CHANGE_REQUIRED)
    if missing:
        raise ValidationError(f"missing required fields: {', '.join(missing)}", missing)

    return validate_access_log({
        'domain': data.get('domain') or 'session-change',
        'domain_id': data.get('domain_id'),
        'path': '/session-change',
        'method': 'SESSION',
        'status_code': 200,
        'client_ip': data['client_ip'],
        'user_agent': data.get('user_agent') or 'Session Change',
        'device_type': data.get('device_type'),
        'country': data.get('country'),
        'session_id': data['session_id'],
        'episode_id': data.get('episode_id'),
        'previous_session_id': data.get('previous_session_id'),
        'change_type': ChangeType.SESSION_CHANGE.value,
        'response_time_ms': data.get('response_time_ms') or 0,
    })


@dataclass
class IngestResult:
    success: bool
    written: int = 0
    error: Optional[str] = None

    @property
    def deferred_failure(self) -> bool:
        return not self.success


class AnalyticsPipeline:
    def __init__(self, store: AnalyticsStore, queue_size: int = 1000,
                 batch_size: int = 50, enabled: bool = True):
        self.store = store
        self.queue_size = queue_size
        self.batch_size = batch_size
        self.enabled = enabled
        self.queue: Optional[asyncio.Queue] = None
        self.worker: Optional[asyncio.Task] = None

        self.stats = {
            'submitted': 0,
            'written': 0,
            'dropped': 0,
            'failed': 0,
            'invalid': 0,
        }

    async def start(self):
        if self.queue is None:
            self.queue = asyncio.Queue(maxsize=self.queue_size)
        if self.worker is None:
            self.worker = asyncio.create_task(self._run(), name='analytics-worker')
            logger.info(f"📊 Analytics worker started (queue={self.queue_size}, batch={self.batch_size})")

    async def stop(self, flush_timeout: float = 5.0):
        """Stop the worker after a best-effort flush of queued records"""
        # join() also covers a batch the worker has taken but not yet written
        if self.queue is not None and self.worker is not None:
            try:
                await asyncio.wait_for(self.queue.join(), timeout=flush_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Analytics flush timed out, {self.queue.qsize()} records dropped")

        if self.worker is not None:
            self.worker.cancel()
            try:
                await self.worker
            except asyncio.CancelledError:
                pass
            self.worker = None
        logger.info(f"📊 Analytics worker stopped: {self.stats}")

    async def ingest(self, record: Union[Record, Dict[str, Any]]) -> IngestResult:
        """
        Validate and write one record now.

        Returns:
            IngestResult: success, or a failure that has already been logged
        """
        try:
            if isinstance(record, dict):
                record = validate_access_log(record)
            else:
                self._check(record)
        except ValidationError as e:
            self.stats['invalid'] += 1
            logger.warning(f"⚠️ Invalid analytics record dropped: {e}")
            return IngestResult(success=False, error=str(e))

        return await self._write([record])

    def submit(self, record: Record) -> bool:
        """
        Queue a record without waiting. Never raises.

        Returns:
            bool: False when analytics is disabled, not started or the record is invalid
        """
        if not self.enabled:
            return False

        try:
            self._check(record)
        except ValidationError as e:
            self.stats['invalid'] += 1
            logger.warning(f"⚠️ Invalid analytics record dropped: {e}")
            return False

        if self.queue is None:
            logger.warning("⚠️ Analytics pipeline not started, record dropped")
            self.stats['dropped'] += 1
            return False

        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.queue.task_done()
                self.stats['dropped'] += 1
                logger.warning("⚠️ Analytics queue is full, dropping oldest record")
            except asyncio.QueueEmpty:
                pass

        self.queue.put_nowait(record)
        self.stats['submitted'] += 1
        return True

    def _check(self, record: Record):
        if isinstance(record, AccessLogRecord):
            missing = _missing(record.__dict__, ACCESS_LOG_REQUIRED)
            if missing:
                raise ValidationError(f"missing required fields: {', '.join(missing)}", missing)
            if record.status_code < 0 or record.bytes_transferred < 0:
                raise ValidationError("status_code and bytes_transferred must be non-negative")
        elif isinstance(record, EpisodeEvent):
            missing = _missing(record.__dict__, EPISODE_REQUIRED)
            if missing:
                raise ValidationError(f"missing required fields: {', '.join(missing)}", missing)
        else:
            raise ValidationError(f"unsupported record type {type(record).__name__}")

    async def _write(self, batch: List[Record]) -> IngestResult:
        access_logs = [r for r in batch if isinstance(r, AccessLogRecord)]
        episode_events = [r for r in batch if isinstance(r, EpisodeEvent)]

        try:
            written = 0
            if access_logs:
                written += await self.store.insert_access_logs(access_logs)
            if episode_events:
                written += await self.store.insert_episode_events(episode_events)
        except Exception as e:
            self.stats['failed'] += len(batch)
            logger.error(f"❌ Analytics write failed, {len(batch)} records dropped: {e}")
            return IngestResult(success=False, error=str(e))

        self.stats['written'] += written
        logger.debug(f"Analytics batch written: {len(access_logs)} access logs, "
                     f"{len(episode_events)} episode events")
        return IngestResult(success=True, written=written)

    async def _run(self):
        while True:
            record = await self.queue.get()
            batch = [record]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self.queue.get_nowait())
                except asyncio.QueueEmpty:
                    break

            try:
                await self._write(batch)
            finally:
                for _ in batch:
                    self.queue.task_done()

    def get_status(self) -> dict:
        return {
            'enabled': self.enabled,
            'running': self.worker is not None and not self.worker.done(),
            'queue_size': self.queue.qsize() if self.queue is not None else 0,
            'max_queue_size': self.queue_size,
            **self.stats,
        }
