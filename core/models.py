# core/models.py
"""
Records produced by the proxy pipeline.

These are the contract between the gateway, the continuity tracker and the
analytics store. Field names match the persisted column names.
"""

import time
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Optional, Dict, Any


class ChangeType(str, Enum):
    NEW_EPISODE = 'new_episode'
    SESSION_CHANGE = 'session_change'
    CONTINUATION = 'continuation'


@dataclass
class GeoResult:
    ip: str
    country: str = 'Unknown'
    country_code: str = 'XX'
    region: str = 'Unknown'
    city: str = 'Unknown'
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    timezone: Optional[str] = None
    isp: Optional[str] = None
    continent: str = 'Unknown'
    provider: Optional[str] = None

    @classmethod
    def unknown(cls, ip: str) -> 'GeoResult':
        return cls(ip=ip)

    @classmethod
    def local(cls, ip: str) -> 'GeoResult':
        return cls(
            ip=ip,
            country='Local/Private',
            country_code='XX',
            region='Local/Private',
            city='Local/Private',
            latitude=0.0,
            longitude=0.0,
            timezone='UTC',
            isp='Local Network',
            continent='Local',
            provider='local',
        )

    @property
    def is_unknown(self) -> bool:
        return self.provider is None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'GeoResult':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GeoCacheEntry:
    result: GeoResult
    created_at: float = field(default_factory=time.time)

    @property
    def ip(self) -> str:
        return self.result.ip

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.created_at

    def is_fresh(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        return self.age(now) < ttl_seconds


@dataclass
class AccessLogRecord:
    domain: str
    path: str
    method: str
    status_code: int
    client_ip: str
    domain_id: Optional[str] = None
    user_agent: Optional[str] = None
    referer: Optional[str] = None
    device_type: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    bytes_transferred: int = 0
    response_time_ms: Optional[int] = None
    cache_status: Optional[str] = None
    endpoint_type: Optional[str] = None
    session_id: Optional[str] = None
    episode_id: Optional[str] = None
    content_id: Optional[str] = None
    previous_session_id: Optional[str] = None
    change_type: Optional[str] = None
    access_timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EpisodeEvent:
    """Explicit episode-change / playback metrics event"""
    domain: str
    episode_id: str
    session_id: str
    client_ip: str
    change_type: Optional[str] = None
    domain_id: Optional[str] = None
    content_id: Optional[str] = None
    device_type: Optional[str] = None
    country: Optional[str] = None
    user_agent: Optional[str] = None
    bytes_transferred: int = 0
    duration_seconds: float = 0
    quality: Optional[str] = None
    bitrate: Optional[int] = None
    resolution: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionState:
    """Latest known state of a session, derived from access log history"""
    session_id: str
    client_ip: Optional[str] = None
    episode_id: Optional[str] = None
    last_seen: Optional[float] = None
