# core/continuity.py
"""
Session and episode continuity across stateless HTTP requests.

The tracker holds no state of its own: the previous episode of a session is
read back from the analytics store (most recent access log for the session
key), so lifetime and isolation follow the injected store.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from core.errors import HistoryLookupError
from core.models import ChangeType, SessionState

logger = logging.getLogger(__name__)

DEFAULT_INACTIVITY_SECONDS = 2 * 60 * 60

# Season + episode, or episode only (season defaults to 1)
EPISODE_PATTERNS = (
    re.compile(r'/s(\d+)e(\d+)', re.IGNORECASE),
    re.compile(r'/season[-_]?(\d+)[-_]?episode[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/temporada[-_]?(\d+)[-_]?episodio[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/(\d+)x(\d+)', re.IGNORECASE),
    re.compile(r'[?&]s=(\d+)&e=(\d+)', re.IGNORECASE),
    re.compile(r'/episodio[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/episode[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/ep[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/capitulo[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'/cap[-_]?(\d+)', re.IGNORECASE),
    re.compile(r'[?&]ep=(\d+)', re.IGNORECASE),
    re.compile(r'[?&]episode=(\d+)', re.IGNORECASE),
)

# IPTV panel APIs identify content by query parameter
IPTV_PATTERNS = (
    ('series', re.compile(r'[?&]series_id=(\d+)', re.IGNORECASE)),
    ('movie', re.compile(r'[?&]movie_id=(\d+)', re.IGNORECASE)),
    ('vod', re.compile(r'[?&]vod_id=(\d+)', re.IGNORECASE)),
    ('stream', re.compile(r'[?&]stream_id=(\d+)', re.IGNORECASE)),
    ('channel', re.compile(r'[?&]channel_id=(\d+)', re.IGNORECASE)),
    ('content', re.compile(r'[?&]id=(\d+)', re.IGNORECASE)),
)


def extract_episode_id(url: Optional[str]) -> Optional[str]:
    """
    Derive an episode identifier from a request URL.

    `/show/s01e02.m3u8` -> `S01E02`, `/ep-7` -> `S01E07`,
    `player_api.php?series_id=1502` -> `series_1502`. None when nothing matches.
    """
    if not url:
        return None

    for pattern in EPISODE_PATTERNS:
        match = pattern.search(url)
        if not match:
            continue
        groups = match.groups()
        if len(groups) >= 2:
            season, episode = int(groups[0]), int(groups[1])
        else:
            season, episode = 1, int(groups[0])
        return f"S{season:02d}E{episode:02d}"

    for content_type, pattern in IPTV_PATTERNS:
        match = pattern.search(url)
        if match:
            return f"{content_type}_{match.group(1)}"

    return None


def generate_content_id(url: str, episode_id: Optional[str] = None) -> str:
    """Stable content identifier: episode id plus the last path segment"""
    path = urlsplit(url or '').path
    segments = [s for s in path.split('/') if s]
    last = segments[-1] if segments else 'unknown'
    if episode_id:
        return f"{episode_id}_{last}"
    return f"content_{last}"


def detect_endpoint_type(path: str) -> str:
    path = urlsplit(path or '').path.lower()
    if 'player_api.php' in path:
        return 'player_api'
    if path.endswith('.m3u8'):
        return 'hls_playlist'
    if path.endswith('.ts') or path.endswith('.m4s'):
        return 'hls_segment'
    return 'other'


@dataclass
class TrackResult:
    session_id: str
    change_type: ChangeType
    previous_session_id: Optional[str] = None
    episode_id: Optional[str] = None
    previous_episode_id: Optional[str] = None
    content_id: Optional[str] = None
    synthesized: bool = False
    degraded: bool = False

    @property
    def is_change_event(self) -> bool:
        return self.change_type != ChangeType.CONTINUATION

    def to_dict(self) -> dict:
        return {
            'session_id': self.session_id,
            'previous_session_id': self.previous_session_id,
            'change_type': self.change_type.value,
            'episode_id': self.episode_id,
            'previous_episode_id': self.previous_episode_id,
            'content_id': self.content_id,
            'synthesized': self.synthesized,
        }


def synthesize_session_id(client_ip: str, now: float) -> str:
    return f"{client_ip}_{int(now * 1000)}"


def classify_change(prior_episode: Optional[str], current_episode: Optional[str],
                    previous_session_id: Optional[str], session_id: str) -> ChangeType:
    """
    Change type for one request.

    A session boundary outranks an episode change; a request that carries no
    episode signal continues whatever the session was watching.
    """
    if previous_session_id and previous_session_id != session_id:
        return ChangeType.SESSION_CHANGE
    if prior_episode is None:
        return ChangeType.NEW_EPISODE
    if current_episode is None or current_episode == prior_episode:
        return ChangeType.CONTINUATION
    return ChangeType.NEW_EPISODE


class ContinuityTracker:
    def __init__(self, history, inactivity_seconds: float = DEFAULT_INACTIVITY_SECONDS):
        """
        Args:
            history: Store exposing latest_for_session / latest_for_client (core.storage)
            inactivity_seconds: Gap after which a synthesized session is not reused
        """
        self.history = history
        self.inactivity_seconds = inactivity_seconds

    async def _resolve_session(self, client_ip: str, session_id: Optional[str],
                               now: float):
        """Return (session_key, prior_state, synthesized)"""
        if session_id:
            prior = await self.history.latest_for_session(session_id)
            return session_id, prior, False

        recent: Optional[SessionState] = await self.history.latest_for_client(client_ip)
        if (recent is not None and recent.last_seen is not None and
                now - recent.last_seen <= self.inactivity_seconds):
            return recent.session_id, recent, True

        return synthesize_session_id(client_ip, now), None, True

    async def track(self, client_ip: str, session_id: Optional[str] = None,
                    episode_id: Optional[str] = None, content_id: Optional[str] = None,
                    now: Optional[float] = None, previous_session_id: Optional[str] = None,
                    url: Optional[str] = None) -> TrackResult:
        """
        Classify a request as new episode, continuation or session change.

        Args:
            client_ip: Resolved client IP
            session_id: Caller-supplied session key (trusted when present)
            episode_id: Caller-supplied episode id; derived from `url` when absent
            content_id: Caller-supplied content id; derived from `url` when absent
            now: Clock override (epoch seconds)
            previous_session_id: Explicit session boundary signal from the caller
            url: Request URL used for episode/content extraction

        Returns:
            TrackResult. History failures degrade to new_episode with a
            synthesized session instead of raising.
        """
        now = time.time() if now is None else now
        episode_id = episode_id or extract_episode_id(url)
        if content_id is None and url:
            content_id = generate_content_id(url, episode_id)

        try:
            session_key, prior, synthesized = await self._resolve_session(client_ip, session_id, now)
        except (HistoryLookupError, OSError) as e:
            logger.warning(f"⚠️ Session history unavailable for {client_ip}, degrading: {e}")
            return TrackResult(
                session_id=session_id or synthesize_session_id(client_ip, now),
                change_type=ChangeType.NEW_EPISODE,
                previous_session_id=previous_session_id,
                episode_id=episode_id,
                content_id=content_id,
                synthesized=not session_id,
                degraded=True,
            )

        prior_episode = prior.episode_id if prior else None
        change_type = classify_change(prior_episode, episode_id, previous_session_id, session_key)

        # A request without its own episode signal inherits the session's episode
        if episode_id is None and change_type == ChangeType.CONTINUATION:
            episode_id = prior_episode

        result = TrackResult(
            session_id=session_key,
            change_type=change_type,
            previous_session_id=previous_session_id if change_type == ChangeType.SESSION_CHANGE else None,
            episode_id=episode_id,
            previous_episode_id=prior_episode,
            content_id=content_id,
            synthesized=synthesized,
        )

        if result.is_change_event:
            logger.info(
                f"📺 {change_type.value}: session={session_key} "
                f"episode={prior_episode} -> {episode_id}"
            )
        return result
