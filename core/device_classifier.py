# core/device_classifier.py
"""
Device classification from User-Agent strings.

Pure functions only: no I/O, no hidden state, safe to call inline on every
proxied request. Unknown or empty input yields a desktop/Unknown default.
"""

import re
import logging
from dataclasses import dataclass, asdict

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"

BOT_PATTERNS = (
    'googlebot', 'bingbot', 'slurp', 'duckduckbot', 'baiduspider',
    'yandexbot', 'facebookexternalhit', 'twitterbot', 'linkedinbot',
    'whatsapp', 'telegrambot', 'applebot', 'gptbot', 'perplexitybot',
    'crawler', 'spider', 'bot/', 'headlesschrome',
)

SMART_TV_PATTERNS = (
    'smart-tv', 'smarttv', 'tizen', 'webos', 'web0s', 'netcast', 'bravia',
    'googletv', 'google tv', 'androidtv', 'android tv', 'hbbtv', 'opera tv',
    'maple', 'vidaa', 'appletv', 'apple tv', 'tvos', 'roku', 'firetv', 'fire tv',
    'aftb', 'aftt', 'chromecast', 'crkey', 'mibox', 'mi box', 'shield android tv',
    'nvidia shield', 'xbox', 'playstation', 'nintendo',
)

# IPTV players and set-top boxes are treated as streaming devices
IPTV_APP_PATTERNS = (
    'vlc', 'kodi', 'perfect player', 'tivimate', 'iptv smarters', 'gse smart iptv',
    'lazy iptv', 'ottplayer', 'smartiptv', 'ss iptv', 'duplex iptv', 'ibo player',
    'televizo', 'xciptv', 'implayer', 'stbemu', 'lavf', 'exoplayer', 'maxplayer',
)

STB_PATTERNS = (
    'mag250', 'mag254', 'mag256', 'mag322', 'mag324', 'mag349', 'mag351',
    'dreambox', 'enigma2', 'formuler', 'buzztv', 'infomir', 'amino', 'kaon',
)

_TABLET_RE = re.compile(r'tablet|ipad|playbook|silk', re.IGNORECASE)
_ANDROID_RE = re.compile(r'android', re.IGNORECASE)
_MOBILE_RE = re.compile(r'mobile|iphone|ipod|blackberry|iemobile|opera mini', re.IGNORECASE)

# Ordered: first match wins
_OS_PATTERNS = (
    ('tvOS', re.compile(r'apple ?tv|tvos', re.IGNORECASE)),
    ('Tizen', re.compile(r'tizen', re.IGNORECASE)),
    ('webOS', re.compile(r'web0s|webos', re.IGNORECASE)),
    ('Fire OS', re.compile(r'\baft[a-z]{1,4}\b|fire ?tv|silk', re.IGNORECASE)),
    ('Android', re.compile(r'android|okhttp', re.IGNORECASE)),
    ('iOS', re.compile(r'iphone|ipad|ipod', re.IGNORECASE)),
    ('Windows', re.compile(r'windows', re.IGNORECASE)),
    ('macOS', re.compile(r'macintosh|mac os x', re.IGNORECASE)),
    ('ChromeOS', re.compile(r'\bcros\b', re.IGNORECASE)),
    ('Linux', re.compile(r'linux', re.IGNORECASE)),
)

_BROWSER_PATTERNS = (
    ('Edge', re.compile(r'edg(e|a|ios)?/', re.IGNORECASE)),
    ('Opera', re.compile(r'opr/|opera', re.IGNORECASE)),
    ('Samsung Internet', re.compile(r'samsungbrowser/', re.IGNORECASE)),
    ('Firefox', re.compile(r'firefox/|fxios/', re.IGNORECASE)),
    ('Chrome', re.compile(r'chrome/|crios/', re.IGNORECASE)),
    ('Safari', re.compile(r'safari/', re.IGNORECASE)),
)

_APP_PATTERNS = (
    ('VLC', re.compile(r'vlc', re.IGNORECASE)),
    ('Kodi', re.compile(r'kodi', re.IGNORECASE)),
    ('ExoPlayer', re.compile(r'exoplayer', re.IGNORECASE)),
    ('TiviMate', re.compile(r'tivimate', re.IGNORECASE)),
    ('IPTV Smarters', re.compile(r'iptv smarters', re.IGNORECASE)),
    ('libavformat', re.compile(r'lavf', re.IGNORECASE)),
    ('okhttp', re.compile(r'okhttp', re.IGNORECASE)),
)


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = "desktop"
    os: str = UNKNOWN
    browser: str = UNKNOWN
    is_bot: bool = False
    is_streaming_device: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def _match_first(patterns, ua: str) -> str:
    for name, pattern in patterns:
        if pattern.search(ua):
            return name
    return UNKNOWN


def detect_os(user_agent: str) -> str:
    return _match_first(_OS_PATTERNS, user_agent or "")


def detect_browser(user_agent: str) -> str:
    """Browser family, falling back to a known player/app name."""
    ua = user_agent or ""
    browser = _match_first(_BROWSER_PATTERNS, ua)
    if browser == UNKNOWN:
        browser = _match_first(_APP_PATTERNS, ua)
    return browser


def _contains_any(ua: str, patterns) -> bool:
    return any(p in ua for p in patterns)


def classify(user_agent: str) -> DeviceInfo:
    """
    Classify a User-Agent string.

    Order of checks:
        1. bots (short-circuit, is_bot=True)
        2. smart TVs, IPTV apps and set-top boxes (is_streaming_device=True)
        3. mobile, then tablet, then desktop

    Args:
        user_agent: Raw User-Agent header value (may be empty or None)

    Returns:
        DeviceInfo: never raises
    """
    if not user_agent or not user_agent.strip():
        return DeviceInfo()

    ua = user_agent.lower()
    os_name = detect_os(user_agent)
    browser = detect_browser(user_agent)

    if _contains_any(ua, BOT_PATTERNS):
        return DeviceInfo(device_type="bot", os=os_name, browser=browser, is_bot=True)

    if _contains_any(ua, SMART_TV_PATTERNS) or _contains_any(ua, STB_PATTERNS):
        return DeviceInfo(device_type="smarttv", os=os_name, browser=browser,
                          is_streaming_device=True)

    # okhttp 4.x/5.x is what most Android TV IPTV apps ship with, 3.x is phones
    if 'okhttp/4.' in ua or 'okhttp/5.' in ua:
        return DeviceInfo(device_type="smarttv", os=os_name, browser=browser,
                          is_streaming_device=True)
    if 'okhttp/3.' in ua:
        return DeviceInfo(device_type="mobile", os=os_name, browser=browser,
                          is_streaming_device=True)

    is_app = _contains_any(ua, IPTV_APP_PATTERNS)

    is_tablet = bool(_TABLET_RE.search(ua)) or (
        bool(_ANDROID_RE.search(ua)) and 'mobile' not in ua
    )
    is_mobile = bool(_MOBILE_RE.search(ua)) and not is_tablet

    if is_mobile:
        return DeviceInfo(device_type="mobile", os=os_name, browser=browser,
                          is_streaming_device=is_app)
    if is_tablet:
        return DeviceInfo(device_type="tablet", os=os_name, browser=browser,
                          is_streaming_device=is_app)
    if is_app:
        # Standalone player on an unknown host: assume a TV-like box
        return DeviceInfo(device_type="smarttv", os=os_name, browser=browser,
                          is_streaming_device=True)

    return DeviceInfo(device_type="desktop", os=os_name, browser=browser)
