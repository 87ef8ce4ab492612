# core/geolocation.py
"""
Client IP geolocation with cache and ordered provider fallback.

resolve(ip):
    1. private/loopback IP -> fixed "Local/Private" result, no I/O
    2. fresh cache entry -> returned as is
    3. providers tried in order, first well-formed success wins,
       normalized into GeoResult and upserted into the cache
    4. all providers failed -> ResolutionFailure (callers use .as_unknown())
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Union

import httpx

from core.geo_cache import GeoCache
from core.ip_detection import is_private_ip
from core.models import GeoCacheEntry, GeoResult

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_TIMEOUT = 5.0
PROVIDER_USER_AGENT = 'StreamProxy-Analytics/1.0'

CONTINENTS = {
    'AF': 'Africa', 'AN': 'Antarctica', 'AS': 'Asia', 'EU': 'Europe',
    'NA': 'North America', 'OC': 'Oceania', 'SA': 'South America',
}

# Used only when a provider reports a country but no continent
COUNTRY_CONTINENTS = {
    'BR': 'SA', 'AR': 'SA', 'CL': 'SA', 'CO': 'SA', 'PE': 'SA', 'VE': 'SA', 'UY': 'SA',
    'PY': 'SA', 'BO': 'SA', 'EC': 'SA',
    'US': 'NA', 'CA': 'NA', 'MX': 'NA', 'CR': 'NA', 'PA': 'NA', 'CU': 'NA', 'DO': 'NA',
    'GB': 'EU', 'DE': 'EU', 'FR': 'EU', 'IT': 'EU', 'ES': 'EU', 'PT': 'EU', 'NL': 'EU',
    'BE': 'EU', 'CH': 'EU', 'AT': 'EU', 'SE': 'EU', 'NO': 'EU', 'DK': 'EU', 'FI': 'EU',
    'PL': 'EU', 'CZ': 'EU', 'IE': 'EU', 'RO': 'EU', 'GR': 'EU', 'UA': 'EU',
    'RU': 'EU', 'TR': 'AS', 'CN': 'AS', 'JP': 'AS', 'KR': 'AS', 'IN': 'AS', 'ID': 'AS',
    'TH': 'AS', 'VN': 'AS', 'PH': 'AS', 'SG': 'AS', 'MY': 'AS', 'IL': 'AS', 'AE': 'AS',
    'SA': 'AS', 'PK': 'AS',
    'AU': 'OC', 'NZ': 'OC',
    'ZA': 'AF', 'EG': 'AF', 'NG': 'AF', 'KE': 'AF', 'MA': 'AF', 'AO': 'AF', 'MZ': 'AF',
}


def continent_name(continent_code: Optional[str] = None, country_code: Optional[str] = None) -> str:
    code = (continent_code or '').upper()
    if code not in CONTINENTS and country_code:
        code = COUNTRY_CONTINENTS.get(country_code.upper(), '')
    return CONTINENTS.get(code, 'Unknown')


def _float_or_none(value) -> Optional[float]:
    try:
        return float(value) if value is not None and value != '' else None
    except (TypeError, ValueError):
        return None


class ProviderError(Exception):
    """Provider call failed: timeout, bad status, malformed or negative body"""


class GeoProvider:
    """One external geolocation API. Subclasses define the URL and the parser."""

    name = 'base'

    def build_url(self, ip: str) -> str:
        raise NotImplementedError

    def parse(self, ip: str, data: dict) -> Optional[GeoResult]:
        """Normalize a JSON body; None when the body signals failure"""
        raise NotImplementedError

    async def lookup(self, client: httpx.AsyncClient, ip: str) -> GeoResult:
        try:
            response = await client.get(self.build_url(ip))
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name}: request failed: {e!r}") from e

        if response.status_code != 200:
            raise ProviderError(f"{self.name}: HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.name}: malformed JSON body") from e

        if not isinstance(data, dict):
            raise ProviderError(f"{self.name}: unexpected body type {type(data).__name__}")

        try:
            result = self.parse(ip, data)
        except (TypeError, ValueError, AttributeError, KeyError) as e:
            raise ProviderError(f"{self.name}: malformed fields in body: {e!r}") from e
        if result is None:
            raise ProviderError(f"{self.name}: provider reported failure")
        return result


class IpApiProvider(GeoProvider):
    """ip-api.com: success discriminator is status == "success" """

    name = 'ip-api'
    fields = ('status,message,continentCode,country,countryCode,region,regionName,'
              'city,lat,lon,timezone,isp,org,as,query')

    def __init__(self, base_url: str = 'http://ip-api.com/json'):
        self.base_url = base_url.rstrip('/')

    def build_url(self, ip: str) -> str:
        return f"{self.base_url}/{ip}?fields={self.fields}"

    def parse(self, ip: str, data: dict) -> Optional[GeoResult]:
        if data.get('status') != 'success':
            return None
        country_code = data.get('countryCode') or 'XX'
        return GeoResult(
            ip=ip,
            country=data.get('country') or 'Unknown',
            country_code=country_code,
            region=data.get('regionName') or data.get('region') or 'Unknown',
            city=data.get('city') or 'Unknown',
            latitude=_float_or_none(data.get('lat')),
            longitude=_float_or_none(data.get('lon')),
            timezone=data.get('timezone'),
            isp=data.get('isp') or data.get('org'),
            continent=continent_name(data.get('continentCode'), country_code),
            provider=self.name,
        )


class IpapiCoProvider(GeoProvider):
    """ipapi.co: failure is signalled by an `error` key"""

    name = 'ipapi'

    def __init__(self, base_url: str = 'https://ipapi.co'):
        self.base_url = base_url.rstrip('/')

    def build_url(self, ip: str) -> str:
        return f"{self.base_url}/{ip}/json/"

    def parse(self, ip: str, data: dict) -> Optional[GeoResult]:
        if data.get('error') or not data.get('country_name'):
            return None
        country_code = data.get('country_code') or 'XX'
        return GeoResult(
            ip=ip,
            country=data.get('country_name'),
            country_code=country_code,
            region=data.get('region') or 'Unknown',
            city=data.get('city') or 'Unknown',
            latitude=_float_or_none(data.get('latitude')),
            longitude=_float_or_none(data.get('longitude')),
            timezone=data.get('timezone'),
            isp=data.get('org'),
            continent=continent_name(data.get('continent_code'), country_code),
            provider=self.name,
        )


class IpInfoProvider(GeoProvider):
    """ipinfo.io: failure is an `error` key or a bogon address; coordinates come as "lat,lon" """

    name = 'ipinfo'

    def __init__(self, base_url: str = 'https://ipinfo.io', token: Optional[str] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token

    def build_url(self, ip: str) -> str:
        url = f"{self.base_url}/{ip}/json"
        return f"{url}?token={self.token}" if self.token else url

    def parse(self, ip: str, data: dict) -> Optional[GeoResult]:
        if data.get('error') or data.get('bogon') or not data.get('country'):
            return None
        lat, lon = None, None
        loc = data.get('loc') or ''
        if ',' in loc:
            lat, lon = (_float_or_none(part) for part in loc.split(',', 1))
        country_code = data.get('country')
        return GeoResult(
            ip=ip,
            # ipinfo only returns the ISO code for the country
            country=country_code,
            country_code=country_code,
            region=data.get('region') or 'Unknown',
            city=data.get('city') or 'Unknown',
            latitude=lat,
            longitude=lon,
            timezone=data.get('timezone'),
            isp=data.get('org'),
            continent=continent_name(None, country_code),
            provider=self.name,
        )


PROVIDERS = {
    IpApiProvider.name: IpApiProvider,
    IpapiCoProvider.name: IpapiCoProvider,
    IpInfoProvider.name: IpInfoProvider,
}


def build_providers(names: Iterable[str]) -> List[GeoProvider]:
    """Instantiate providers by configured name, keeping order, skipping unknown names"""
    providers = []
    for name in names:
        provider_cls = PROVIDERS.get(name)
        if provider_cls is None:
            logger.warning(f"⚠️ Unknown geolocation provider in config: {name}")
            continue
        providers.append(provider_cls())
    return providers


@dataclass
class ResolutionFailure:
    """Every provider failed; callers treat the location as unknown"""
    ip: str
    reason: str = 'all providers failed'
    errors: List[str] = field(default_factory=list)

    def as_unknown(self) -> GeoResult:
        return GeoResult.unknown(self.ip)


GeoOutcome = Union[GeoResult, ResolutionFailure]


class GeoResolver:
    def __init__(self, cache: Optional[GeoCache], providers: List[GeoProvider],
                 provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            cache: TTL cache; None disables caching entirely
            providers: Providers in priority order
            provider_timeout: Upper bound for a single provider call, seconds
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.cache = cache
        self.providers = providers
        self.provider_timeout = provider_timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

        self.stats = {
            'resolutions': 0,
            'provider_calls': 0,
            'provider_failures': 0,
            'total_failures': 0,
        }

    async def initialize(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.provider_timeout,
                headers={'User-Agent': PROVIDER_USER_AGENT},
                transport=self.transport,
            )

    async def cleanup(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _cached(self, ip: str, now: float) -> Optional[GeoResult]:
        if self.cache is None:
            return None
        try:
            entry = await self.cache.get(ip)
        except Exception as e:
            # Cache is an optimization: fall through to providers
            logger.warning(f"⚠️ Geo cache unavailable for {ip}, querying providers: {e}")
            return None

        if entry is not None and self.cache.is_fresh(entry, now):
            self.cache.record_lookup(hit=True)
            logger.debug(f"Geo cache HIT: {ip}")
            return entry.result

        self.cache.record_lookup(hit=False, stale=entry is not None)
        logger.debug(f"Geo cache {'STALE' if entry else 'MISS'}: {ip}")
        return None

    async def _store(self, result: GeoResult, now: float):
        if self.cache is None:
            return
        try:
            await self.cache.upsert(GeoCacheEntry(result=result, created_at=now))
        except Exception as e:
            logger.warning(f"⚠️ Failed to cache geo data for {result.ip}: {e}")

    async def _query_providers(self, ip: str) -> GeoOutcome:
        await self.initialize()
        errors = []

        for provider in self.providers:
            self.stats['provider_calls'] += 1
            try:
                result = await asyncio.wait_for(
                    provider.lookup(self.client, ip),
                    timeout=self.provider_timeout,
                )
                logger.info(f"🌍 {provider.name} resolved {ip} -> {result.city}, {result.country}")
                return result
            except asyncio.TimeoutError:
                message = f"{provider.name}: timed out after {self.provider_timeout}s"
            except ProviderError as e:
                message = str(e)

            self.stats['provider_failures'] += 1
            errors.append(message)
            logger.warning(f"⚠️ Geo provider failed for {ip}: {message}")

        self.stats['total_failures'] += 1
        logger.error(f"❌ All geolocation providers failed for {ip}")
        return ResolutionFailure(ip=ip, errors=errors)

    async def resolve(self, ip: str, now: Optional[float] = None) -> GeoOutcome:
        """
        Resolve an IP to a location.

        Args:
            ip: Client IP address
            now: Clock override (epoch seconds) for TTL checks

        Returns:
            GeoResult on success, ResolutionFailure when every provider failed
        """
        now = time.time() if now is None else now
        self.stats['resolutions'] += 1

        if not ip:
            return ResolutionFailure(ip=ip or '', reason='empty ip')

        if is_private_ip(ip):
            return GeoResult.local(ip)

        cached = await self._cached(ip, now)
        if cached is not None:
            return cached

        outcome = await self._query_providers(ip)
        if isinstance(outcome, GeoResult):
            await self._store(outcome, now)
        return outcome

    async def resolve_or_unknown(self, ip: str) -> GeoResult:
        """Best-effort variant for the request path: never raises, never fails"""
        try:
            outcome = await self.resolve(ip)
        except Exception as e:
            logger.error(f"❌ Unexpected geolocation error for {ip}: {e}", exc_info=True)
            return GeoResult.unknown(ip)

        if isinstance(outcome, ResolutionFailure):
            return outcome.as_unknown()
        return outcome

    async def get_stats(self) -> dict:
        stats = dict(self.stats)
        if self.cache is not None:
            stats['cache'] = await self.cache.get_stats()
        return stats
