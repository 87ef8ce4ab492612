"""
Shared fixtures.

Origins are real in-process aiohttp servers; geolocation providers are
replaced with an httpx.MockTransport so no test touches the network.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from core.analytics import AnalyticsPipeline
from core.config_manager import DomainRegistry
from core.continuity import ContinuityTracker
from core.geo_cache import MemoryGeoCache
from core.geolocation import GeoResolver, IpApiProvider, IpapiCoProvider, IpInfoProvider
from core.proxy import ProxyGateway, create_app
from core.storage import MemoryAnalyticsStore

pytest_plugins = ('pytest_asyncio',)

PUBLIC_IP = '8.8.8.8'

IP_API_OK = {
    'status': 'success', 'country': 'United States', 'countryCode': 'US',
    'continentCode': 'NA', 'regionName': 'California', 'city': 'Mountain View',
    'lat': 37.386, 'lon': -122.0838, 'timezone': 'America/Los_Angeles', 'isp': 'Google LLC',
}

IPAPI_CO_OK = {
    'ip': PUBLIC_IP, 'country_name': 'United States', 'country_code': 'US',
    'continent_code': 'NA', 'region': 'California', 'city': 'Mountain View',
    'latitude': 37.42, 'longitude': -122.08, 'timezone': 'America/Los_Angeles', 'org': 'GOOGLE',
}

IPINFO_OK = {
    'ip': PUBLIC_IP, 'city': 'Mountain View', 'region': 'California', 'country': 'US',
    'loc': '37.4056,-122.0775', 'org': 'AS15169 Google LLC', 'timezone': 'America/Los_Angeles',
}


# =============================================================================
# Geolocation providers
# =============================================================================

class ProviderStub:
    """
    Programmable provider backend keyed by host.

    A value is either (status, json_body), a bytes body with status 200,
    or a callable taking the httpx.Request.
    """

    HOSTS = {'ip-api': 'ip-api.com', 'ipapi': 'ipapi.co', 'ipinfo': 'ipinfo.io'}

    def __init__(self, **responses):
        self.responses = {self.HOSTS[name.replace('_', '-')]: value
                          for name, value in responses.items()}
        self.calls = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        self.calls.append(host)
        reply = self.responses.get(host)
        if reply is None:
            return httpx.Response(503)
        if callable(reply):
            return reply(request)
        if isinstance(reply, bytes):
            return httpx.Response(200, content=reply)
        status, body = reply
        return httpx.Response(status, json=body)

    def calls_to(self, name: str) -> int:
        return self.calls.count(self.HOSTS[name])


def default_providers():
    return [IpApiProvider(), IpapiCoProvider(), IpInfoProvider()]


@pytest_asyncio.fixture
async def make_resolver():
    """Factory: make_resolver(stub, cache=...) -> GeoResolver, closed on teardown"""
    resolvers = []

    def factory(stub: ProviderStub, cache=None, provider_timeout: float = 1.0):
        resolver = GeoResolver(
            cache=cache if cache is not None else MemoryGeoCache(ttl_seconds=3600),
            providers=default_providers(),
            provider_timeout=provider_timeout,
            transport=stub.transport,
        )
        resolvers.append(resolver)
        return resolver

    yield factory

    for resolver in resolvers:
        await resolver.cleanup()


# =============================================================================
# Analytics
# =============================================================================

@pytest.fixture
def store():
    return MemoryAnalyticsStore()


@pytest_asyncio.fixture
async def pipeline(store):
    pipeline = AnalyticsPipeline(store, queue_size=100, batch_size=10)
    await pipeline.start()
    yield pipeline
    await pipeline.stop(flush_timeout=0.5)


async def drain(pipeline: AnalyticsPipeline, timeout: float = 2.0):
    await asyncio.wait_for(pipeline.queue.join(), timeout=timeout)


# =============================================================================
# Origin server
# =============================================================================

FIRST_CHUNK = b'#EXTM3U\n' + b'a' * 1024
LAST_CHUNK = b'b' * 4096


async def _playlist(request):
    return web.Response(
        text='#EXTM3U\n#EXTINF:10,\nseg1.ts\n',
        content_type='application/vnd.apple.mpegurl',
        headers={'ETag': '"v1"', 'Last-Modified': 'Mon, 01 Jan 2024 00:00:00 GMT'},
    )


async def _cached(request):
    return web.Response(text='cached', headers={'Cache-Control': 'no-store'})


async def _echo(request):
    return web.json_response({
        'method': request.method,
        'headers': dict(request.headers),
        'body': (await request.read()).decode('utf-8'),
        'path_qs': request.path_qs,
    })


async def _gated(request):
    """Sends one chunk, then waits until the test releases the rest"""
    response = web.StreamResponse(headers={'Content-Type': 'video/mp2t'})
    await response.prepare(request)
    await response.write(FIRST_CHUNK)
    await request.app['gate'].wait()
    await response.write(LAST_CHUNK)
    await response.write_eof()
    return response


async def _slow(request):
    # Outlives the gateway timeout; released on teardown
    await request.app['release'].wait()
    return web.Response(text='too late')


async def _encoded(request):
    """Answers in Brotli whenever the request allows it"""
    if 'br' in request.headers.get('Accept-Encoding', ''):
        return web.Response(body=b'\x1b\x03\x00\xf8\xff', headers={'Content-Encoding': 'br'})
    return web.Response(text='plain')


async def _empty_error(request):
    return web.Response(status=404)


async def _error_with_body(request):
    return web.json_response({'detail': 'missing'}, status=404)


def build_origin_app() -> web.Application:
    app = web.Application()
    app.router.add_get('/show/s01e02/index.m3u8', _playlist)
    app.router.add_get('/cached', _cached)
    app.router.add_route('*', '/echo', _echo)
    app.router.add_get('/gated.ts', _gated)
    app.router.add_get('/slow', _slow)
    app.router.add_get('/encoded', _encoded)
    app.router.add_get('/empty-404', _empty_error)
    app.router.add_get('/missing', _error_with_body)
    return app


@pytest_asyncio.fixture
async def origin():
    app = build_origin_app()
    app['gate'] = asyncio.Event()
    app['release'] = asyncio.Event()
    server = TestServer(app)
    await server.start_server()
    yield server
    app['gate'].set()
    app['release'].set()
    await server.close()


# =============================================================================
# Proxy under test
# =============================================================================

@pytest.fixture
def failing_providers():
    """Every provider returns 503"""
    return ProviderStub()


@pytest_asyncio.fixture
async def gateway(make_resolver, failing_providers, store, pipeline, origin):
    gateway = ProxyGateway(
        geo=make_resolver(failing_providers),
        tracker=ContinuityTracker(store),
        pipeline=pipeline,
        domains=DomainRegistry({
            'tv.example.com': {'id': 'd1', 'target_url': str(origin.make_url('/'))},
            'quiet.example.com': {'id': 'd2', 'target_url': str(origin.make_url('/')),
                                  'analytics_enabled': False},
            'paused.example.com': {'id': 'd3', 'target_url': str(origin.make_url('/')),
                                   'status': 'suspended'},
            'old.example.com': {'id': 'd4', 'target_url': str(origin.make_url('/')),
                                'expires_at': '2020-01-01T00:00:00Z'},
        }),
        config={'timeout': 1, 'connect_timeout': 1, 'chunk_size': 1024},
    )
    yield gateway
    await gateway.cleanup()


@pytest_asyncio.fixture
async def proxy_client(gateway, pipeline):
    client = TestClient(TestServer(create_app(gateway, pipeline, gateway.geo)))
    await client.start_server()
    yield client
    await client.close()
