# core/proxy/api.py
"""aiohttp application: proxy routes, analytics ingestion and operational endpoints"""

import logging
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web

from core.analytics import (
    AnalyticsPipeline, validate_access_log, validate_episode_event, session_change_to_access_log,
)
from core.errors import ValidationError
from core.geolocation import GeoResolver
from core.proxy.gateway import ProxyGateway
from core.proxy.headers import CORS_HEADERS, json_error

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler):
    """Unexpected exceptions become a 500 JSON response; the server keeps running"""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"❌ Unhandled error on {request.method} {request.path}: {e}", exc_info=True)
        return json_error(500, 'internal_error', 'Internal proxy error')


class AnalyticsAPI:
    """Explicit analytics ingestion: written immediately, acknowledged to the caller"""

    def __init__(self, pipeline: AnalyticsPipeline):
        self.pipeline = pipeline

    async def _read_json(self, request: web.Request) -> dict:
        try:
            data = await request.json()
        except (ValueError, UnicodeDecodeError):
            raise ValidationError("Request body must be JSON")
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    async def _ingest(self, request: web.Request, validator, kind: str) -> web.Response:
        try:
            record = validator(await self._read_json(request))
        except ValidationError as e:
            logger.warning(f"⚠️ Rejected {kind}: {e}")
            body = {'success': False, 'error': str(e)}
            if e.fields:
                body['fields'] = e.fields
            return web.json_response(body, status=400, headers=CORS_HEADERS)

        result = await self.pipeline.ingest(record)
        if not result.success:
            return web.json_response(
                {'success': False, 'error': 'analytics store unavailable'},
                status=503,
                headers=CORS_HEADERS,
            )

        logger.debug(f"{kind} stored for session {getattr(record, 'session_id', None)}")
        return web.json_response({'success': True, 'message': f"{kind} recorded"}, headers=CORS_HEADERS)

    async def collect_access_log(self, request: web.Request) -> web.Response:
        return await self._ingest(request, validate_access_log, 'access log')

    async def collect_episode_metrics(self, request: web.Request) -> web.Response:
        return await self._ingest(request, validate_episode_event, 'episode metrics')

    async def collect_session_change(self, request: web.Request) -> web.Response:
        return await self._ingest(request, session_change_to_access_log, 'session change')


class StatusAPI:
    def __init__(self, gateway: ProxyGateway, pipeline: Optional[AnalyticsPipeline] = None,
                 geo: Optional[GeoResolver] = None):
        self.gateway = gateway
        self.pipeline = pipeline
        self.geo = geo

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({
            'status': 'healthy',
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'proxy': self.gateway.get_full_stats(),
            'analytics': self.pipeline.get_status() if self.pipeline else None,
        })

    async def geo_stats(self, request: web.Request) -> web.Response:
        if self.geo is None:
            return web.json_response({'enabled': False})
        return web.json_response({'enabled': True, **await self.geo.get_stats()})


def create_app(gateway: ProxyGateway, pipeline: Optional[AnalyticsPipeline] = None,
               geo: Optional[GeoResolver] = None) -> web.Application:
    """
    Build the web application.

    The host-mapped catch-all is registered last so explicit routes win.
    """
    app = web.Application(middlewares=[error_middleware])
    status = StatusAPI(gateway, pipeline, geo)

    app.router.add_get('/health', status.health)
    app.router.add_get('/geo-stats', status.geo_stats)

    app.router.add_post('/proxy', gateway.handle_proxy)
    app.router.add_route('OPTIONS', '/proxy', gateway.handle_options)
    app.router.add_post('/proxy/stream', gateway.handle_stream)
    app.router.add_route('OPTIONS', '/proxy/stream', gateway.handle_options)

    if pipeline is not None:
        analytics = AnalyticsAPI(pipeline)
        app.router.add_post('/api/analytics/collect-access-log', analytics.collect_access_log)
        app.router.add_post('/api/analytics/collect-episode-metrics', analytics.collect_episode_metrics)
        app.router.add_post('/api/analytics/collect-session-change', analytics.collect_session_change)

    app.router.add_route('*', '/{path:.*}', gateway.handle_domain)
    return app
