# core/proxy/gateway.py
"""
Reverse proxy gateway.

Request lifecycle:
    Received -> Validated -> Resolving (device + geo + continuity, concurrently)
    -> Forwarding -> Streaming | Buffered -> Completed | Failed

Lookups never abort a request; each one degrades to an unknown/default value.
Upstream failures become 502/504 proxy errors and are not retried. Analytics
records are queued without waiting, after the response outcome is known.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlsplit

from aiohttp import (
    web, ClientSession, TCPConnector, ClientTimeout, ClientError,
    ClientConnectorError, ServerTimeoutError,
)

from core.analytics import AnalyticsPipeline
from core.config_manager import DomainRegistry
from core.continuity import ContinuityTracker, TrackResult, detect_endpoint_type, synthesize_session_id
from core.device_classifier import DeviceInfo, classify
from core.errors import ValidationError
from core.geolocation import GeoResolver
from core.ip_detection import get_real_client_ip
from core.models import AccessLogRecord, ChangeType, EpisodeEvent, GeoResult
from core.proxy.headers import (
    build_response_headers, build_upstream_headers, json_error, preflight_response,
)

logger = logging.getLogger(__name__)

ALLOWED_METHODS = frozenset({'GET', 'HEAD', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'})
MAX_URL_LENGTH = 8192


def validate_target_url(url: Any) -> str:
    """
    Reject anything that is not an absolute http(s) URL with a host.

    Raises:
        ValidationError: malformed target
    """
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("url is required", ['url'])

    url = url.strip()
    if len(url) > MAX_URL_LENGTH:
        raise ValidationError("url is too long", ['url'])

    try:
        parts = urlsplit(url)
        # Accessing .port validates the port component
        parts.port
    except ValueError as e:
        raise ValidationError(f"url is malformed: {e}", ['url'])

    if parts.scheme not in ('http', 'https'):
        raise ValidationError("url must use http or https", ['url'])
    if not parts.hostname:
        raise ValidationError("url must be absolute", ['url'])
    return url


def _encode_body(body: Any) -> Optional[bytes]:
    if body is None:
        return None
    if isinstance(body, (dict, list)):
        return json.dumps(body).encode('utf-8')
    return str(body).encode('utf-8')


@dataclass
class RequestContext:
    """Everything known about a request before it is forwarded"""
    client_ip: str
    user_agent: str
    device: DeviceInfo
    geo: GeoResult
    track: Optional[TrackResult]
    domain: str
    path: str
    method: str
    referer: Optional[str] = None
    domain_id: Optional[str] = None
    analytics: bool = True
    started: float = 0.0

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class ProxyGateway:
    def __init__(self, geo: Optional[GeoResolver], tracker: Optional[ContinuityTracker],
                 pipeline: Optional[AnalyticsPipeline], domains: Optional[DomainRegistry] = None,
                 config: Optional[Dict[str, Any]] = None):
        """
        Args:
            geo: Geolocation resolver; None tags every request as unknown location
            tracker: Continuity tracker; None disables session tagging
            pipeline: Analytics pipeline receiving access logs and change events
            domains: Host -> origin mapping for transparent proxying
            config: `proxy` section of the configuration
        """
        config = config or {}
        self.geo = geo
        self.tracker = tracker
        self.pipeline = pipeline
        self.domains = domains or DomainRegistry()

        self.timeout = config.get('timeout', 30)
        self.connect_timeout = config.get('connect_timeout', 10)
        self.max_connections = config.get('max_connections', 100)
        self.max_per_host = config.get('max_per_host', 50)
        self.chunk_size = config.get('chunk_size', 64 * 1024)
        self.user_agent = config.get('user_agent', 'StreamProxy/1.0')
        self.default_cache_control = config.get('default_cache_control', 'public, max-age=86400')
        self.stream_cache_control = config.get('stream_cache_control', 'public, max-age=3600')

        # Connection pool shared by all requests
        self.connector = None
        self.session = None

        # Bounds concurrent upstream fetches
        self.connection_semaphore = asyncio.Semaphore(config.get('concurrency_limit', 200))

        self.stats = {
            'total_requests': 0,
            'total_responses': 0,
            'active_connections': 0,
            'errors': 0,
            'rejected': 0,
            'streamed': 0,
            'buffered': 0,
            'bytes_transferred': 0,
            'client_disconnects': 0,
        }

    async def initialize(self):
        """Open the upstream connection pool"""
        if self.connector is None:
            self.connector = TCPConnector(
                limit=self.max_connections,
                limit_per_host=self.max_per_host,
                ttl_dns_cache=300,
                keepalive_timeout=60,
                enable_cleanup_closed=True,
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                timeout=ClientTimeout(total=self.timeout, connect=self.connect_timeout),
            )

    async def cleanup(self):
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    # ------------------------------------------------------------------
    # Route handlers
    # ------------------------------------------------------------------

    async def handle_proxy(self, request: web.Request) -> web.StreamResponse:
        """POST /proxy: buffered relay"""
        return await self._handle_json_proxy(request, streamed=False)

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """POST /proxy/stream: streamed relay for large media"""
        return await self._handle_json_proxy(request, streamed=True)

    async def handle_options(self, request: web.Request) -> web.Response:
        return preflight_response()

    async def handle_domain(self, request: web.Request) -> web.StreamResponse:
        """Catch-all: transparent proxy for configured custom domains"""
        if request.method == 'OPTIONS':
            return preflight_response()

        domain = self.domains.lookup(request.host)
        if domain is None:
            self.stats['rejected'] += 1
            logger.warning(f"⚠️ Unknown domain: {request.host}")
            return json_error(404, 'domain_not_found', f"Domain {request.host} is not configured")

        if not domain.is_active():
            self.stats['rejected'] += 1
            reason = 'expired' if domain.is_expired() else domain.status
            logger.warning(f"⚠️ Domain {domain.host} rejected: {reason}")
            return json_error(403, 'domain_inactive', f"Domain {domain.host} is {reason}")

        try:
            target_url = validate_target_url(f"{(domain.target_url or '').rstrip('/')}{request.path_qs}")
        except ValidationError as e:
            self.stats['rejected'] += 1
            logger.error(f"❌ Domain {domain.host} has an invalid target_url: {e}")
            return json_error(502, 'bad_origin', str(e))

        body = await request.read() if request.body_exists else None
        ctx = await self._resolve(
            request,
            domain=domain.host,
            domain_id=domain.id,
            path=request.path_qs,
            method=request.method,
            url=target_url,
            analytics=domain.analytics_enabled,
        )

        headers = build_upstream_headers(request.headers, ctx.client_ip, self.user_agent,
                                         peer_ip=request.remote)
        return await self._forward(request, ctx, request.method, target_url, headers, body,
                                   streamed=True, allow_redirects=False)

    async def _handle_json_proxy(self, request: web.Request, streamed: bool) -> web.StreamResponse:
        try:
            payload = await request.json()
        except (ValueError, UnicodeDecodeError):
            self.stats['rejected'] += 1
            return json_error(400, 'invalid_json', "Request body must be JSON")

        if not isinstance(payload, dict):
            self.stats['rejected'] += 1
            return json_error(400, 'invalid_request', "Request body must be a JSON object")

        try:
            target_url = validate_target_url(payload.get('url'))
            method = str(payload.get('method') or 'GET').upper()
            if method not in ALLOWED_METHODS:
                raise ValidationError(f"method {method} is not supported", ['method'])
            headers = payload.get('headers') or {}
            if not isinstance(headers, dict):
                raise ValidationError("headers must be an object", ['headers'])
        except ValidationError as e:
            self.stats['rejected'] += 1
            logger.debug(f"Rejected proxy request: {e}")
            return json_error(400, 'invalid_request', str(e), target=payload.get('url'))

        parts = urlsplit(target_url)
        path = parts.path or '/'
        if parts.query:
            path = f"{path}?{parts.query}"

        ctx = await self._resolve(
            request,
            domain=payload.get('domain') or parts.hostname,
            domain_id=payload.get('domain_id'),
            path=path,
            method=method,
            url=target_url,
            session_id=payload.get('session_id'),
            episode_id=payload.get('episode_id'),
            previous_session_id=payload.get('previous_session_id'),
        )

        upstream_headers = build_upstream_headers(headers, ctx.client_ip, self.user_agent,
                                                  peer_ip=request.remote)
        return await self._forward(request, ctx, method, target_url, upstream_headers,
                                   _encode_body(payload.get('body')), streamed=streamed)

    # ------------------------------------------------------------------
    # Resolving
    # ------------------------------------------------------------------

    async def _resolve(self, request: web.Request, domain: str, path: str, method: str,
                       url: str, domain_id: Optional[str] = None, analytics: bool = True,
                       session_id: Optional[str] = None, episode_id: Optional[str] = None,
                       previous_session_id: Optional[str] = None) -> RequestContext:
        started = time.monotonic()
        client_ip = get_real_client_ip(request.headers, request.remote)
        user_agent = request.headers.get('User-Agent', '')
        device = classify(user_agent)

        session_id = session_id or request.headers.get('X-Session-ID')
        episode_id = episode_id or request.headers.get('X-Episode-ID')
        previous_session_id = previous_session_id or request.headers.get('X-Previous-Session-ID')

        # Bots are proxied but never recorded
        analytics = analytics and not device.is_bot

        geo, track = await asyncio.gather(
            self._geolocate(client_ip),
            self._track(client_ip, session_id, episode_id, previous_session_id, url)
            if analytics else self._no_track(),
        )

        return RequestContext(
            client_ip=client_ip,
            user_agent=user_agent,
            device=device,
            geo=geo,
            track=track,
            domain=str(domain or 'unknown'),
            domain_id=str(domain_id) if domain_id is not None else None,
            path=path,
            method=method,
            referer=request.headers.get('Referer'),
            analytics=analytics,
            started=started,
        )

    async def _geolocate(self, client_ip: str) -> GeoResult:
        if self.geo is None:
            return GeoResult.unknown(client_ip)
        return await self.geo.resolve_or_unknown(client_ip)

    async def _track(self, client_ip: str, session_id: Optional[str], episode_id: Optional[str],
                     previous_session_id: Optional[str], url: str) -> Optional[TrackResult]:
        if self.tracker is None:
            return None
        try:
            return await self.tracker.track(
                client_ip,
                session_id=session_id,
                episode_id=episode_id,
                previous_session_id=previous_session_id,
                url=url,
            )
        except Exception as e:
            logger.error(f"❌ Continuity tracking failed for {client_ip}: {e}", exc_info=True)
            return TrackResult(
                session_id=session_id or synthesize_session_id(client_ip, time.time()),
                change_type=ChangeType.NEW_EPISODE,
                episode_id=episode_id,
                synthesized=not session_id,
                degraded=True,
            )

    async def _no_track(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Forwarding
    # ------------------------------------------------------------------

    async def _forward(self, request: web.Request, ctx: RequestContext, method: str, url: str,
                       headers: Dict[str, str], body: Optional[bytes], streamed: bool,
                       allow_redirects: bool = True) -> web.StreamResponse:
        await self.initialize()
        self.stats['total_requests'] += 1
        self.stats['active_connections'] += 1

        if streamed:
            # Total time is unbounded for long media; each read is bounded instead
            timeout = ClientTimeout(total=None, connect=self.connect_timeout, sock_read=self.timeout)
        else:
            timeout = ClientTimeout(total=self.timeout, connect=self.connect_timeout)

        try:
            async with self.connection_semaphore:
                logger.debug(f"Forwarding {method} {url} ({'stream' if streamed else 'buffered'})")
                try:
                    async with self.session.request(
                        method=method,
                        url=url,
                        headers=headers,
                        data=body,
                        allow_redirects=allow_redirects,
                        timeout=timeout,
                    ) as upstream:
                        if streamed and 200 <= upstream.status < 300 and method != 'HEAD':
                            return await self._relay_streamed(request, ctx, upstream)
                        return await self._relay_buffered(ctx, upstream, url, streamed)

                except ClientConnectorError as e:
                    return self._upstream_error(ctx, 502, 'origin_unreachable',
                                                f"Could not connect to origin: {e}", url)

                except (ServerTimeoutError, asyncio.TimeoutError):
                    return self._upstream_error(ctx, 504, 'origin_timeout',
                                                f"Origin did not respond within {self.timeout}s", url)

                except ClientError as e:
                    return self._upstream_error(ctx, 502, 'origin_error',
                                                f"Origin request failed: {e}", url)
        finally:
            self.stats['active_connections'] -= 1

    async def _relay_buffered(self, ctx: RequestContext, upstream, url: str,
                              streamed: bool) -> web.Response:
        content = await upstream.read()

        if upstream.status >= 400 and not content:
            return self._upstream_error(ctx, 502, 'origin_error',
                                        f"Origin returned HTTP {upstream.status} with no body", url)

        cache_control = self.stream_cache_control if streamed else self.default_cache_control
        headers = build_response_headers(upstream.headers, cache_control)

        self.stats['buffered'] += 1
        self.stats['total_responses'] += 1
        self.stats['bytes_transferred'] += len(content)
        logger.debug(f"Origin response: {upstream.status}, {len(content)} bytes")

        self._record(ctx, upstream.status, len(content))
        return web.Response(body=content, status=upstream.status, headers=headers)

    async def _relay_streamed(self, request: web.Request, ctx: RequestContext,
                              upstream) -> web.StreamResponse:
        response = web.StreamResponse(
            status=upstream.status,
            headers=build_response_headers(upstream.headers, self.stream_cache_control),
        )
        bytes_sent = 0
        self.stats['streamed'] += 1

        try:
            await response.prepare(request)
            async for chunk in upstream.content.iter_chunked(self.chunk_size):
                await response.write(chunk)
                bytes_sent += len(chunk)
            await response.write_eof()

        except ConnectionResetError:
            self._client_gone(ctx, upstream, bytes_sent)
            return response

        except asyncio.CancelledError:
            self._client_gone(ctx, upstream, bytes_sent)
            raise

        except (ClientError, asyncio.TimeoutError) as e:
            # Headers are already sent: the body is truncated, no error page possible
            self.stats['errors'] += 1
            upstream.close()
            logger.error(f"❌ Origin stream broke after {bytes_sent} bytes: {e}")
            self._record(ctx, upstream.status, bytes_sent, cache_status='PARTIAL')
            return response

        finally:
            self.stats['bytes_transferred'] += bytes_sent

        self.stats['total_responses'] += 1
        self._record(ctx, upstream.status, bytes_sent)
        return response

    def _client_gone(self, ctx: RequestContext, upstream, bytes_sent: int):
        self.stats['client_disconnects'] += 1
        # Drop the origin connection; it cannot be reused mid-body
        upstream.close()
        logger.info(f"Client {ctx.client_ip} disconnected after {bytes_sent} bytes")
        self._record(ctx, upstream.status, bytes_sent, cache_status='PARTIAL')

    def _upstream_error(self, ctx: RequestContext, status: int, error: str,
                        message: str, url: str) -> web.Response:
        self.stats['errors'] += 1
        logger.error(f"❌ {message} [{ctx.method} {url}]")
        self._record(ctx, status, 0, cache_status='ERROR')
        return json_error(status, error, message, target=url)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def _record(self, ctx: RequestContext, status: int, bytes_sent: int,
                cache_status: str = 'MISS'):
        """Queue the access log (and change event, if any). Never blocks, never raises."""
        if self.pipeline is None or not ctx.analytics:
            return

        track = ctx.track
        try:
            self.pipeline.submit(AccessLogRecord(
                domain=ctx.domain,
                domain_id=ctx.domain_id,
                path=ctx.path[:1000],
                method=ctx.method,
                status_code=status,
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent[:500] or None,
                referer=ctx.referer,
                device_type=ctx.device.device_type,
                country=ctx.geo.country,
                city=ctx.geo.city,
                bytes_transferred=bytes_sent,
                response_time_ms=ctx.elapsed_ms(),
                cache_status=cache_status,
                endpoint_type=detect_endpoint_type(ctx.path),
                session_id=track.session_id if track else None,
                episode_id=track.episode_id if track else None,
                content_id=track.content_id if track else None,
                previous_session_id=track.previous_session_id if track else None,
                change_type=track.change_type.value if track else None,
            ))

            if track is not None and track.is_change_event and track.episode_id:
                self.pipeline.submit(EpisodeEvent(
                    domain=ctx.domain,
                    domain_id=ctx.domain_id,
                    episode_id=track.episode_id,
                    session_id=track.session_id,
                    client_ip=ctx.client_ip,
                    change_type=track.change_type.value,
                    content_id=track.content_id,
                    device_type=ctx.device.device_type,
                    country=ctx.geo.country,
                    user_agent=ctx.user_agent[:500] or None,
                    bytes_transferred=bytes_sent,
                ))
        except Exception as e:
            logger.error(f"❌ Failed to queue analytics for {ctx.client_ip}: {e}")

    def get_full_stats(self) -> dict:
        return {
            'requests': self.stats['total_requests'],
            'responses': self.stats['total_responses'],
            'active': self.stats['active_connections'],
            'errors': self.stats['errors'],
            'rejected': self.stats['rejected'],
            'streamed': self.stats['streamed'],
            'buffered': self.stats['buffered'],
            'bytes_transferred': self.stats['bytes_transferred'],
            'client_disconnects': self.stats['client_disconnects'],
            'domains': len(self.domains),
        }
