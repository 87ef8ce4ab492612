# proxy_manager.py
import asyncio
import logging
from typing import Optional

from aiohttp import web

from core.analytics import AnalyticsPipeline
from core.config_manager import ConfigManager, DomainRegistry, get_config
from core.continuity import ContinuityTracker
from core.geo_cache import MemoryGeoCache, SqliteGeoCache
from core.geolocation import GeoResolver, build_providers
from core.proxy import ProxyGateway, create_app
from core.storage import MemoryAnalyticsStore, SqliteAnalyticsStore, init_database
from utils.port_utils import check_port_availability, get_process_using_port

logger = logging.getLogger(__name__)


class ProxyManager:
    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()
        self.is_running = False
        self.host = self.config.get('server.host', '0.0.0.0')
        self.port = self.config.get('server.port', 8080)

        self.store = None
        self.geo = None
        self.tracker = None
        self.pipeline = None
        self.proxy = None
        self.app = None
        self.runner = None
        self.site = None

        # 'port' | 'startup' | None
        self.last_error_type = None
        self.last_error_details = None

    async def _build_components(self):
        """Stores, resolver, tracker, pipeline and gateway, wired from config"""
        db_path = self.config.get_database_path()
        storage_backend = self.config.get('storage.backend', 'sqlite')
        cache_backend = self.config.get('geolocation.cache_backend', 'sqlite')

        if storage_backend == 'memory':
            self.store = MemoryAnalyticsStore(self.config.get('storage.memory_max_records', 100000))
            if cache_backend == 'sqlite':
                # Geo cache table lives in the same schema
                await init_database(db_path)
        else:
            self.store = SqliteAnalyticsStore(db_path)
        await self.store.initialize()

        ttl_seconds = self.config.get('geolocation.cache_ttl_hours', 24) * 3600
        if cache_backend == 'memory':
            cache = MemoryGeoCache(ttl_seconds, self.config.get('geolocation.memory_cache_size', 1000))
        else:
            cache = SqliteGeoCache(db_path, ttl_seconds)

        self.geo = GeoResolver(
            cache=cache,
            providers=build_providers(self.config.get('geolocation.providers', [])),
            provider_timeout=self.config.get('geolocation.provider_timeout', 5),
        )
        await self.geo.initialize()

        self.tracker = ContinuityTracker(
            self.store,
            inactivity_seconds=self.config.get('continuity.inactivity_minutes', 120) * 60,
        )

        self.pipeline = AnalyticsPipeline(
            self.store,
            queue_size=self.config.get('analytics.queue_size', 1000),
            batch_size=self.config.get('analytics.batch_size', 50),
            enabled=self.config.get('analytics.enabled', True),
        )
        await self.pipeline.start()

        self.proxy = ProxyGateway(
            geo=self.geo,
            tracker=self.tracker,
            pipeline=self.pipeline,
            domains=DomainRegistry(self.config.get('domains', {})),
            config=self.config.get_proxy_config(),
        )
        await self.proxy.initialize()

        self.app = create_app(self.proxy, self.pipeline, self.geo)

    async def start(self) -> bool:
        """
        Start the proxy server

        Returns:
            bool: True if the server is listening
        """
        if self.is_running:
            logger.warning("⚠️ Proxy is already running")
            return False

        port_available, port_message = check_port_availability(self.port, self.host)
        if not port_available:
            logger.error(f"❌ {port_message}")
            process_info = get_process_using_port(self.port)
            if process_info:
                logger.info(
                    f"📌 Process on port {self.port}:\n"
                    f"   PID: {process_info.get('pid')}\n"
                    f"   Name: {process_info.get('name')}\n"
                    f"   User: {process_info.get('username', 'N/A')}"
                )
            self.last_error_type = 'port'
            self.last_error_details = port_message
            return False

        try:
            await self._build_components()

            self.runner = web.AppRunner(self.app, access_log=None)
            await self.runner.setup()

            self.site = web.TCPSite(self.runner, host=self.host, port=self.port)
            await self.site.start()

            self.is_running = True
            logger.info(f"✅ Proxy server started on http://{self.host}:{self.port}")
            logger.info(
                f"📊 Connection pool: limit={self.proxy.connector.limit}, "
                f"per_host={self.proxy.connector.limit_per_host}, "
                f"domains={len(self.proxy.domains)}"
            )
            return True

        except Exception as e:
            logger.error(f"❌ Failed to start proxy: {e}", exc_info=True)
            self.last_error_type = 'startup'
            self.last_error_details = str(e)
            await self._stop_server()
            return False

    async def stop(self):
        """Stop the server and release every resource"""
        if not self.is_running:
            logger.warning("⚠️ Proxy is not running")
            return

        logger.info("🛑 Stopping proxy...")
        self.is_running = False
        await self._stop_server()

        if self.proxy:
            stats = self.proxy.get_full_stats()
            logger.info(
                f"📊 Session statistics:\n"
                f"   Total requests: {stats.get('requests', 0)}\n"
                f"   Total responses: {stats.get('responses', 0)}\n"
                f"   Streamed: {stats.get('streamed', 0)}, buffered: {stats.get('buffered', 0)}\n"
                f"   Bytes transferred: {stats.get('bytes_transferred', 0)}\n"
                f"   Errors: {stats.get('errors', 0)}"
            )

        logger.info("✅ Proxy stopped and cleaned up successfully")

    async def _stop_server(self):
        """Tear down in reverse start order; one failing step does not skip the rest"""
        steps = (
            ('site', lambda: self.site.stop() if self.site else None),
            ('runner', lambda: self.runner.cleanup() if self.runner else None),
            ('gateway', lambda: self.proxy.cleanup() if self.proxy else None),
            ('analytics', lambda: self.pipeline.stop() if self.pipeline else None),
            ('geolocation', lambda: self.geo.cleanup() if self.geo else None),
        )
        for name, step in steps:
            try:
                awaitable = step()
                if awaitable is not None:
                    await awaitable
            except Exception as e:
                logger.error(f"❌ Error stopping {name}: {e}")

        self.site = None
        self.runner = None

    async def run_forever(self):
        """Start and serve until cancelled"""
        if not await self.start():
            raise RuntimeError(f"Proxy failed to start: {self.last_error_details}")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await self.stop()

    def get_status(self) -> dict:
        status = {
            'running': self.is_running,
            'host': self.host,
            'port': self.port,
        }

        if not self.is_running:
            port_available, port_message = check_port_availability(self.port, self.host)
            status['port_available'] = port_available
            status['port_message'] = port_message

        if self.last_error_type:
            status['last_error'] = {'type': self.last_error_type, 'details': self.last_error_details}

        if self.proxy and self.is_running:
            status['proxy_stats'] = self.proxy.get_full_stats()
            status['analytics'] = self.pipeline.get_status()

        return status


_proxy_manager = None


def get_proxy_manager() -> ProxyManager:
    """Process-wide ProxyManager"""
    global _proxy_manager
    if _proxy_manager is None:
        _proxy_manager = ProxyManager()
    return _proxy_manager
