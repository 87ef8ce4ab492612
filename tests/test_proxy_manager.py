"""Server lifecycle"""

import socket

import aiohttp

from core.config_manager import ConfigManager
from core.proxy_manager import ProxyManager


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def make_config(tmp_path, backend: str, port: int) -> ConfigManager:
    config = ConfigManager(tmp_path / 'config.json')
    config.set('server.host', '127.0.0.1')
    config.set('server.port', port)
    config.set('storage.backend', backend)
    config.set('storage.database_path', str(tmp_path / 'streamproxy.db'))
    config.set('geolocation.cache_backend', backend)
    config.set('geolocation.providers', [])
    return config


class TestProxyManager:
    async def test_start_serve_stop(self, tmp_path):
        port = free_port()
        manager = ProxyManager(make_config(tmp_path, 'sqlite', port))

        assert await manager.start()
        try:
            assert manager.is_running
            async with aiohttp.ClientSession() as session:
                async with session.get(f'http://127.0.0.1:{port}/health') as resp:
                    assert resp.status == 200
                    assert (await resp.json())['status'] == 'healthy'

            status = manager.get_status()
            assert status['running']
            assert status['proxy_stats']['requests'] == 0
            assert (tmp_path / 'streamproxy.db').exists()
        finally:
            await manager.stop()

        assert not manager.is_running
        assert 'port_message' in manager.get_status()

    async def test_refuses_busy_port(self, tmp_path):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(('127.0.0.1', 0))
            busy.listen()
            port = busy.getsockname()[1]

            manager = ProxyManager(make_config(tmp_path, 'memory', port))
            assert not await manager.start()

        assert manager.last_error_type == 'port'
        assert not manager.is_running

    async def test_double_start(self, tmp_path):
        manager = ProxyManager(make_config(tmp_path, 'memory', free_port()))
        assert await manager.start()
        try:
            assert not await manager.start()
        finally:
            await manager.stop()
