"""Configuration loading and the domain registry"""

import json

from core.config_manager import ConfigManager, DomainConfig, DomainRegistry


class TestConfigManager:
    def test_defaults_without_file(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')

        assert config.get('proxy.timeout') == 30
        assert config.get('geolocation.cache_ttl_hours') == 24
        assert config.get('geolocation.providers') == ['ip-api', 'ipapi', 'ipinfo']
        assert config.get('continuity.inactivity_minutes') == 120
        assert config.get('missing.key', 'fallback') == 'fallback'

    def test_file_is_merged_over_defaults(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'proxy': {'timeout': 5}, 'server': {'port': 9000}}))

        config = ConfigManager(path)

        assert config.get('proxy.timeout') == 5
        assert config.get('proxy.max_connections') == 100
        assert config.get('server.port') == 9000

    def test_invalid_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text('{not json')

        assert ConfigManager(path).get('server.port') == 8080

    def test_env_var_location(self, tmp_path, monkeypatch):
        path = tmp_path / 'elsewhere.json'
        path.write_text(json.dumps({'analytics': {'batch_size': 7}}))
        monkeypatch.setenv('STREAMPROXY_CONFIG', str(path))

        assert ConfigManager().get('analytics.batch_size') == 7

    def test_set_and_save(self, tmp_path):
        path = tmp_path / 'nested' / 'config.json'
        config = ConfigManager(path)

        assert config.set('analytics.batch_size', 25, save=True)
        assert ConfigManager(path).get('analytics.batch_size') == 25

        config.set('server.port', 1234)
        assert config.get('server.port') == 1234

    def test_database_path(self, tmp_path):
        config = ConfigManager(tmp_path / 'config.json')
        config.set('storage.database_path', str(tmp_path / 'x.db'))
        assert config.get_database_path() == tmp_path / 'x.db'


class TestDomains:
    def test_active_without_expiry(self):
        domain = DomainConfig('TV.example.com', {'target_url': 'https://o'})
        assert domain.host == 'tv.example.com'
        assert domain.is_active()
        assert domain.analytics_enabled

    def test_expiry_formats(self):
        assert DomainConfig('a', {'expires_at': 1000}).is_expired(now=2000)
        assert not DomainConfig('a', {'expires_at': 3000}).is_expired(now=2000)
        assert DomainConfig('a', {'expires_at': '2020-01-01T00:00:00Z'}).is_expired()
        assert not DomainConfig('a', {'expires_at': 'whenever'}).is_expired()

    def test_status_must_be_active(self):
        assert not DomainConfig('a', {'status': 'suspended'}).is_active()

    def test_registry_lookup(self):
        registry = DomainRegistry({'TV.Example.com': {'id': 1, 'target_url': 'https://o'}})

        assert registry.lookup('tv.example.com').id == 1
        assert registry.lookup('tv.example.com:443').id == 1
        assert registry.lookup('other.example.com') is None
        assert registry.lookup(None) is None
        assert len(registry) == 1
