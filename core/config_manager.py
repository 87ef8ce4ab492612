import json
import logging
import os
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


def get_app_data_dir() -> Path:
    """Directory for config, logs and the SQLite database"""
    env_home = os.getenv('STREAMPROXY_HOME')
    if env_home:
        app_data_dir = Path(env_home)
    else:
        app_data_dir = Path(__file__).parent.parent / 'app_data'

    app_data_dir.mkdir(parents=True, exist_ok=True)
    return app_data_dir


class ConfigManager:
    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path) if config_path else self._get_config_path()
        self.config = self._load_config()

    def _get_config_path(self) -> Path:
        """Config file path: STREAMPROXY_CONFIG or <app data>/config.json"""
        env_path = os.getenv('STREAMPROXY_CONFIG')
        if env_path:
            return Path(env_path)
        return get_app_data_dir() / 'config.json'

    def _get_default_config(self) -> dict:
        """Built-in defaults; the config file is merged on top"""
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 8080,
            },

            'proxy': {
                'timeout': 30,
                'connect_timeout': 10,
                'max_connections': 100,
                'max_per_host': 50,
                'concurrency_limit': 200,
                'chunk_size': 64 * 1024,
                'user_agent': 'StreamProxy/1.0',
                'default_cache_control': 'public, max-age=86400',
                'stream_cache_control': 'public, max-age=3600',
            },

            'geolocation': {
                'cache_ttl_hours': 24,
                'provider_timeout': 5,
                'providers': ['ip-api', 'ipapi', 'ipinfo'],
                'cache_backend': 'sqlite',  # sqlite | memory
                'memory_cache_size': 1000,
            },

            'continuity': {
                'inactivity_minutes': 120,
            },

            'analytics': {
                'enabled': True,
                'queue_size': 1000,
                'batch_size': 50,
            },

            'storage': {
                'backend': 'sqlite',  # sqlite | memory
                'database_path': None,  # None = <app data>/streamproxy.db
                'memory_max_records': 100000,
            },

            # host -> {id, target_url, status, expires_at, analytics_enabled}
            'domains': {},

            'logging': {
                'level': 'INFO',
                'file': 'streamproxy.log',
                'max_bytes': 5 * 1024 * 1024,
                'backup_count': 5,
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Load the config file merged over defaults"""
        default_config = self._get_default_config()

        try:
            if self.config_path.exists():
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    loaded_config = json.load(f)
                    return self._deep_merge(default_config, loaded_config)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

        return default_config

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Recursive dict merge"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def save(self) -> bool:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                json.dump(self.config, f, indent=2, ensure_ascii=False)
            logger.info("Configuration saved")
            return True
        except OSError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def get(self, key: str, default: Any = None) -> Any:
        """Value by dot-notation key, e.g. 'proxy.timeout'"""
        value = self.config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any, save: bool = False) -> bool:
        """Set a value by dot-notation key"""
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref or not isinstance(config_ref[k], dict):
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

        if save:
            return self.save()
        return True

    def get_proxy_config(self) -> Dict[str, Any]:
        return self.get('proxy', {})

    def get_database_path(self) -> Path:
        path = self.get('storage.database_path')
        return Path(path) if path else get_app_data_dir() / 'streamproxy.db'

    def reset_to_defaults(self) -> bool:
        self.config = self._get_default_config()
        return self.save()


class DomainConfig:
    """Static account/domain lookup: which origin serves a custom host"""

    def __init__(self, host: str, data: Dict[str, Any]):
        self.host = host.lower()
        self.id = data.get('id')
        self.target_url = data.get('target_url')
        self.status = data.get('status', 'active')
        self.expires_at = data.get('expires_at')
        self.analytics_enabled = bool(data.get('analytics_enabled', True))

    def _expiry_timestamp(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        if isinstance(self.expires_at, (int, float)):
            return float(self.expires_at)
        try:
            expires = datetime.fromisoformat(str(self.expires_at).replace('Z', '+00:00'))
        except ValueError:
            logger.warning(f"Invalid expires_at for {self.host}: {self.expires_at}")
            return None
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        return expires.timestamp()

    def is_expired(self, now: Optional[float] = None) -> bool:
        expiry = self._expiry_timestamp()
        now = time.time() if now is None else now
        return expiry is not None and expiry < now

    def is_active(self, now: Optional[float] = None) -> bool:
        return self.status == 'active' and not self.is_expired(now)


class DomainRegistry:
    def __init__(self, domains: Optional[Dict[str, Dict[str, Any]]] = None):
        self.domains = {
            host.lower(): DomainConfig(host, data)
            for host, data in (domains or {}).items()
        }

    def lookup(self, host: Optional[str]) -> Optional[DomainConfig]:
        if not host:
            return None
        # Host header may carry a port
        hostname = host.lower().rsplit(':', 1)[0] if ']' not in host else host.lower()
        return self.domains.get(hostname)

    def __len__(self) -> int:
        return len(self.domains)


_config_instance = None


def get_config() -> ConfigManager:
    """Process-wide ConfigManager"""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigManager()
    return _config_instance
