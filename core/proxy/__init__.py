# core/proxy/__init__.py
"""
Proxy package: forwarding gateway, header rewriting and the web application.
"""

from core.proxy.gateway import ProxyGateway, validate_target_url
from core.proxy.api import create_app

__all__ = ['ProxyGateway', 'validate_target_url', 'create_app']
