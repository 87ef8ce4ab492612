# core/ip_detection.py
"""Real client IP detection behind Cloudflare, CDNs and reverse proxies"""

import ipaddress
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

FALLBACK_IP = '127.0.0.1'

# Priority order: first valid public address wins
TRUSTED_HEADERS = (
    'cf-connecting-ip',
    'true-client-ip',
    'x-forwarded-for',
    'x-real-ip',
    'x-client-ip',
    'x-cluster-client-ip',
    'forwarded-for',
    'x-original-forwarded-for',
    'x-appengine-remote-addr',
)

CLOUDFLARE_HEADERS = ('cf-connecting-ip', 'cf-ray', 'cf-visitor', 'cf-ipcountry')
PROXY_HEADERS = ('x-forwarded-for', 'x-real-ip', 'x-client-ip', 'forwarded', 'x-forwarded')


def is_valid_ip(ip: Optional[str]) -> bool:
    if not ip:
        return False
    try:
        ipaddress.ip_address(ip.strip())
        return True
    except ValueError:
        return False


def is_private_ip(ip: Optional[str]) -> bool:
    """True for private, loopback, link-local, multicast and reserved addresses"""
    if not is_valid_ip(ip):
        return False
    addr = ipaddress.ip_address(ip.strip())
    return (addr.is_private or addr.is_loopback or addr.is_link_local or
            addr.is_multicast or addr.is_reserved or addr.is_unspecified)


def _first_hop(value: str) -> str:
    # "client, proxy1, proxy2" -> client
    return value.split(',')[0].strip()


def _lower_keys(headers: Mapping[str, str]) -> dict:
    return {str(k).lower(): v for k, v in headers.items()}


def get_real_client_ip(headers: Mapping[str, str], peer: Optional[str] = None,
                       allow_private: bool = False) -> str:
    """
    Detect the originating client IP.

    Args:
        headers: Request headers (any case)
        peer: TCP peer address of the connection
        allow_private: Accept private addresses from headers (development setups)

    Returns:
        str: Client IP, the peer address or 127.0.0.1 as last resort
    """
    lowered = _lower_keys(headers)

    for name in TRUSTED_HEADERS:
        value = lowered.get(name)
        if not value:
            continue

        candidate = _first_hop(value)
        if not is_valid_ip(candidate):
            continue
        if is_private_ip(candidate) and not allow_private:
            continue

        logger.debug(f"Client IP {candidate} taken from {name}")
        return candidate

    if peer and is_valid_ip(peer):
        return peer

    return FALLBACK_IP


def is_cloudflare_request(headers: Mapping[str, str]) -> bool:
    lowered = _lower_keys(headers)
    return any(lowered.get(h) for h in CLOUDFLARE_HEADERS)


def is_proxy_request(headers: Mapping[str, str]) -> bool:
    lowered = _lower_keys(headers)
    return any(lowered.get(h) for h in PROXY_HEADERS)
