# core/proxy/headers.py
"""Request/response header rewriting for proxied traffic"""

from typing import Dict, Mapping, Optional

from aiohttp import web

HOP_BY_HOP = frozenset({
    'connection', 'keep-alive', 'proxy-authenticate', 'proxy-authorization',
    'te', 'trailer', 'trailers', 'transfer-encoding', 'upgrade',
})

# Never forwarded to the origin: recomputed by the client session
REQUEST_STRIP = HOP_BY_HOP | {'host', 'content-length'}

# Body is re-framed (and transparently decompressed) by the proxy
RESPONSE_STRIP = HOP_BY_HOP | {'content-length', 'content-encoding'}

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, HEAD, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization, Range, X-Requested-With, '
                                    'X-Session-ID, X-Episode-ID, X-Previous-Session-ID',
    'Access-Control-Expose-Headers': 'Content-Length, Content-Range, ETag, Last-Modified, '
                                     'X-Cache-Status, X-Proxy-CDN',
}

PROXY_MARKER = 'StreamProxy'

DEFAULT_ACCEPT = '*/*'
DEFAULT_ACCEPT_ENCODING = 'gzip, deflate'

# Content codings the client session can decode before relaying
DECODABLE_ENCODINGS = frozenset({'gzip', 'x-gzip', 'deflate', 'identity'})


def _connection_tokens(headers: Mapping[str, str]) -> set:
    """Header names listed in Connection are hop-by-hop for this message"""
    value = headers.get('Connection') or headers.get('connection') or ''
    return {token.strip().lower() for token in value.split(',') if token.strip()}


def _decodable_accept_encoding(value: str) -> str:
    """Drop codings (br, zstd, ...) the proxy cannot decode from an Accept-Encoding value"""
    kept = []
    for token in value.split(','):
        coding = token.split(';', 1)[0].strip().lower()
        if coding in DECODABLE_ENCODINGS:
            kept.append(token.strip())
    return ', '.join(kept) or 'identity'


def build_upstream_headers(headers: Optional[Mapping[str, str]], client_ip: str,
                           default_user_agent: str, peer_ip: Optional[str] = None) -> Dict[str, str]:
    """
    Headers sent to the origin.

    Args:
        headers: Caller-supplied headers (request body or inbound request)
        client_ip: Resolved real client IP
        default_user_agent: Used when the caller sent no User-Agent
        peer_ip: Address of the immediate TCP peer, appended to an existing
            X-Forwarded-For chain

    Returns:
        dict: Headers with hop-by-hop entries removed and forwarding headers injected
    """
    headers = headers or {}
    dropped = REQUEST_STRIP | _connection_tokens(headers)

    result = {}
    for key, value in headers.items():
        if key.lower() in dropped or value is None:
            continue
        result[key] = str(value)

    present = {key.lower() for key in result}

    forwarded_for = next((v for k, v in result.items() if k.lower() == 'x-forwarded-for'), None)
    accept_encoding = next((v for k, v in result.items() if k.lower() == 'accept-encoding'), None)
    for key in [k for k in result if k.lower() in ('x-forwarded-for', 'x-real-ip', 'accept-encoding')]:
        del result[key]

    # An existing chain gets the hop that delivered it; a fresh one starts at the client
    if forwarded_for:
        result['X-Forwarded-For'] = f"{forwarded_for}, {peer_ip or client_ip}"
    else:
        result['X-Forwarded-For'] = client_ip
    result['X-Real-IP'] = client_ip

    if 'user-agent' not in present:
        result['User-Agent'] = default_user_agent
    if 'accept' not in present:
        result['Accept'] = DEFAULT_ACCEPT
    if accept_encoding is None:
        result['Accept-Encoding'] = DEFAULT_ACCEPT_ENCODING
    else:
        result['Accept-Encoding'] = _decodable_accept_encoding(accept_encoding)

    return result


def build_response_headers(upstream_headers: Mapping[str, str],
                           default_cache_control: str) -> Dict[str, str]:
    """
    Headers relayed to the client: origin headers minus hop-by-hop and framing
    headers, plus CORS, cache-control and proxy markers.

    ETag, Last-Modified and Expires pass through untouched. Cache-Control is
    taken from the origin when present, otherwise `default_cache_control`.
    """
    dropped = RESPONSE_STRIP | _connection_tokens(upstream_headers)

    result = {}
    for key, value in upstream_headers.items():
        key_lower = key.lower()
        if key_lower in dropped or key_lower.startswith('access-control-'):
            continue
        result[key] = value

    if not any(key.lower() == 'cache-control' for key in result):
        result['Cache-Control'] = default_cache_control

    result.update(CORS_HEADERS)
    result['X-Proxy-CDN'] = PROXY_MARKER
    result['X-Cache-Status'] = 'MISS'
    return result


def json_error(status: int, error: str, message: str, target: Optional[str] = None) -> web.Response:
    """Proxy error response: {error, message, target} with CORS headers"""
    body = {'error': error, 'message': message}
    if target is not None:
        body['target'] = target
    return web.json_response(body, status=status, headers=CORS_HEADERS)


def preflight_response() -> web.Response:
    return web.Response(status=204, headers={**CORS_HEADERS, 'Access-Control-Max-Age': '86400'})
