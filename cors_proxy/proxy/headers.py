"""
Header rules of the proxy: what is stripped or overridden on the way to the
upstream, and which CORS and redirect headers are injected on the way back.

Every function here is pure and works on lists of ``(name, value)`` pairs so
that repeated headers such as ``set-cookie`` survive untouched.
"""

from typing import Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

from cors_proxy.config import ProxyConfig
from cors_proxy.utils import url_origin

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Request headers replaced with the target's own origin
OVERRIDDEN_REQUEST_HEADERS = {"host", "origin", "referer"}

# Response headers the proxy always sets itself
CORS_RESPONSE_HEADERS = {
    "access-control-allow-origin",
    "access-control-allow-credentials",
}

ALLOWED_METHODS = "GET, POST, PUT, DELETE, PATCH, OPTIONS"
PREFLIGHT_MAX_AGE = "86400"


def decode_header_list(raw: Iterable[Tuple[bytes, bytes]]) -> HeaderList:
    """Decode raw ASGI/httpx header pairs without losing any byte."""
    return [(name.decode("latin-1"), value.decode("latin-1")) for name, value in raw]


def cors_headers(origin: Optional[str]) -> HeaderList:
    """Allow-origin and allow-credentials, echoing the caller's origin when known."""
    headers = [
        ("access-control-allow-origin", origin or "*"),
        ("access-control-allow-credentials", "true"),
    ]
    if origin:
        headers.append(("vary", "Origin"))
    return headers


def preflight_headers(origin: Optional[str], requested_headers: Optional[str]) -> HeaderList:
    """Headers of the 204 answer to a CORS preflight request."""
    headers = [
        ("access-control-allow-origin", origin or "*"),
        ("access-control-allow-credentials", "true"),
        ("access-control-allow-methods", ALLOWED_METHODS),
        ("access-control-allow-headers", requested_headers or "*"),
        ("access-control-max-age", PREFLIGHT_MAX_AGE),
    ]
    if origin:
        headers.append(("vary", "Origin"))
    return headers


def prepare_upstream_headers(inbound: Iterable[Tuple[str, str]], config: ProxyConfig) -> HeaderList:
    """
    Copy inbound headers for the upstream request.

    Hop-by-hop headers are dropped, and host/origin/referer are pinned to the
    target so the upstream sees requests coming from its own site.
    """
    headers: HeaderList = []
    for name, value in inbound:
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in OVERRIDDEN_REQUEST_HEADERS:
            continue
        headers.append((name, value))

    headers.append(("host", config.target_authority))
    headers.append(("origin", config.target_origin))
    headers.append(("referer", config.target_origin))
    return headers


def merge_vary(values: Iterable[str], addition: str = "Origin") -> str:
    """Join vary values into one header, appending ``addition`` exactly once."""
    tokens: List[str] = []
    seen = set()
    for value in values:
        for token in value.split(","):
            token = token.strip()
            if token and token.lower() not in seen:
                seen.add(token.lower())
                tokens.append(token)
    if addition.lower() not in seen:
        tokens.append(addition)
    return ", ".join(tokens)


def rewrite_location_header(location: str, config: ProxyConfig) -> str:
    """
    Point redirects that stay on the target's origin back at the local proxy.

    Relative locations are resolved against the target first. Redirects to
    any other origin, and values that do not parse as URLs, are returned
    unchanged.
    """
    if not location:
        return location

    try:
        resolved = urlsplit(urljoin(config.target, location.strip()))
        if resolved.username is not None or resolved.password is not None:
            return location
        if url_origin(resolved) != config.target_origin:
            return location
    except ValueError:
        return location

    path = resolved.path or "/"
    query = f"?{resolved.query}" if resolved.query else ""
    fragment = f"#{resolved.fragment}" if resolved.fragment else ""
    return f"{config.local_origin}{path}{query}{fragment}"


def rewrite_response_headers(
    upstream: Iterable[Tuple[str, str]],
    origin: Optional[str],
    config: ProxyConfig,
) -> HeaderList:
    """Turn upstream response headers into the headers sent to the caller."""
    headers: HeaderList = []
    vary_values: List[str] = []

    for name, value in upstream:
        name_lower = name.lower()

        # The server re-frames the body, CORS is ours to decide
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in CORS_RESPONSE_HEADERS:
            continue

        if name_lower == "vary" and origin:
            vary_values.append(value)
            continue

        if name_lower == "location":
            value = rewrite_location_header(value, config)

        headers.append((name, value))

    if origin:
        headers.append(("access-control-allow-origin", origin))
        headers.append(("vary", merge_vary(vary_values)))
    else:
        headers.append(("access-control-allow-origin", "*"))
    headers.append(("access-control-allow-credentials", "true"))
    return headers
