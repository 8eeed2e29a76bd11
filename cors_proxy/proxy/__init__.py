from .headers import (
    HOP_BY_HOP_HEADERS,
    merge_vary,
    preflight_headers,
    prepare_upstream_headers,
    rewrite_location_header,
    rewrite_response_headers,
)
from .response import ProxyStreamingResponse, ResponseGuard, ResponsePhase
from .route import RequestForwarder, proxy_all

__all__ = [
    "HOP_BY_HOP_HEADERS",
    "ProxyStreamingResponse",
    "RequestForwarder",
    "ResponseGuard",
    "ResponsePhase",
    "merge_vary",
    "preflight_headers",
    "prepare_upstream_headers",
    "proxy_all",
    "rewrite_location_header",
    "rewrite_response_headers",
]
