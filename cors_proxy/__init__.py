"""Single-target reverse proxy that injects CORS headers."""

from cors_proxy.config import ProxyConfig, build_config
from cors_proxy.errors import (
    BindError,
    ConfigurationError,
    UpstreamConnectionError,
    UpstreamError,
    UpstreamTimeoutError,
)
from cors_proxy.lifecycle import ProxyServer, run_proxy, start
from cors_proxy.server import create_app

__all__ = [
    "BindError",
    "ConfigurationError",
    "ProxyConfig",
    "ProxyServer",
    "UpstreamConnectionError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "build_config",
    "create_app",
    "run_proxy",
    "start",
]
