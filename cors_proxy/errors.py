"""Exceptions raised by the proxy."""


class ConfigurationError(ValueError):
    """The proxy configuration is missing or invalid."""


class BindError(OSError):
    """The listening socket could not be created."""

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Cannot listen on {host}:{port}: {reason}")


class UpstreamError(Exception):
    """The upstream could not deliver a response."""

    status_code = 502
    message = "Bad Gateway"

    def __init__(self, target_url: str, detail: str = ""):
        self.target_url = target_url
        self.detail = detail
        super().__init__(f"{self.message}: {target_url}" + (f" ({detail})" if detail else ""))


class UpstreamTimeoutError(UpstreamError):
    message = "Upstream request timeout"


class UpstreamConnectionError(UpstreamError):
    message = "Bad Gateway"
