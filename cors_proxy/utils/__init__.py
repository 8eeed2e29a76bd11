from typing import Optional
from urllib.parse import SplitResult

DEFAULT_PORTS = {"http": 80, "https": 443}


def url_authority(parts: SplitResult) -> str:
    """Host plus port as a browser would print it: lower-case, default port omitted."""
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    port: Optional[int] = parts.port
    if port is not None and port != DEFAULT_PORTS.get(parts.scheme.lower()):
        host = f"{host}:{port}"
    return host


def url_origin(parts: SplitResult) -> str:
    return f"{parts.scheme.lower()}://{url_authority(parts)}"
