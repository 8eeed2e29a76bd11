from typing import Callable, List, Optional, Sequence, Tuple

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from cors_proxy.config import ProxyConfig, build_config
from cors_proxy.server import create_app


class RecordingUpstream:
    """httpx.MockTransport handler that records what the proxy sent upstream."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.bodies: List[bytes] = []
        self._respond: Callable[[httpx.Request], httpx.Response] = lambda request: make_upstream_response(
            200, [("content-type", "text/plain")], b"upstream ok"
        )

    def respond_with(
        self,
        status_code: int = 200,
        headers: Optional[Sequence[Tuple[str, str]]] = None,
        content: bytes = b"",
    ) -> None:
        self._respond = lambda request: make_upstream_response(status_code, headers, content)

    def fail_with(self, exc_type: type, message: str) -> None:
        def _raise(request: httpx.Request):
            raise exc_type(message, request=request)

        self._respond = _raise

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        body = await request.aread()
        self.requests.append(request)
        self.bodies.append(body)
        return self._respond(request)


def make_upstream_response(
    status_code: int,
    headers: Optional[Sequence[Tuple[str, str]]] = None,
    content: bytes = b"",
) -> httpx.Response:
    """A not-yet-read upstream response, like one coming off the network."""
    headers = list(headers or [])
    if content and not any(name.lower() == "content-length" for name, _ in headers):
        headers.append(("content-length", str(len(content))))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(content))


@pytest.fixture
def proxy_config() -> ProxyConfig:
    return build_config(
        listen_port=8000,
        target="http://example.com",
        logging_enabled=True,
        request_timeout_ms=30000,
    )


@pytest.fixture
def upstream() -> RecordingUpstream:
    return RecordingUpstream()


@pytest.fixture
def proxy_app(proxy_config, upstream):
    return create_app(proxy_config, transport=httpx.MockTransport(upstream))


@pytest.fixture
def client(proxy_app):
    with TestClient(proxy_app) as test_client:
        yield test_client


@pytest.fixture
def make_request():
    """Build a Starlette Request straight from an ASGI scope."""

    def _make_request(
        method: str = "GET",
        path: str = "/",
        query: bytes = b"",
        headers: Optional[Sequence[Tuple[str, str]]] = None,
        body: bytes = b"",
    ) -> Request:
        async def receive():
            return {"type": "http.request", "body": body, "more_body": False}

        scope = {
            "type": "http",
            "method": method,
            "scheme": "http",
            "path": path,
            "raw_path": path.encode("utf-8"),
            "query_string": query,
            "headers": [
                (name.lower().encode("latin-1"), value.encode("latin-1"))
                for name, value in (headers or [])
            ],
            "server": ("testserver", 80),
            "client": ("127.0.0.1", 50000),
        }
        return Request(scope, receive)

    return _make_request
