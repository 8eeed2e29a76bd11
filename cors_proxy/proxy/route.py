import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import Request
from fastapi.responses import PlainTextResponse, Response
from opentelemetry import trace

from cors_proxy.config import ProxyConfig
from cors_proxy.errors import UpstreamConnectionError, UpstreamError, UpstreamTimeoutError
from cors_proxy.proxy.headers import (
    cors_headers,
    decode_header_list,
    preflight_headers,
    prepare_upstream_headers,
    rewrite_response_headers,
)
from cors_proxy.proxy.response import ProxyStreamingResponse
from cors_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Pooled upstream connections kept open between requests; in-flight ones are unbounded
MAX_KEEPALIVE_CONNECTIONS = 20


def request_origin(request: Request) -> Optional[str]:
    """The caller's Origin header; an empty value counts as absent."""
    return request.headers.get("origin") or None


def get_target_url(request: Request, config: ProxyConfig) -> str:
    """
    Build the upstream URL from the target's scheme and authority plus the
    inbound path and query. The target's own path is not kept, and the
    inbound path can never change the upstream host.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = quote(request.scope.get("path") or "/")
    if not path.startswith("/"):
        path = "/" + path

    url = f"{config.target_scheme}://{config.target_authority}{path}"
    query_string = request.scope.get("query_string", b"").decode("latin-1")
    if query_string:
        url = f"{url}?{query_string}"
    return url


def has_request_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    content_length = request.headers.get("content-length", "").strip()
    return bool(content_length) and content_length != "0"


def log_request(method: str, target_url: str) -> None:
    """Plain ``[METHOD] url`` line; the CLI's handler colors it by ``proxy_method``."""
    logger.info(f"[{method}] {target_url}", extra={"proxy_method": method})


def preflight_response(request: Request) -> Response:
    """Answer a CORS preflight locally, without contacting the upstream."""
    requested = request.headers.getlist("access-control-request-headers")
    response = Response(status_code=204)
    for name, value in preflight_headers(request_origin(request), ", ".join(requested)):
        response.headers.append(name, value)
    return response


class RequestForwarder:
    """
    Sends inbound requests to the configured target and wraps the upstream
    answer in a streaming response with rewritten headers.

    One instance (and one pooled ``httpx.AsyncClient``) serves every request
    of an application; its config is never modified.
    """

    def __init__(
        self,
        config: ProxyConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = httpx.Timeout(config.timeout_seconds)
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=self.timeout,
            # Streamed responses hold their connection until the body ends
            limits=httpx.Limits(
                max_connections=None,
                max_keepalive_connections=MAX_KEEPALIVE_CONNECTIONS,
            ),
            follow_redirects=False,  # Redirects go back to the caller, rewritten
            trust_env=False,
            # Upstream cookies belong to the callers, never to the shared client
            cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    def build_upstream_request(self, request: Request, target_url: str) -> httpx.Request:
        """
        Build the outbound request directly so none of the client's default
        headers (user-agent, accept-encoding) are mixed into the caller's.
        """
        return httpx.Request(
            request.method,
            target_url,
            headers=prepare_upstream_headers(request.headers.items(), self.config),
            content=request.stream() if has_request_body(request) else None,
            extensions={"timeout": self.timeout.as_dict()},
        )

    def _log_failure(self, target_url: str, error: Exception) -> None:
        if self.config.logging_enabled:
            log_exception_with_details(
                logger, f"[Proxy] Upstream request to {target_url} failed:", error, level=logging.WARNING
            )

    async def forward(self, request: Request) -> Response:
        config = self.config
        target_url = get_target_url(request, config)

        with tracer.start_as_current_span("proxy_request") as span:
            span.set_attribute("proxy.target_url", target_url)
            span.set_attribute("proxy.method", request.method)

            if config.logging_enabled:
                log_request(request.method, target_url)

            upstream_request = self.build_upstream_request(request, target_url)
            try:
                upstream = await self.client.send(upstream_request, stream=True)
            except httpx.TimeoutException as e:
                span.set_attribute("proxy.error", "timeout")
                self._log_failure(target_url, e)
                raise UpstreamTimeoutError(target_url, format_exception_message(e)) from e
            except httpx.HTTPError as e:
                span.set_attribute("proxy.error", "connection_failed")
                self._log_failure(target_url, e)
                raise UpstreamConnectionError(target_url, format_exception_message(e)) from e

            span.set_attribute("proxy.status_code", upstream.status_code)

            headers = rewrite_response_headers(
                decode_header_list(upstream.headers.raw),
                request_origin(request),
                config,
            )
            return ProxyStreamingResponse(
                upstream,
                status_code=upstream.status_code,
                headers=headers,
                target_url=target_url,
                log_errors=config.logging_enabled,
            )


async def upstream_error_handler(request: Request, exc: UpstreamError) -> Response:
    """Turn an upstream failure into a short plain-text 502 the browser can read."""
    response = PlainTextResponse(exc.message, status_code=exc.status_code)
    for name, value in cors_headers(request_origin(request)):
        response.headers.append(name, value)
    return response


async def proxy_all(request: Request) -> Response:
    """
    Catch-all endpoint, registered without a method list so any verb
    (WebDAV, PURGE, ...) reaches the target. Preflights are answered locally.
    """
    if request.method == "OPTIONS":
        return preflight_response(request)
    forwarder: RequestForwarder = request.app.state.forwarder
    return await forwarder.forward(request)
