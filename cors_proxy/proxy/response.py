"""Streaming response that relays the upstream body and sends headers once."""

import logging
from enum import Enum
from typing import List, Tuple

import httpx
from fastapi.responses import StreamingResponse
from starlette.types import Send

from cors_proxy.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")


class ResponsePhase(str, Enum):
    """Progress of one response towards the caller."""

    IDLE = "idle"
    HEADERS_SENT = "headers_sent"
    COMPLETED = "completed"


class ResponseGuard:
    """
    Tracks what has been written for a single request.

    The response start (status and headers) can be written only once and body
    chunks only after it; anything else is dropped and logged instead of
    corrupting the stream.
    """

    def __init__(self):
        self.phase = ResponsePhase.IDLE

    @property
    def headers_sent(self) -> bool:
        return self.phase is not ResponsePhase.IDLE

    async def start(self, send: Send, status_code: int, raw_headers: List[Tuple[bytes, bytes]]) -> bool:
        if self.phase is not ResponsePhase.IDLE:
            logger.warning(
                f"[Proxy] Dropping second response start (status {status_code}), "
                f"response is already {self.phase.value}"
            )
            return False
        self.phase = ResponsePhase.HEADERS_SENT
        await send(
            {
                "type": "http.response.start",
                "status": status_code,
                "headers": raw_headers,
            }
        )
        return True

    async def body(self, send: Send, chunk: bytes, more_body: bool) -> bool:
        if self.phase is not ResponsePhase.HEADERS_SENT:
            logger.warning(
                f"[Proxy] Dropping {len(chunk)} body bytes, response is {self.phase.value}"
            )
            return False
        if not more_body:
            self.phase = ResponsePhase.COMPLETED
        await send({"type": "http.response.body", "body": chunk, "more_body": more_body})
        return True


class ProxyStreamingResponse(StreamingResponse):
    """
    Relay an upstream ``httpx.Response`` opened with ``stream=True``.

    The body is forwarded as raw (still content-encoded) bytes so the
    upstream's content-length and content-encoding stay valid. If the
    upstream fails after the headers went out the error is re-raised and the
    server aborts the connection; the upstream response is always closed.
    """

    def __init__(
        self,
        upstream: httpx.Response,
        status_code: int,
        headers: List[Tuple[str, str]],
        target_url: str = "",
        log_errors: bool = True,
    ):
        super().__init__(upstream.aiter_raw(), status_code=status_code)
        self.upstream = upstream
        self.target_url = target_url
        self.guard = ResponseGuard()
        self.log_errors = log_errors
        self.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in headers
        ]

    async def stream_response(self, send: Send) -> None:
        try:
            if not await self.guard.start(send, self.status_code, self.raw_headers):
                return
            async for chunk in self.body_iterator:
                if chunk:
                    await self.guard.body(send, chunk, more_body=True)
            await self.guard.body(send, b"", more_body=False)
        except httpx.HTTPError as e:
            if self.log_errors:
                log_exception_with_details(
                    logger,
                    f"[Proxy] Upstream body aborted for {self.target_url}:",
                    e,
                    level=logging.WARNING,
                )
            raise
        finally:
            await self.upstream.aclose()
