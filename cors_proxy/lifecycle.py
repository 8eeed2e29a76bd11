"""
Starting and stopping the proxy.

The listening socket is bound before uvicorn is involved so that an occupied
or forbidden port surfaces as ``BindError`` instead of a process exit, and so
that port 0 can be resolved before the app (which needs the real port to
rewrite redirects) is built.
"""

import asyncio
import logging
import socket
from typing import Callable, Optional

import httpx
import uvicorn

from cors_proxy.config import ProxyConfig
from cors_proxy.errors import BindError
from cors_proxy.server import create_app

logger = logging.getLogger("uvicorn.error")

LISTEN_BACKLOG = 2048


def bind_socket(host: str, port: int) -> socket.socket:
    """Create a listening TCP socket or raise BindError."""
    try:
        family, socktype, proto, _, address = socket.getaddrinfo(
            host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )[0]
        sock = socket.socket(family, socktype, proto)
    except (OSError, OverflowError) as e:
        raise BindError(host, port, str(e)) from e

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(address)
        sock.listen(LISTEN_BACKLOG)
    except (OSError, OverflowError) as e:
        sock.close()
        raise BindError(host, port, str(e)) from e
    sock.set_inheritable(True)
    return sock


class ProxyServer:
    """Handle of a running proxy, returned by ``start``."""

    def __init__(self, config: ProxyConfig, server: uvicorn.Server, sock: socket.socket):
        self.config = config
        self._server = server
        self._sock = sock
        self._serve_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None

    @property
    def port(self) -> int:
        return self.config.listen_port

    @property
    def started(self) -> bool:
        return self._server.started

    @property
    def summary(self) -> str:
        config = self.config
        return "\n".join(
            [
                f"Local address: {config.local_origin}",
                f"Target:        {config.target}",
                f"Logging:       {'on' if config.logging_enabled else 'off'}",
                f"Timeout:       {config.request_timeout_ms}ms",
            ]
        )

    async def _serve(self) -> None:
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._sock]))
        while not self._server.started:
            if self._serve_task.done():
                self._sock.close()
                error = None if self._serve_task.cancelled() else self._serve_task.exception()
                raise BindError(
                    self.config.host,
                    self.config.listen_port,
                    f"server exited during startup ({error})" if error else "server exited during startup",
                ) from error
            await asyncio.sleep(0.01)

    async def wait_closed(self) -> None:
        """Resolve once the server has stopped serving, whatever stopped it."""
        if self._serve_task is not None:
            await asyncio.shield(self._serve_task)

    async def _shutdown(self, on_stopped: Optional[Callable[[], None]]) -> None:
        logger.info("[Server] Stopping proxy server")
        self._server.should_exit = True
        if self._serve_task is not None:
            await asyncio.shield(self._serve_task)
        self._sock.close()
        logger.info("[Server] Proxy server stopped")
        if on_stopped is not None:
            on_stopped()

    async def stop(self, on_stopped: Optional[Callable[[], None]] = None) -> None:
        """
        Stop accepting connections, let in-flight requests drain, then call
        ``on_stopped``. Calling stop again waits for the same shutdown and
        never runs a callback twice.
        """
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self._shutdown(on_stopped))
        elif on_stopped is not None:
            logger.debug("[Server] stop() called again; shutdown already in progress")
        await asyncio.shield(self._stop_task)


async def start(
    config: ProxyConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProxyServer:
    """Bind the listener, start serving and return the running server."""
    sock = bind_socket(config.host, config.listen_port)
    bound_port = sock.getsockname()[1]
    if bound_port != config.listen_port:
        config = config.model_copy(update={"listen_port": bound_port})

    app = create_app(config, transport=transport)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=bound_port,
            log_config=None,
            access_log=False,
            lifespan="on",
        )
    )
    handle = ProxyServer(config, server, sock)
    await handle._serve()
    logger.info(f"[Server] Proxy server started\n{handle.summary}")
    return handle


async def run_proxy(
    config: ProxyConfig,
    on_started: Optional[Callable[[ProxyServer], None]] = None,
) -> None:
    """Start the proxy and serve until it is stopped (uvicorn handles SIGINT/SIGTERM)."""
    server = await start(config)
    if on_started is not None:
        on_started(server)
    try:
        await server.wait_closed()
    finally:
        await server.stop()
