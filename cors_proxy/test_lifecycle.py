"""Lifecycle tests against real sockets on the loopback interface."""

import asyncio
import socket
import time
from unittest.mock import Mock

import httpx
import pytest

from cors_proxy.config import build_config
from cors_proxy.errors import BindError
from cors_proxy.lifecycle import ProxyServer, bind_socket, run_proxy, start

ORIGIN = "http://a.test"


def local_config(target="http://example.com", **overrides):
    values = dict(listen_port=0, target=target, host="127.0.0.1", request_timeout_ms=30000)
    values.update(overrides)
    return build_config(**values)


def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestBindSocket:
    def test_ephemeral_port(self):
        sock = bind_socket("127.0.0.1", 0)
        try:
            assert sock.getsockname()[1] > 0
        finally:
            sock.close()

    def test_port_in_use(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
            holder.bind(("127.0.0.1", 0))
            holder.listen()
            port = holder.getsockname()[1]

            with pytest.raises(BindError) as exc_info:
                bind_socket("127.0.0.1", port)

        assert exc_info.value.port == port
        assert f"127.0.0.1:{port}" in str(exc_info.value)


class TestStartStop:
    @pytest.mark.asyncio
    async def test_serves_until_stopped(self, upstream):
        upstream.respond_with(302, [("location", "http://example.com/bar")])
        server = await start(local_config(), transport=httpx.MockTransport(upstream))
        stopped = []
        try:
            assert server.started
            assert server.port > 0
            assert server.config.local_origin == f"http://localhost:{server.port}"

            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"http://127.0.0.1:{server.port}/foo?x=1", headers={"Origin": ORIGIN}
                )
            assert response.status_code == 302
            assert response.headers["location"] == f"http://localhost:{server.port}/bar"
            assert response.headers["access-control-allow-origin"] == ORIGIN
            assert str(upstream.last.url) == "http://example.com/foo?x=1"
        finally:
            await server.stop(on_stopped=lambda: stopped.append("first"))

        await server.stop(on_stopped=lambda: stopped.append("second"))
        assert stopped == ["first"]

        async with httpx.AsyncClient(trust_env=False) as client:
            with pytest.raises(httpx.ConnectError):
                await client.get(f"http://127.0.0.1:{server.port}/")

    @pytest.mark.asyncio
    async def test_concurrent_stops_share_one_shutdown(self, upstream):
        server = await start(local_config(), transport=httpx.MockTransport(upstream))
        calls = []
        await asyncio.gather(
            server.stop(on_stopped=lambda: calls.append(1)),
            server.stop(on_stopped=lambda: calls.append(2)),
        )
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_port_in_use_raises_bind_error(self, upstream):
        first = await start(local_config(), transport=httpx.MockTransport(upstream))
        try:
            with pytest.raises(BindError) as exc_info:
                await start(local_config(listen_port=first.port), transport=httpx.MockTransport(upstream))
            assert exc_info.value.port == first.port
        finally:
            await first.stop()

    @pytest.mark.asyncio
    async def test_run_proxy_returns_once_stopped(self):
        started = []
        stop_tasks = []

        def on_started(server):
            started.append(server)
            stop_tasks.append(asyncio.get_running_loop().create_task(server.stop()))

        await asyncio.wait_for(run_proxy(local_config(), on_started=on_started), timeout=10)

        assert len(started) == 1
        await asyncio.wait_for(stop_tasks[0], timeout=5)


class TestUpstreamFailures:
    @pytest.mark.asyncio
    async def test_unreachable_target_is_502(self):
        server = await start(local_config(target=f"http://127.0.0.1:{unused_port()}"))
        try:
            async with httpx.AsyncClient(trust_env=False) as client:
                response = await client.get(
                    f"http://127.0.0.1:{server.port}/foo", headers={"Origin": ORIGIN}
                )
            assert response.status_code == 502
            assert response.text == "Bad Gateway"
            assert response.headers["access-control-allow-origin"] == ORIGIN
        finally:
            await server.stop()

    @pytest.mark.asyncio
    async def test_silent_upstream_times_out(self):
        async def never_respond(reader, writer):
            try:
                # Hold the connection until the proxy gives up on it
                await reader.read()
            finally:
                writer.close()

        silent = await asyncio.start_server(never_respond, "127.0.0.1", 0)
        silent_port = silent.sockets[0].getsockname()[1]
        server = await start(
            local_config(target=f"http://127.0.0.1:{silent_port}", request_timeout_ms=200)
        )
        try:
            async with httpx.AsyncClient(trust_env=False, timeout=10) as client:
                began = time.monotonic()
                response = await client.get(f"http://127.0.0.1:{server.port}/slow")
                elapsed = time.monotonic() - began

            assert response.status_code == 502
            assert response.text == "Upstream request timeout"
            assert elapsed < 3
        finally:
            await server.stop()
            silent.close()
            await silent.wait_closed()


class TestStreaming:
    @pytest.mark.asyncio
    async def test_many_long_lived_responses_do_not_starve_others(self):
        """More in-flight streamed responses than httpx's default pool size."""
        in_flight = 110
        arrived = 0
        all_arrived = asyncio.Event()
        release = asyncio.Event()

        async def held_response(reader, writer):
            nonlocal arrived
            try:
                await reader.readuntil(b"\r\n\r\n")
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 4\r\n\r\n")
                await writer.drain()
                arrived += 1
                if arrived == in_flight:
                    all_arrived.set()
                await release.wait()
                writer.write(b"done")
                await writer.drain()
            finally:
                writer.close()

        upstream = await asyncio.start_server(held_response, "127.0.0.1", 0, backlog=512)
        upstream_port = upstream.sockets[0].getsockname()[1]
        server = await start(
            local_config(target=f"http://127.0.0.1:{upstream_port}", request_timeout_ms=5000)
        )
        try:
            async with httpx.AsyncClient(
                trust_env=False, timeout=20, limits=httpx.Limits(max_connections=None)
            ) as client:
                requests = asyncio.gather(
                    *(client.get(f"http://127.0.0.1:{server.port}/feed/{i}") for i in range(in_flight))
                )
                try:
                    # Every request must reach the upstream while the others still stream
                    await asyncio.wait_for(all_arrived.wait(), timeout=4)
                finally:
                    release.set()
                responses = await requests

            assert [r.status_code for r in responses] == [200] * in_flight
            assert {r.text for r in responses} == {"done"}
        finally:
            await server.stop()
            upstream.close()
            await upstream.wait_closed()

    @pytest.mark.asyncio
    async def test_request_body_streams_upstream(self):
        """The upstream sees the first chunk before the caller sends the last one."""
        first_seen = asyncio.Event()
        received = bytearray()

        async def slow_consumer(reader, writer):
            try:
                await reader.readuntil(b"\r\n\r\n")
                while b"last-chunk" not in received:
                    data = await reader.read(4096)
                    if not data:
                        break
                    received.extend(data)
                    if b"first-chunk" in received:
                        first_seen.set()
                writer.write(b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok")
                await writer.drain()
            finally:
                writer.close()

        async def gated_body():
            yield b"first-chunk"
            await asyncio.wait_for(first_seen.wait(), timeout=5)
            yield b"last-chunk"

        upstream = await asyncio.start_server(slow_consumer, "127.0.0.1", 0)
        upstream_port = upstream.sockets[0].getsockname()[1]
        server = await start(local_config(target=f"http://127.0.0.1:{upstream_port}"))
        try:
            async with httpx.AsyncClient(trust_env=False, timeout=10) as client:
                response = await client.post(
                    f"http://127.0.0.1:{server.port}/upload", content=gated_body()
                )

            assert response.status_code == 200
            assert response.text == "ok"
            assert first_seen.is_set()
            assert b"first-chunk" in received and b"last-chunk" in received
        finally:
            await server.stop()
            upstream.close()
            await upstream.wait_closed()


def test_summary():
    config = local_config(listen_port=9000, logging_enabled=False, request_timeout_ms=1500)
    summary = ProxyServer(config, Mock(), Mock()).summary
    lines = summary.splitlines()
    assert lines[0] == "Local address: http://localhost:9000"
    assert lines[1].split() == ["Target:", "http://example.com"]
    assert lines[2].split() == ["Logging:", "off"]
    assert lines[3].split() == ["Timeout:", "1500ms"]
