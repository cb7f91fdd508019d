import asyncio
import socket

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from tailrelay.cli import run
from tailrelay.config import Mode, Settings, parse_target
from tailrelay.server import RelayServer
from tailrelay.utils_tests.overlay_mock import DirectOverlay, echo_server


def make_settings(target: str, port: int = 0, http_timeout: float = 30) -> Settings:
    return Settings(
        ts_hostname="relay",
        ts_auth_key="tskey-auth-123",
        listen_host="127.0.0.1",
        listen_port=port,
        target=parse_target(target),
        http_timeout=http_timeout,
    )


def test_mode_is_chosen_from_target():
    overlay = DirectOverlay()
    assert RelayServer(make_settings("https://x:443"), overlay).mode is Mode.HTTP
    assert RelayServer(make_settings("http://x"), overlay).mode is Mode.HTTP
    assert RelayServer(make_settings("10.0.0.1:22"), overlay).mode is Mode.TCP


@pytest.mark.asyncio
async def test_tcp_mode_relays_every_connection():
    overlay = DirectOverlay()
    async with echo_server() as echo:
        server = RelayServer(make_settings(echo.address), overlay)
        await server.start()
        try:
            host, port = server.addresses[0][:2]

            async def exchange(message: bytes) -> bytes:
                reader, writer = await asyncio.open_connection(host, port)
                writer.write(message)
                writer.write_eof()
                try:
                    return await asyncio.wait_for(reader.read(), timeout=5)
                finally:
                    writer.close()

            replies = await asyncio.gather(exchange(b"one"), exchange(b"two"), exchange(b""))
        finally:
            await server.stop()

    assert replies == [b"one", b"two", b""]
    assert len(overlay.dialed) == 3


@pytest.mark.asyncio
async def test_tcp_mode_survives_dial_failures():
    overlay = DirectOverlay(fail_with=ConnectionRefusedError("no route"))
    server = RelayServer(make_settings("100.64.0.9:22"), overlay)
    await server.start()
    try:
        host, port = server.addresses[0][:2]
        for _ in range(2):
            reader, writer = await asyncio.open_connection(host, port)
            assert await asyncio.wait_for(reader.read(), timeout=5) == b""
            writer.close()
        assert server.tcp_server.is_serving()
    finally:
        await server.stop()

    assert len(overlay.dialed) == 2


@pytest.mark.asyncio
async def test_stop_cancels_open_sessions():
    async with echo_server() as echo:
        server = RelayServer(make_settings(echo.address), DirectOverlay())
        await server.start()
        host, port = server.addresses[0][:2]
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"ping")
        assert await asyncio.wait_for(reader.readexactly(4), timeout=5) == b"ping"
        assert len(server.sessions) == 1

        await server.stop()

        assert not server.sessions
        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()


@pytest.mark.asyncio
async def test_http_mode_proxies_requests():
    async def hello(request: web.Request) -> web.Response:
        return web.Response(text=f"hello from {request.path_qs}")

    app = web.Application()
    app.router.add_get("/{tail:.*}", hello)

    async with TestServer(app) as upstream:
        settings = make_settings(f"http://{upstream.host}:{upstream.port}")
        server = RelayServer(settings, DirectOverlay())
        await server.start()
        try:
            host, port = server.addresses[0][:2]
            async with aiohttp.ClientSession() as client:
                async with client.get(f"http://{host}:{port}/a/b?c=d") as resp:
                    assert resp.status == 200
                    assert await resp.text() == "hello from /a/b?c=d"
        finally:
            await server.stop()

    assert server.http_session is None


def slow_backend() -> web.Application:
    async def slow(request: web.Request) -> web.Response:
        await asyncio.sleep(1)
        return web.Response(text="too late")

    async def trickle(request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse()
        await response.prepare(request)
        await response.write(b"start")
        await asyncio.sleep(1)
        await response.write(b"end")
        await response.write_eof()
        return response

    app = web.Application()
    app.router.add_get("/slow", slow)
    app.router.add_get("/trickle", trickle)
    return app


@pytest.mark.asyncio
async def test_http_mode_uses_configured_timeout_and_tls_default():
    overlay = DirectOverlay()
    async with TestServer(slow_backend()) as upstream:
        settings = make_settings(
            f"http://{upstream.host}:{upstream.port}", http_timeout=0.2
        )
        server = RelayServer(settings, overlay)
        await server.start()
        try:
            host, port = server.addresses[0][:2]
            async with aiohttp.ClientSession() as client:
                async with client.get(f"http://{host}:{port}/slow") as resp:
                    assert resp.status == 500
                    assert await resp.text() == "error sending request"

                received = bytearray()
                async with client.get(f"http://{host}:{port}/trickle") as resp:
                    assert resp.status == 200
                    try:
                        async for chunk in resp.content.iter_any():
                            received.extend(chunk)
                    except aiohttp.ClientPayloadError:
                        pass
        finally:
            await server.stop()

    # The exchange timeout covers body streaming too, so the body is cut short
    assert bytes(received) == b"start"

    [(timeout, verify_tls)] = overlay.sessions
    assert timeout.total == 0.2
    assert verify_tls is False


@pytest.mark.asyncio
async def test_bind_failure_raises():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as taken:
        taken.bind(("127.0.0.1", 0))
        taken.listen()
        port = taken.getsockname()[1]

        for target in ("10.0.0.1:22", "http://backend"):
            server = RelayServer(make_settings(target, port), DirectOverlay())
            with pytest.raises(OSError):
                await server.start()
            await server.stop()


def test_missing_settings_exit_with_error(monkeypatch):
    for name in ("TS_AUTH_KEY", "TS_HOSTNAME", "LISTEN_PORT", "TARGET_ADDR"):
        monkeypatch.delenv(name, raising=False)

    with pytest.raises(SystemExit) as exc_info:
        run([])
    assert exc_info.value.code == 1


def test_unparseable_target_exits_at_startup(monkeypatch):
    monkeypatch.setenv("TS_AUTH_KEY", "tskey-auth-123")
    monkeypatch.setenv("TS_HOSTNAME", "relay")
    monkeypatch.setenv("LISTEN_PORT", "8080")

    with pytest.raises(SystemExit) as exc_info:
        run(["--target-addr", "ftp://backend:21"])
    assert exc_info.value.code == 1
