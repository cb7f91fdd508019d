import asyncio
import stat

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from aiohttp_socks import ProxyConnector

from tailrelay.errors import OverlayError
from tailrelay.overlay import TailscaleClient
from tailrelay.tcp import relay
from tailrelay.utils_tests.overlay_mock import echo_server, stream_pair
from tailrelay.utils_tests.socks_server import socks5_server

FAKE_TAILSCALED = """#!/bin/sh
for arg in "$@"; do
  case "$arg" in
    --socket=*) sock="${arg#--socket=}" ;;
  esac
done
echo "fake tailscaled: $*"
touch "$sock"
exec sleep 60
"""

FAKE_TAILSCALE_OK = """#!/bin/sh
exit 0
"""

FAKE_TAILSCALE_FAIL = """#!/bin/sh
echo "backend error: invalid key" >&2
exit 1
"""

FAKE_TAILSCALED_CRASH = """#!/bin/sh
exit 3
"""


def write_script(path, body: str) -> str:
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


def spawned_client(tmp_path, tailscaled: str, tailscale: str) -> TailscaleClient:
    return TailscaleClient(
        hostname="relay",
        auth_key="tskey-auth-123",
        state_dir=tmp_path / "state",
        tailscaled_bin=write_script(tmp_path / "tailscaled", tailscaled),
        tailscale_bin=write_script(tmp_path / "tailscale", tailscale),
    )


@pytest.mark.asyncio
async def test_start_spawns_daemon_and_close_stops_it(tmp_path):
    client = spawned_client(tmp_path, FAKE_TAILSCALED, FAKE_TAILSCALE_OK)

    await client.start()
    try:
        daemon = client.daemon
        assert daemon is not None and daemon.returncode is None
        assert client.control_socket.exists()
        assert client.socks5_url.startswith("socks5://127.0.0.1:")
    finally:
        await client.close()

    assert daemon.returncode is not None
    assert client.daemon is None
    with pytest.raises(OverlayError):
        client.socks5_url


@pytest.mark.asyncio
async def test_failed_login_is_an_overlay_error(tmp_path):
    client = spawned_client(tmp_path, FAKE_TAILSCALED, FAKE_TAILSCALE_FAIL)

    with pytest.raises(OverlayError) as exc_info:
        await client.start()

    assert "invalid key" in str(exc_info.value)
    assert client.daemon is None


@pytest.mark.asyncio
async def test_daemon_exiting_early_is_an_overlay_error(tmp_path):
    client = spawned_client(tmp_path, FAKE_TAILSCALED_CRASH, FAKE_TAILSCALE_OK)

    with pytest.raises(OverlayError) as exc_info:
        await client.start()

    assert "exited early" in str(exc_info.value)


@pytest.mark.asyncio
async def test_missing_daemon_binary_is_an_overlay_error(tmp_path):
    client = TailscaleClient(
        hostname="relay",
        auth_key="tskey-auth-123",
        state_dir=tmp_path / "state",
        tailscaled_bin=str(tmp_path / "does-not-exist"),
    )
    with pytest.raises(OverlayError):
        await client.start()


@pytest.mark.asyncio
async def test_unusable_state_dir_is_an_overlay_error(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    client = TailscaleClient(
        hostname="relay",
        auth_key="tskey-auth-123",
        state_dir=blocker / "state",
        tailscaled_bin=write_script(tmp_path / "tailscaled", FAKE_TAILSCALED),
    )

    with pytest.raises(OverlayError) as exc_info:
        await client.start()

    assert "state dir" in str(exc_info.value)
    assert client.daemon is None


@pytest.mark.asyncio
async def test_dial_goes_through_socks5_endpoint(tmp_path):
    async with socks5_server() as socks, echo_server() as echo:
        client = TailscaleClient(
            hostname="relay",
            auth_key="tskey-auth-123",
            state_dir=tmp_path,
            socks5_addr=socks.address,
        )
        await client.start()
        assert client.daemon is None

        target = echo.address
        reader, writer = await client.dial("tcp", target)
        writer.write(b"over the tailnet")
        writer.write_eof()
        assert await asyncio.wait_for(reader.read(), timeout=5) == b"over the tailnet"
        writer.close()
        await client.close()

    host, port = target.rsplit(":", 1)
    assert socks.requests == [(host, int(port))]


@pytest.mark.asyncio
async def test_tcp_relay_through_socks5_endpoint(tmp_path):
    (reader, writer), (peer_reader, peer_writer) = await stream_pair()
    async with socks5_server() as socks, echo_server() as echo:
        client = TailscaleClient("relay", "tskey-auth-123", tmp_path, socks5_addr=socks.address)
        relaying = asyncio.create_task(relay((reader, writer), client, echo.address))

        peer_writer.write(b"ping")
        peer_writer.write_eof()
        assert await asyncio.wait_for(peer_reader.read(), timeout=5) == b"ping"
        await asyncio.wait_for(relaying, timeout=5)
        peer_writer.close()


@pytest.mark.asyncio
async def test_dial_rejects_other_networks(tmp_path):
    client = TailscaleClient("relay", "tskey-auth-123", tmp_path, socks5_addr="127.0.0.1:1055")
    with pytest.raises(ValueError):
        await client.dial("udp", "100.64.0.1:53")


@pytest.mark.asyncio
async def test_http_session_is_routed_through_socks5(tmp_path):
    async def hello(request: web.Request) -> web.Response:
        return web.Response(text="hi")

    app = web.Application()
    app.router.add_get("/", hello)

    async with socks5_server() as socks, TestServer(app) as upstream:
        upstream_addr = (upstream.host, upstream.port)
        client = TailscaleClient("relay", "tskey-auth-123", tmp_path, socks5_addr=socks.address)
        session = client.http_session(aiohttp.ClientTimeout(total=10), verify_tls=False)
        try:
            assert isinstance(session.connector, ProxyConnector)
            async with session.get("http://%s:%d/" % upstream_addr) as resp:
                assert await resp.text() == "hi"
        finally:
            await session.close()

    assert socks.requests == [upstream_addr]
