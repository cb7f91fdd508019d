import asyncio
import logging
import socket
from pathlib import Path
from typing import Optional, Protocol, Tuple

import aiohttp
from aiohttp_socks import ProxyConnector
from python_socks.async_.asyncio import Proxy

from tailrelay.config import join_host_port, split_host_port
from tailrelay.errors import OverlayError

logger = logging.getLogger("tailrelay.overlay")
daemon_logger = logging.getLogger("tailrelay.tailscaled")

Stream = Tuple[asyncio.StreamReader, asyncio.StreamWriter]

DIAL_TIMEOUT = 30.0
SOCKET_WAIT_TIMEOUT = 30.0
LOGIN_TIMEOUT = 120.0


class OverlayClient(Protocol):
    """What the relays need from the overlay network"""

    async def start(self) -> None: ...

    async def dial(self, network: str, address: str) -> Stream: ...

    def http_session(
        self, timeout: aiohttp.ClientTimeout, verify_tls: bool
    ) -> aiohttp.ClientSession: ...

    async def close(self) -> None: ...


def new_client_session(
    connector: aiohttp.BaseConnector, timeout: aiohttp.ClientTimeout
) -> aiohttp.ClientSession:
    """Session used for the outbound leg of the HTTP relay.

    Bodies are passed through untouched and no cookies are kept between
    unrelated callers.
    """
    return aiohttp.ClientSession(
        connector=connector,
        timeout=timeout,
        auto_decompress=False,
        cookie_jar=aiohttp.DummyCookieJar(),
        skip_auto_headers=("Accept-Encoding", "Content-Type", "User-Agent"),
    )


def _free_local_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TailscaleClient:
    """Tailscale node running in userspace-networking mode.

    Unless ``socks5_addr`` points at an already running tailscaled, a
    private ``tailscaled`` is spawned with its state in ``state_dir`` and
    logged in with ``auth_key``. Every outbound connection goes through
    the daemon's SOCKS5 endpoint, so tailnet names resolve on the far side.
    """

    def __init__(
        self,
        hostname: str,
        auth_key: str,
        state_dir: Path,
        socks5_addr: Optional[str] = None,
        tailscaled_bin: str = "tailscaled",
        tailscale_bin: str = "tailscale",
    ):
        self.hostname = hostname
        self.auth_key = auth_key
        self.state_dir = Path(state_dir)
        self.socks5_addr = socks5_addr
        self.external = socks5_addr is not None
        self.tailscaled_bin = tailscaled_bin
        self.tailscale_bin = tailscale_bin
        self.daemon: Optional[asyncio.subprocess.Process] = None
        self._log_task: Optional[asyncio.Task] = None

    @property
    def control_socket(self) -> Path:
        return self.state_dir / "tailscaled.sock"

    @property
    def socks5_url(self) -> str:
        if self.socks5_addr is None:
            raise OverlayError("tailscale client is not started")
        return f"socks5://{self.socks5_addr}"

    async def start(self) -> None:
        if self.external:
            logger.info(f"Using external tailscaled SOCKS5 endpoint {self.socks5_addr}")
            return

        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            # A socket left over from a previous run would look like a ready daemon
            self.control_socket.unlink(missing_ok=True)
        except OSError as e:
            raise OverlayError(f"can't prepare state dir {self.state_dir}: {e}") from e
        socks5_addr = join_host_port("127.0.0.1", _free_local_port())

        try:
            self.daemon = await asyncio.create_subprocess_exec(
                self.tailscaled_bin,
                "--tun=userspace-networking",
                f"--statedir={self.state_dir}",
                f"--socket={self.control_socket}",
                f"--socks5-server={socks5_addr}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise OverlayError(f"can't start {self.tailscaled_bin}: {e}") from e

        self._log_task = asyncio.create_task(self._forward_daemon_logs())
        try:
            await self._wait_for_control_socket()
            await self._login()
        except BaseException:
            await self.close()
            raise

        self.socks5_addr = socks5_addr
        logger.info(
            f"Tailscale node {self.hostname} is up (socks5={socks5_addr}, state={self.state_dir})"
        )

    async def _forward_daemon_logs(self) -> None:
        assert self.daemon is not None and self.daemon.stdout is not None
        async for line in self.daemon.stdout:
            daemon_logger.debug(line.decode(errors="replace").rstrip())

    async def _wait_for_control_socket(self) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + SOCKET_WAIT_TIMEOUT
        while not self.control_socket.exists():
            if self.daemon.returncode is not None:
                raise OverlayError(
                    f"tailscaled exited early with status {self.daemon.returncode}"
                )
            if loop.time() > deadline:
                raise OverlayError(
                    f"tailscaled did not create {self.control_socket} in time"
                )
            await asyncio.sleep(0.1)

    async def _login(self) -> None:
        args = [
            self.tailscale_bin,
            f"--socket={self.control_socket}",
            "up",
            f"--authkey={self.auth_key}",
            f"--hostname={self.hostname}",
            f"--timeout={int(LOGIN_TIMEOUT)}s",
        ]
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise OverlayError(f"can't run {self.tailscale_bin}: {e}") from e

        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise OverlayError(
                f"tailscale up failed with status {proc.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )

    async def dial(self, network: str, address: str) -> Stream:
        """Open a TCP stream to ``address`` across the tailnet"""
        if network != "tcp":
            raise ValueError(f"unsupported network {network!r}")
        host, port = split_host_port(address)
        proxy = Proxy.from_url(self.socks5_url, rdns=True)
        sock = await proxy.connect(dest_host=host, dest_port=port, timeout=DIAL_TIMEOUT)
        return await asyncio.open_connection(sock=sock)

    def http_session(
        self, timeout: aiohttp.ClientTimeout, verify_tls: bool
    ) -> aiohttp.ClientSession:
        connector = ProxyConnector.from_url(self.socks5_url, rdns=True, ssl=verify_tls)
        return new_client_session(connector, timeout)

    async def close(self) -> None:
        if self.daemon is not None and self.daemon.returncode is None:
            self.daemon.terminate()
            try:
                await asyncio.wait_for(self.daemon.wait(), timeout=10)
            except asyncio.TimeoutError:
                logger.warning("tailscaled did not exit after SIGTERM, killing it")
                self.daemon.kill()
                await self.daemon.wait()
        if self._log_task is not None:
            await self._log_task
            self._log_task = None
        if self.daemon is not None:
            logger.info("Tailscale node stopped")
            self.socks5_addr = None
        self.daemon = None
