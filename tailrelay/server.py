import asyncio
import itertools
import logging
from typing import Any, List, Optional, Set

import aiohttp
from aiohttp import web

from tailrelay.config import Mode, Settings
from tailrelay.errors import RelayError
from tailrelay.overlay import OverlayClient
from tailrelay.proxy import HttpRelay
from tailrelay.tcp import relay

logger = logging.getLogger("tailrelay.server")
access_logger = logging.getLogger("aiohttp.access")
access_logger.setLevel(logging.WARNING)

IDLE_TIMEOUT = 60.0


class RelayServer:
    """Binds the local listener and hands every connection to a relay.

    The relay mode is taken from the target address once, when the server
    is created, and never changes afterwards.
    """

    def __init__(self, settings: Settings, overlay: OverlayClient):
        self.settings = settings
        self.overlay = overlay
        self.mode = settings.target.mode
        self.tcp_server: Optional[asyncio.AbstractServer] = None
        self.http_runner: Optional[web.ServerRunner] = None
        self.http_session: Optional[aiohttp.ClientSession] = None
        self.sessions: Set[asyncio.Task] = set()
        self._session_ids = itertools.count(1)

    @property
    def addresses(self) -> List[Any]:
        """Addresses actually bound, useful when listening on port 0"""
        if self.tcp_server is not None:
            return [sock.getsockname() for sock in self.tcp_server.sockets]
        if self.http_runner is not None:
            return self.http_runner.addresses
        return []

    async def start(self) -> None:
        """Start listening; raises OSError when the address cannot be bound"""
        if self.mode is Mode.HTTP:
            logger.info("Running in HTTP/s proxy mode (http(s):// scheme detected in target address)")
            await self._start_http()
        else:
            logger.info("Running in TCP tunnel mode (no HTTP scheme detected in target address)")
            await self._start_tcp()
        logger.info(
            f"Relay listening on {self.settings.listen_addr} -> {self.settings.target.address}"
        )

    async def _start_http(self) -> None:
        timeout = aiohttp.ClientTimeout(total=self.settings.http_timeout)
        self.http_session = self.overlay.http_session(timeout, self.settings.verify_tls)
        http_relay = HttpRelay(self.http_session, self.settings.target.address)

        server = web.Server(http_relay.handle, keepalive_timeout=IDLE_TIMEOUT)
        self.http_runner = web.ServerRunner(server)
        await self.http_runner.setup()
        site = web.TCPSite(
            self.http_runner, self.settings.listen_host, self.settings.listen_port
        )
        try:
            await site.start()
        except OSError:
            await self._stop_http()
            raise

    async def _start_tcp(self) -> None:
        self.tcp_server = await asyncio.start_server(
            self._handle_tcp, self.settings.listen_host, self.settings.listen_port
        )

    async def _handle_tcp(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        session_id = next(self._session_ids)
        target = self.settings.target.address
        task = asyncio.current_task()
        self.sessions.add(task)

        logger.info(
            f"[tcp] #{session_id} fwd: {writer.get_extra_info('peername')} -> "
            f"{writer.get_extra_info('sockname')} -> {target}"
        )
        try:
            await relay((reader, writer), self.overlay, target)
        except RelayError as e:
            logger.error(f"[tcp] #{session_id} {e.kind.value} failed: {e}")
        else:
            logger.debug(f"[tcp] #{session_id} closed")
        finally:
            self.sessions.discard(task)

    async def serve_forever(self) -> None:
        if self.tcp_server is not None:
            await self.tcp_server.serve_forever()
        else:
            await asyncio.Event().wait()

    async def _stop_http(self) -> None:
        if self.http_runner is not None:
            await self.http_runner.cleanup()
            self.http_runner = None
        if self.http_session is not None:
            await self.http_session.close()
            self.http_session = None

    async def stop(self) -> None:
        """Stop accepting and cancel whatever is still in flight"""
        if self.tcp_server is not None:
            self.tcp_server.close()
            sessions = list(self.sessions)
            for task in sessions:
                task.cancel()
            await asyncio.gather(*sessions, return_exceptions=True)
            await self.tcp_server.wait_closed()
            self.tcp_server = None
        await self._stop_http()
        logger.info("Relay server stopped")
