import asyncio
import socket
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

import aiohttp

from tailrelay.config import split_host_port
from tailrelay.overlay import Stream, new_client_session


class DirectOverlay:
    """Overlay stand-in that dials addresses straight over loopback"""

    def __init__(self, fail_with: Optional[BaseException] = None):
        self.fail_with = fail_with
        self.dialed: List[Tuple[str, str]] = []
        self.sessions: List[Tuple[aiohttp.ClientTimeout, bool]] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def dial(self, network: str, address: str) -> Stream:
        self.dialed.append((network, address))
        if self.fail_with is not None:
            raise self.fail_with
        host, port = split_host_port(address)
        return await asyncio.open_connection(host, port)

    def http_session(
        self, timeout: aiohttp.ClientTimeout, verify_tls: bool
    ) -> aiohttp.ClientSession:
        self.sessions.append((timeout, verify_tls))
        return new_client_session(aiohttp.TCPConnector(ssl=verify_tls), timeout)

    async def close(self) -> None:
        self.closed = True


class EchoServer:
    def __init__(self):
        self.received = bytearray()
        self.server: Optional[asyncio.AbstractServer] = None
        self.address = ""

    async def start(self) -> None:
        self.server = await asyncio.start_server(self.handle, "127.0.0.1", 0)
        host, port = self.server.sockets[0].getsockname()[:2]
        # Kept after close so tests can assert on it
        self.address = f"{host}:{port}"

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                self.received.extend(data)
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()


@asynccontextmanager
async def echo_server():
    """TCP server that writes back whatever it reads, then closes on EOF"""
    echo = EchoServer()
    await echo.start()
    try:
        yield echo
    finally:
        echo.server.close()
        await echo.server.wait_closed()


@asynccontextmanager
async def closing_server():
    """TCP server that hangs up on every connection straight away"""

    async def handle(reader, writer):
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    host, port = server.sockets[0].getsockname()[:2]
    try:
        yield f"{host}:{port}"
    finally:
        server.close()
        await server.wait_closed()


async def stream_pair() -> Tuple[Stream, Stream]:
    """Two connected in-process streams"""
    left, right = socket.socketpair()
    return (
        await asyncio.open_connection(sock=left),
        await asyncio.open_connection(sock=right),
    )


def unused_tcp_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
