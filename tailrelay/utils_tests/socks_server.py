import asyncio
import socket
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

# Minimal SOCKS5 CONNECT server (no auth), standing in for tailscaled's


class Socks5Server:
    def __init__(self):
        self.requests: List[Tuple[str, int]] = []
        self.server: Optional[asyncio.AbstractServer] = None

    @property
    def address(self) -> str:
        host, port = self.server.sockets[0].getsockname()[:2]
        return f"{host}:{port}"

    async def _read_address(self, reader: asyncio.StreamReader) -> str:
        atyp = (await reader.readexactly(1))[0]
        if atyp == 1:
            return socket.inet_ntoa(await reader.readexactly(4))
        if atyp == 3:
            length = (await reader.readexactly(1))[0]
            return (await reader.readexactly(length)).decode()
        return socket.inet_ntop(socket.AF_INET6, await reader.readexactly(16))

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            _, nmethods = await reader.readexactly(2)
            await reader.readexactly(nmethods)
            writer.write(b"\x05\x00")
            await reader.readexactly(3)
            host = await self._read_address(reader)
            port = int.from_bytes(await reader.readexactly(2), "big")
            self.requests.append((host, port))

            try:
                remote_reader, remote_writer = await asyncio.open_connection(host, port)
            except OSError:
                # 0x05: connection refused
                writer.write(b"\x05\x05\x00\x01" + bytes(6))
                return

            writer.write(b"\x05\x00\x00\x01" + socket.inet_aton("127.0.0.1") + bytes(2))
            await writer.drain()
            await asyncio.gather(
                _pipe(reader, remote_writer),
                _pipe(remote_reader, writer),
                return_exceptions=True,
            )
            remote_writer.close()
        finally:
            writer.close()


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    try:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    finally:
        if writer.can_write_eof() and not writer.is_closing():
            writer.write_eof()


@asynccontextmanager
async def socks5_server():
    socks = Socks5Server()
    socks.server = await asyncio.start_server(socks.handle, "127.0.0.1", 0)
    try:
        yield socks
    finally:
        socks.server.close()
        await socks.server.wait_closed()
