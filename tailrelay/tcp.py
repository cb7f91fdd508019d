import asyncio
import logging
import socket
from typing import Dict, Optional

from tailrelay.errors import RelayError, RelayErrorKind, is_expected_copy_error
from tailrelay.overlay import OverlayClient, Stream

logger = logging.getLogger("tailrelay.tcp")

BUFFER_SIZE = 64 * 1024
KEEPALIVE_INTERVAL = 30

_COPY_ERRORS = {
    RelayErrorKind.INBOUND_COPY: "failed to copy data to tailscale node",
    RelayErrorKind.OUTBOUND_COPY: "failed to copy data from tailscale node",
}


def enable_keepalive(writer: asyncio.StreamWriter, interval: int = KEEPALIVE_INTERVAL) -> bool:
    """Turn on TCP keep-alive if the stream sits on a TCP socket"""
    sock = writer.get_extra_info("socket")
    if sock is None or sock.family not in (socket.AF_INET, socket.AF_INET6):
        return False
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        for option in ("TCP_KEEPIDLE", "TCP_KEEPINTVL"):
            if hasattr(socket, option):
                sock.setsockopt(socket.IPPROTO_TCP, getattr(socket, option), interval)
    except OSError as e:
        logger.debug(f"Unable to enable keep-alive: {e}")
        return False
    return True


def shutdown_write(writer: asyncio.StreamWriter) -> bool:
    """Half-close the stream; returns False when that is not possible"""
    if writer.is_closing() or not writer.can_write_eof():
        return False
    try:
        writer.write_eof()
    except OSError as e:
        logger.debug(f"Unable to half-close stream: {e}")
        return False
    return True


async def close_stream(writer: asyncio.StreamWriter) -> None:
    if not writer.is_closing():
        writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug(f"Error while closing stream: {e}")


class RelaySession:
    """One inbound connection paired with its outbound connection.

    Both copy directions run as tasks that share one cancellation scope.
    A direction that reaches EOF half-closes its destination and lets the
    other direction drain; a direction that fails, or whose destination
    cannot be half-closed, cancels its sibling so neither side hangs.
    """

    def __init__(self, inbound: Stream, outbound: Stream):
        self.inbound = inbound
        self.outbound = outbound
        self.tasks: Dict[RelayErrorKind, asyncio.Task] = {}

    async def _copy(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> bool:
        try:
            while True:
                data = await reader.read(BUFFER_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            half_closed = shutdown_write(writer)
        return half_closed

    def _on_copy_done(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is not None or not task.result():
            self.cancel()

    def cancel(self) -> None:
        for task in self.tasks.values():
            if not task.done():
                task.cancel()

    async def run(self) -> None:
        """Pump bytes both ways until both directions are finished"""
        in_reader, in_writer = self.inbound
        out_reader, out_writer = self.outbound
        self.tasks = {
            RelayErrorKind.INBOUND_COPY: asyncio.create_task(self._copy(in_reader, out_writer)),
            RelayErrorKind.OUTBOUND_COPY: asyncio.create_task(self._copy(out_reader, in_writer)),
        }
        for task in self.tasks.values():
            task.add_done_callback(self._on_copy_done)

        try:
            await asyncio.wait(self.tasks.values())
        finally:
            # Reached early only when the caller itself was cancelled
            self.cancel()
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)

        failure: Optional[RelayError] = None
        for kind, task in self.tasks.items():
            exc = None if task.cancelled() else task.exception()
            if is_expected_copy_error(exc):
                continue
            if failure is None:
                failure = RelayError(kind, _COPY_ERRORS[kind], cause=exc)
            else:
                logger.debug(f"Additional copy failure ({kind.value}): {exc!r}")
        if failure is not None:
            raise failure


async def relay(
    inbound: Stream,
    overlay: OverlayClient,
    target_address: str,
    keepalive: int = KEEPALIVE_INTERVAL,
) -> None:
    """Forward one accepted connection to ``target_address`` over the tailnet.

    Raises :class:`RelayError` when dialing fails or either direction ends
    with an unexpected error. Both streams are closed when this returns.
    """
    _, in_writer = inbound
    try:
        enable_keepalive(in_writer, keepalive)
        try:
            outbound = await overlay.dial("tcp", target_address)
        except Exception as e:
            raise RelayError(RelayErrorKind.DIAL, "failed to dial tailscale node") from e

        _, out_writer = outbound
        try:
            enable_keepalive(out_writer, keepalive)
            await RelaySession(inbound, outbound).run()
        finally:
            await close_stream(out_writer)
    finally:
        await close_stream(in_writer)
