import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from tailrelay.config import Settings, load_settings
from tailrelay.errors import ConfigError, OverlayError
from tailrelay.overlay import OverlayClient, TailscaleClient
from tailrelay.server import RelayServer

logger = logging.getLogger("tailrelay")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="tailrelay - forward a local port to a node on your tailnet"
    )
    parser.add_argument(
        "--ts-hostname",
        type=str,
        help="hostname to use for tailscale (or set env: TS_HOSTNAME)",
    )
    parser.add_argument(
        "--ts-authkey",
        type=str,
        help="tailscale auth key (or set env: TS_AUTH_KEY)",
    )
    parser.add_argument(
        "--listen-port",
        type=str,
        help="port or host:port to listen on (or set env: LISTEN_PORT)",
    )
    parser.add_argument(
        "--target-addr",
        type=str,
        help="address:port or http(s)://address:port of a tailscale node to send traffic to "
        "(or set env: TARGET_ADDR)",
    )
    parser.add_argument(
        "--ts-state-dir",
        type=str,
        help="state directory for tailscaled (or set env: TS_STATE_DIR, default: /tmp/tailrelay)",
    )
    parser.add_argument(
        "--ts-socks5-addr",
        type=str,
        help="SOCKS5 address of an already running tailscaled; skips starting one "
        "(or set env: TS_SOCKS5_ADDR)",
    )
    parser.add_argument(
        "--http-timeout",
        type=float,
        help="overall timeout in seconds for one proxied HTTP exchange "
        "(or set env: HTTP_TIMEOUT, default: 300)",
    )
    parser.add_argument(
        "--verify-tls",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="verify TLS certificates of https targets (or set env: VERIFY_TLS, default: off)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        help="logging level (or set env: LOG_LEVEL, default: INFO)",
    )
    return parser.parse_args(argv)


async def run_until_stopped(coro, stop_event: asyncio.Event) -> bool:
    """Await ``coro`` unless ``stop_event`` is set first.

    Returns False when the stop event won and ``coro`` was cancelled.
    Errors raised by ``coro`` propagate.
    """
    task = asyncio.create_task(coro)
    stopping = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({task, stopping}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopping.cancel()
        if not task.done():
            task.cancel()
        await asyncio.gather(task, stopping, return_exceptions=True)
    if task.cancelled():
        return False
    task.result()
    return True


async def main(
    settings: Settings,
    overlay: Optional[OverlayClient] = None,
    stop_event: Optional[asyncio.Event] = None,
):
    if overlay is None:
        overlay = TailscaleClient(
            hostname=settings.ts_hostname,
            auth_key=settings.ts_auth_key,
            state_dir=settings.state_dir,
            socks5_addr=settings.socks5_addr,
        )
    logger.info(
        f"🚀 Starting tailrelay (ts-hostname={settings.ts_hostname}, "
        f"listen-addr={settings.listen_addr}, target-addr={settings.target.address})"
    )

    if stop_event is None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        # tailscale up can take minutes, a signal must still stop it
        if not await run_until_stopped(overlay.start(), stop_event):
            logger.info("Shutdown requested while starting tailscale")
            return
        server = RelayServer(settings, overlay)
        try:
            await server.start()
            await run_until_stopped(server.serve_forever(), stop_event)
            logger.info("Server shutdown requested")
        finally:
            await server.stop()
    finally:
        await overlay.close()


def run(argv: Optional[Sequence[str]] = None):
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ConfigError as e:
        setup_logging()
        logger.critical(str(e))
        sys.exit(1)

    setup_logging(settings.log_level)
    try:
        asyncio.run(main(settings))
    except OverlayError as e:
        logger.critical(f"can't start tailscale: {e}")
        sys.exit(1)
    except OSError as e:
        logger.critical(f"unable to start listener: {e}")
        sys.exit(1)
