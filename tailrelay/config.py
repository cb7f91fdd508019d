import enum
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import urlsplit

from tailrelay.errors import ConfigError

DEFAULT_STATE_DIR = Path("/tmp/tailrelay")
DEFAULT_LISTEN_HOST = "::"
DEFAULT_HTTP_TIMEOUT = 5 * 60.0

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


class Mode(enum.Enum):
    TCP = "tcp"
    HTTP = "http"


@dataclass(frozen=True)
class Target:
    """The single destination every connection is relayed to.

    In TCP mode ``address`` is ``host:port``; in HTTP mode it is the origin
    URL (scheme, host, optional port and path prefix, no trailing slash).
    """

    mode: Mode
    address: str


@dataclass(frozen=True)
class Settings:
    ts_hostname: str
    ts_auth_key: str = field(repr=False)
    listen_host: str
    listen_port: int
    target: Target
    state_dir: Path = DEFAULT_STATE_DIR
    socks5_addr: Optional[str] = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    # Outbound TLS is not verified by default: the tailnet already
    # authenticates the peer.
    verify_tls: bool = False
    log_level: str = "INFO"

    @property
    def listen_addr(self) -> str:
        return join_host_port(self.listen_host, self.listen_port)


def split_host_port(address: str) -> Tuple[str, int]:
    """Split ``host:port`` or ``[v6-host]:port`` into its parts"""
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ConfigError(f"missing port in address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ConfigError(f"too many colons in address {address!r}")
    return host, _parse_port(port, address)


def join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _parse_port(value: Any, address: str) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"invalid port in address {address!r}") from None
    if not 0 < port < 65536:
        raise ConfigError(f"port out of range in address {address!r}")
    return port


def parse_target(raw: str) -> Target:
    """Parse the target address once and pick the relay mode from it.

    ``http://`` and ``https://`` select the HTTP reverse proxy. A bare
    ``host:port`` or a ``tcp://host:port`` URL selects the TCP tunnel.
    """
    raw = raw.strip()
    if "://" not in raw:
        host, _ = split_host_port(raw)
        if not host:
            raise ConfigError(f"missing host in target address {raw!r}")
        return Target(Mode.TCP, raw)

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise ConfigError(f"unable to parse target address {raw!r}: {e}") from e

    scheme = parts.scheme.lower()
    if not parts.hostname:
        raise ConfigError(f"missing host in target address {raw!r}")

    if scheme in ("http", "https"):
        if parts.query or parts.fragment:
            raise ConfigError(
                f"target address {raw!r} must not carry a query or fragment"
            )
        return Target(Mode.HTTP, raw.rstrip("/"))
    if scheme == "tcp":
        if port is None:
            raise ConfigError(f"missing port in target address {raw!r}")
        return Target(Mode.TCP, parts.netloc)
    raise ConfigError(f"unsupported scheme {parts.scheme!r} in target address {raw!r}")


def parse_listen(raw: str) -> Tuple[str, int]:
    """Accept either a bare port (bound on all interfaces) or ``host:port``"""
    raw = raw.strip()
    if raw.isdigit():
        return DEFAULT_LISTEN_HOST, _parse_port(raw, raw)
    host, port = split_host_port(raw)
    return host or DEFAULT_LISTEN_HOST, port


def _parse_bool(value: str, name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def _pick(flag_value: Any, environ: Mapping[str, str], env_name: str) -> Any:
    # Flags take precedence over the environment
    if flag_value is not None and flag_value != "":
        return flag_value
    return environ.get(env_name) or None


def _require(value: Any, flag: str, env_name: str) -> Any:
    if value is None:
        raise ConfigError(
            f"{flag.lstrip('-')} is required (set {env_name} in env or use {flag})"
        )
    return value


def load_settings(args: Any, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build the immutable settings from parsed flags and the environment"""
    if environ is None:
        environ = os.environ

    auth_key = _require(
        _pick(args.ts_authkey, environ, "TS_AUTH_KEY"), "--ts-authkey", "TS_AUTH_KEY"
    )
    hostname = _require(
        _pick(args.ts_hostname, environ, "TS_HOSTNAME"), "--ts-hostname", "TS_HOSTNAME"
    )
    listen = _require(
        _pick(args.listen_port, environ, "LISTEN_PORT"), "--listen-port", "LISTEN_PORT"
    )
    target = _require(
        _pick(args.target_addr, environ, "TARGET_ADDR"), "--target-addr", "TARGET_ADDR"
    )

    listen_host, listen_port = parse_listen(str(listen))

    state_dir = _pick(args.ts_state_dir, environ, "TS_STATE_DIR")
    socks5_addr = _pick(args.ts_socks5_addr, environ, "TS_SOCKS5_ADDR")
    if socks5_addr is not None:
        split_host_port(socks5_addr)

    timeout = _pick(args.http_timeout, environ, "HTTP_TIMEOUT")
    try:
        http_timeout = float(timeout) if timeout is not None else DEFAULT_HTTP_TIMEOUT
    except ValueError:
        raise ConfigError(f"http-timeout must be a number, got {timeout!r}") from None
    if http_timeout <= 0:
        raise ConfigError("http-timeout must be positive")

    verify_tls = args.verify_tls
    if verify_tls is None:
        env_value = environ.get("VERIFY_TLS")
        verify_tls = _parse_bool(env_value, "VERIFY_TLS") if env_value else False

    log_level = str(_pick(args.log_level, environ, "LOG_LEVEL") or "INFO").upper()

    return Settings(
        ts_hostname=hostname,
        ts_auth_key=auth_key,
        listen_host=listen_host,
        listen_port=listen_port,
        target=parse_target(target),
        state_dir=Path(state_dir) if state_dir else DEFAULT_STATE_DIR,
        socks5_addr=socks5_addr,
        http_timeout=http_timeout,
        verify_tls=verify_tls,
        log_level=log_level,
    )
