import asyncio
import enum
import errno
from typing import Optional


class TailrelayError(Exception):
    """Base class for all tailrelay errors"""


class ConfigError(TailrelayError):
    """A required setting is missing or cannot be parsed"""


class OverlayError(TailrelayError):
    """The overlay network client failed to start or is unusable"""


class RelayErrorKind(enum.Enum):
    DIAL = "dial"
    INBOUND_COPY = "inbound-copy"
    OUTBOUND_COPY = "outbound-copy"
    BUILD_REQUEST = "build-request"
    SEND_REQUEST = "send-request"


class RelayError(TailrelayError):
    """A single session or request failed.

    The underlying exception is attached as ``__cause__``, either through
    ``cause`` or by raising with ``raise RelayError(...) from exc``.
    """

    def __init__(
        self, kind: RelayErrorKind, message: str, cause: Optional[BaseException] = None
    ):
        super().__init__(message)
        self.kind = kind
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    def __str__(self) -> str:
        message = super().__str__()
        if self.__cause__ is not None:
            return f"{message}: {self.__cause__}"
        return message


# errno values that mean the peer went away or the socket is already closed
_EXPECTED_ERRNOS = {
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EPIPE,
    errno.EBADF,
    errno.ENOTCONN,
    errno.ESHUTDOWN,
    errno.ETIMEDOUT,
}

_EXPECTED_TYPES = (
    EOFError,
    asyncio.IncompleteReadError,
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
    asyncio.CancelledError,
    asyncio.TimeoutError,
    TimeoutError,
)


def _is_expected(exc: BaseException) -> bool:
    if isinstance(exc, _EXPECTED_TYPES):
        return True
    if isinstance(exc, OSError) and exc.errno in _EXPECTED_ERRNOS:
        return True
    return False


def is_expected_copy_error(exc: Optional[BaseException]) -> bool:
    """Report whether a copy-loop error is ordinary connection teardown.

    EOF, reset, broken pipe, an already closed socket, cancellation and
    timeouts are all part of a normal connection life cycle. Explicitly
    chained causes are inspected too.
    """
    if exc is None:
        return True

    seen = set()
    while exc is not None and id(exc) not in seen:
        if _is_expected(exc):
            return True
        seen.add(id(exc))
        exc = exc.__cause__
    return False
