import contextlib
import locale
import re
import socket
import ssl
import sys
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import TypeVar, Union, overload

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

from . import errors

__all__ = (
    "StreamIO",
    "DataConnection",
    "AsciiEncoder",
    "AsciiDecoder",
    "END_OF_LINE",
    "DEFAULT_BLOCK_SIZE",
    "MAX_LINE_LENGTH",
    "DEFAULT_PORT",
    "DEFAULT_IDLE_TIMEOUT",
    "DEFAULT_DATA_CONNECTION_TIMEOUT",
    "HALF_OF_YEAR_IN_SECONDS",
    "wrap_with_container",
    "setlocale",
    "shutdown_socket",
    "format_mdtm",
    "parse_mdtm",
)

END_OF_LINE = "\r\n"
DEFAULT_BLOCK_SIZE = 1024
MAX_LINE_LENGTH = 64 * 1024

DEFAULT_PORT = 21
DEFAULT_IDLE_TIMEOUT = 5 * 60
DEFAULT_DATA_CONNECTION_TIMEOUT = 30
HALF_OF_YEAR_IN_SECONDS = 15778476
MDTM_FORMAT = "%Y%m%d%H%M%S"


StrType = TypeVar("StrType", bound=str)
NotStrType = TypeVar("NotStrType")


@overload
def wrap_with_container(o: StrType) -> tuple[StrType]: ...
@overload
def wrap_with_container(o: NotStrType) -> NotStrType: ...


def wrap_with_container(o: Union[StrType, NotStrType]) -> Union[tuple[StrType], NotStrType]:
    if isinstance(o, str):
        return (o,)  # type: ignore[return-value]
    return o


def shutdown_socket(sock: socket.socket) -> None:
    """
    Shutdown and close socket. Shutdown wakes up any thread blocked on this
    socket, plain close does not.
    """
    with contextlib.suppress(OSError):
        sock.shutdown(socket.SHUT_RDWR)
    sock.close()


class StreamIO:
    """
    Blocking socket wrapper with line reading and serialized writes.

    :param sock: connected socket
    :type sock: :py:class:`socket.socket`

    :param timeout: socket timeout for read/write operations
    :type timeout: :py:class:`int`, :py:class:`float` or :py:class:`None`

    :param block_size: bytes count for socket read operations
    :type block_size: :py:class:`int`
    """

    max_line_length = MAX_LINE_LENGTH

    def __init__(
        self,
        sock: socket.socket,
        *,
        timeout: Union[float, int, None] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
    ) -> None:
        self.socket = sock
        self.block_size = block_size
        self.socket.settimeout(timeout)
        self._buffer = b""
        self._write_lock = threading.Lock()

    @property
    def is_secure(self) -> bool:
        return isinstance(self.socket, ssl.SSLSocket)

    def readline(self) -> bytes:
        """
        Read bytes up to and including ``\\n``. Returns what is left in
        buffer (possibly empty bytes) at end of stream. Timeout keeps
        already buffered data for next call.

        :raises embedftp.ResponseError: when line is longer than
            :py:attr:`max_line_length`
        """
        while True:
            index = self._buffer.find(b"\n")
            if index >= 0:
                line, self._buffer = self._buffer[: index + 1], self._buffer[index + 1 :]
                return line
            if len(self._buffer) >= self.max_line_length:
                self._buffer = b""
                raise errors.ResponseError(500, "Command line too long")
            data = self.socket.recv(self.block_size)
            if not data:
                line, self._buffer = self._buffer, b""
                return line
            self._buffer += data

    def read(self, count: int) -> bytes:
        """
        Read at most `count` bytes, empty bytes means end of stream.

        :param count: block size for read operation
        :type count: :py:class:`int`
        """
        if self._buffer:
            data, self._buffer = self._buffer[:count], self._buffer[count:]
            return data
        return self.socket.recv(count)

    def write(self, data: bytes) -> None:
        """
        Send all data. Concurrent writers never interleave.

        :param data: data to write
        :type data: :py:class:`bytes`
        """
        with self._write_lock:
            self.socket.sendall(data)

    def start_tls(self, context: ssl.SSLContext) -> None:
        """
        Upgrades the connection to TLS in server role, handshake happens
        immediately.
        """
        with self._write_lock:
            self.socket = context.wrap_socket(self.socket, server_side=True)

    def close(self) -> None:
        """
        Close connection.
        """
        shutdown_socket(self.socket)

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class DataConnection(StreamIO):
    """
    Data channel socket wrapper. Socket failures are reraised as
    :py:class:`embedftp.DataConnectionError`. Can be aborted from another
    thread, which unblocks any pending read or write.
    """

    def __init__(self, *args, **kwargs) -> None:  # type: ignore[no-untyped-def]
        super().__init__(*args, **kwargs)
        self.aborted = False

    def read(self, count: int) -> bytes:
        try:
            return super().read(count)
        except (OSError, ValueError) as exc:
            raise errors.DataConnectionError(str(exc)) from exc

    def write(self, data: bytes) -> None:
        try:
            super().write(data)
        except (OSError, ValueError) as exc:
            raise errors.DataConnectionError(str(exc)) from exc

    def abort(self) -> None:
        self.aborted = True
        shutdown_socket(self.socket)

    def close(self) -> None:
        """
        Close connection, TLS layer is shut down gracefully if connection was
        not aborted.
        """
        if self.is_secure and not self.aborted:
            with contextlib.suppress(OSError, ValueError):
                self.socket = self.socket.unwrap()  # type: ignore[attr-defined]
        shutdown_socket(self.socket)


class AsciiEncoder:
    """
    Storage to wire translation for ASCII mode: inserts ``\\r`` before every
    ``\\n`` which is not preceded by ``\\r``. Keeps last byte of previous
    block, so blocks may be cut anywhere.
    """

    LONE_LF = re.compile(rb"(?<!\r)\n")

    def __init__(self, last: bytes = b"") -> None:
        self.last = last

    def encode(self, data: bytes) -> bytes:
        if not data:
            return data
        encoded = self.LONE_LF.sub(b"\r\n", data)
        if data[:1] == b"\n" and self.last == b"\r":
            encoded = encoded[1:]
        self.last = data[-1:]
        return encoded


class AsciiDecoder:
    """
    Wire to storage translation for ASCII mode: ``\\r\\n`` is stored as
    ``\\n``. Trailing ``\\r`` of a block is held back until next block or
    :py:meth:`flush`.
    """

    def __init__(self) -> None:
        self.pending = b""

    def decode(self, data: bytes) -> bytes:
        data = self.pending + data
        self.pending = b""
        if data.endswith(b"\r"):
            data, self.pending = data[:-1], b"\r"
        return data.replace(b"\r\n", b"\n")

    def flush(self) -> bytes:
        data, self.pending = self.pending, b""
        return data


LOCALE_LOCK = threading.Lock()


@contextmanager
def setlocale(name: str) -> Generator[str, None, None]:
    """
    Context manager with threading lock for set locale on enter, and set it
    back to original state on exit.

    ::

        >>> with setlocale("C"):
        ...     ...
    """
    with LOCALE_LOCK:
        old_locale = locale.setlocale(locale.LC_ALL)
        try:
            yield locale.setlocale(locale.LC_ALL, name)
        finally:
            locale.setlocale(locale.LC_ALL, old_locale)


def format_mdtm(seconds: float) -> str:
    """
    Format timestamp as ``YYYYMMDDhhmmss`` in server local time.
    """
    return time.strftime(MDTM_FORMAT, time.localtime(seconds))


def parse_mdtm(value: str) -> float:
    """
    Parse ``YYYYMMDDhhmmss`` in server local time into timestamp.

    :raises ValueError: when value has wrong format
    """
    if len(value) != 14 or not value.isdigit():
        raise ValueError(f"bad time value {value!r}")
    return time.mktime(time.strptime(value, MDTM_FORMAT))
