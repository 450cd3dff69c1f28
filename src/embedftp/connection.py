import logging
import socket
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, BinaryIO, Union

from . import errors
from .commands import (
    ADAPTERS,
    Arguments,
    CommandInfo,
    ConnectionCommands,
    FileCommands,
    ProtectionLevel,
)
from .common import (
    END_OF_LINE,
    AsciiDecoder,
    AsciiEncoder,
    DataConnection,
    StreamIO,
    shutdown_socket,
    wrap_with_container,
)

if TYPE_CHECKING:
    from .pathio import AbstractFileSystem
    from .server import Server


__all__ = (
    "Connection",
    "error_to_reply",
)


logger = logging.getLogger(__name__)


NOT_FOUND_ERRORS = (FileNotFoundError, PermissionError, NotADirectoryError, IsADirectoryError)


def _describe(exc: BaseException) -> str:
    return getattr(exc, "strerror", None) or str(exc) or exc.__class__.__name__


def error_to_reply(exc: BaseException) -> tuple[int, str]:
    """
    Map exception raised by command handler or transfer into reply code and
    text. Unexpected exceptions are logged with traceback.

    :param exc: exception to map
    :type exc: :py:class:`BaseException`

    :rtype: (:py:class:`int`, :py:class:`str`)
    """
    if isinstance(exc, errors.ResponseError):
        return exc.code, exc.message
    if isinstance(exc, errors.DataConnectionError):
        return 426, "Transfer aborted"
    reason = exc
    if isinstance(exc, errors.PathIOError) and exc.reason is not None and exc.reason[1] is not None:
        reason = exc.reason[1]
    if isinstance(reason, NOT_FOUND_ERRORS):
        return 550, _describe(reason)
    if isinstance(reason, (OSError, errors.PathIOError)):
        return 450, _describe(reason)
    logger.exception("command handler caught exception", exc_info=exc)
    return 451, "Requested action aborted: local error in processing"


class Connection:
    """
    Control connection session. Owns control socket, per-session state,
    command registry and data connections. Commands are executed by
    :py:meth:`dispatcher` in a dedicated thread, file transfers in transient
    threads, so `ABOR` and `STAT` can be served while transferring.

    :param server: server which accepted connection
    :type server: :py:class:`embedftp.Server`

    :param sock: accepted control socket
    :type sock: :py:class:`socket.socket`

    :param address: remote address
    :type address: :py:class:`tuple`
    """

    def __init__(self, server: "Server", sock: socket.socket, address: tuple[Any, ...]) -> None:
        self.server = server
        self.client_host, self.client_port = address[:2]
        self.server_host = sock.getsockname()[0]
        self.stream = StreamIO(sock, timeout=server.idle_timeout, block_size=server.block_size)

        self.authenticated = False
        self.username: Union[str, None] = None
        self.file_system: Union["AbstractFileSystem[Any]", None] = None
        self.current_directory: Any = None
        self.ascii = True
        self.rename_from: Any = None
        self.restart_offset = 0
        self.protection = ProtectionLevel.CLEAR
        self.passive_server: Union[socket.socket, None] = None
        self.active_address: Union[tuple[str, int], None] = None
        self.acquired = False
        self.last_activity = time.monotonic()

        self.commands: dict[str, CommandInfo] = {}
        self.site_commands: dict[str, CommandInfo] = {}
        self.features: list[str] = []
        self.options: dict[str, str] = {}

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False
        self._aborting = False
        self._bytes_transferred = 0
        self._response_sent = False
        self._data_connections: set[DataConnection] = set()
        self._accepting: set[socket.socket] = set()
        self._transfers: set[threading.Thread] = set()
        self.thread = threading.Thread(
            target=self.dispatcher,
            name=f"embedftp-connection-{self.client_host}:{self.client_port}",
            daemon=True,
        )

        self.connection_commands = ConnectionCommands()
        self.connection_commands.register(self)
        self.file_commands = FileCommands()
        self.file_commands.register(self)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.client_host!r}, {self.client_port!r})"

    @property
    def is_secure(self) -> bool:
        return self.stream.is_secure

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    @property
    def bytes_transferred(self) -> int:
        with self._lock:
            return self._bytes_transferred

    @property
    def has_data_target(self) -> bool:
        return self.passive_server is not None or self.active_address is not None

    @property
    def transferring(self) -> bool:
        with self._lock:
            return bool(self._transfers)

    def add_transferred(self, count: int) -> None:
        with self._lock:
            self._bytes_transferred += count
        self.last_activity = time.monotonic()

    # registry

    def register_command(
        self,
        names: Union[str, Sequence[str]],
        help: str,
        command: Callable[..., None],
        *,
        needs_auth: bool = True,
        arguments: Arguments = Arguments.REQUIRED,
    ) -> None:
        """
        Register command (or aliases) for this session, replacing existing
        ones with same name.

        :param names: command name or names, case-insensitive
        :type names: :py:class:`str` or sequence of :py:class:`str`

        :param help: help string for `HELP` command
        :type help: :py:class:`str`

        :param command: callable receiving session and argument, shape of
            argument defined by `arguments`
        :type command: :py:func:`callable`

        :param needs_auth: command is allowed only for authenticated users
        :type needs_auth: :py:class:`bool`

        :param arguments: :py:attr:`Arguments.REQUIRED` - raw non-empty
            argument string, :py:attr:`Arguments.NONE` - no argument,
            :py:attr:`Arguments.LIST` - whitespace-separated list
        :type arguments: :py:class:`embedftp.Arguments`
        """
        info = CommandInfo(ADAPTERS[arguments](command), help, needs_auth)
        for name in wrap_with_container(names):
            self.commands[name.lower()] = info

    def register_site_command(
        self,
        names: Union[str, Sequence[str]],
        help: str,
        command: Callable[..., None],
        *,
        arguments: Arguments = Arguments.REQUIRED,
    ) -> None:
        info = CommandInfo(ADAPTERS[arguments](command), help, True)
        for name in wrap_with_container(names):
            self.site_commands[name.lower()] = info

    def register_feature(self, feature: str) -> None:
        if feature not in self.features:
            self.features.append(feature)

    def register_option(self, name: str, default: str) -> None:
        self.options[name.upper()] = default

    def get_option(self, name: str) -> str:
        return self.options[name.upper()]

    # wire

    def response(self, code: int, message: str = "") -> None:
        """
        Write reply. Message starting with ``-`` is written right after
        code, which makes it first line of multi-line reply.

        :param code: reply code
        :type code: :py:class:`int`

        :param message: reply text, may contain line breaks
        :type message: :py:class:`str`
        """
        message = message or "Unknown"
        if message.startswith("-"):
            line = f"{code}{message}"
        else:
            line = f"{code} {message}"
        logger.debug(line)
        if threading.current_thread() is self.thread:
            self._response_sent = True
        self.stream.write((line + END_OF_LINE).encode(encoding=self.server.encoding))

    def multiline_response(self, code: int, head: str, lines: Sequence[str], tail: str) -> None:
        body = "".join(f"{END_OF_LINE} {line}" for line in lines)
        self.response(code, f"-{head}{body}")
        self.response(code, tail)

    # dispatch

    def start(self) -> None:
        self.thread.start()

    def dispatcher(self) -> None:
        """
        Session main loop, runs in :py:attr:`thread`.
        """
        logger.info("new connection from %s:%s", self.client_host, self.client_port)
        try:
            if self.server.ssl is not None and self.server.implicit_ssl:
                self.stream.start_tls(self.server.ssl)
            self.greeting()
            while not self.stopped:
                try:
                    line = self.stream.readline()
                except socket.timeout:
                    idle = time.monotonic() - self.last_activity
                    if self.transferring and idle >= self.server.idle_timeout:
                        logger.info("idle timeout for %s:%s", self.client_host, self.client_port)
                        break
                    continue
                except errors.ResponseError as exc:
                    logger.info("bad line from %s:%s: %s", self.client_host, self.client_port, exc)
                    self.response(exc.code, exc.message)
                    break
                if not line:
                    break
                self.process(line)
        except OSError as exc:
            if not self.stopped:
                logger.info("connection from %s:%s failed: %r", self.client_host, self.client_port, exc)
        except Exception:
            logger.exception("dispatcher caught exception")
        finally:
            self.close()
            logger.info("closing connection from %s:%s", self.client_host, self.client_port)

    def greeting(self) -> None:
        if not self.server.available_connections.acquire():
            self.response(421, "Too many connections")
            self.stop()
            return
        self.acquired = True
        authenticator = self.server.authenticator
        if not authenticator.accepts_host(self, self.client_host):
            self.response(421, "Host not allowed")
            self.stop()
        elif authenticator.needs_username(self):
            self.response(220, "Waiting for authentication...")
        elif self.authenticate(None, None):
            self.response(230, "Ready!")
        else:
            self.response(421, "Authentication failed")
            self.stop()

    def authenticate(self, username: Union[str, None], password: Union[str, None]) -> bool:
        """
        Ask authenticator for file system of the user. On success the
        session becomes authenticated and current directory is set to root.
        """
        try:
            file_system = self.server.authenticator.authenticate(self, self.client_host, username, password)
        except errors.AuthenticationError as exc:
            logger.info("authentication of %r from %s failed: %s", username, self.client_host, exc)
            return False
        self.file_system = file_system
        self.current_directory = file_system.root
        self.authenticated = True
        logger.info("%r logged in from %s:%s", username, self.client_host, self.client_port)
        return True

    def reinitialize(self) -> None:
        self.authenticated = False
        self.username = None
        self.file_system = None
        self.current_directory = None
        self.rename_from = None
        self.restart_offset = 0

    def process(self, line: bytes) -> None:
        self.last_activity = time.monotonic()
        try:
            text = line.decode(encoding=self.server.encoding).rstrip("\r\n")
        except UnicodeDecodeError:
            self.response(501, "Can't decode command")
            return
        if not text:
            return
        name, _, argument = text.partition(" ")
        command = name.lower()
        if command == "pass":
            logger.debug("PASS *")
        else:
            logger.debug(text)
        info = self.commands.get(command)
        if info is None:
            self.response(502, "Unknown command")
            return
        self.process_command(info, argument)

    def process_command(self, info: CommandInfo, argument: str) -> None:
        if info.needs_auth and not self.authenticated:
            self.response(530, "Needs authentication")
            return
        self._response_sent = False
        try:
            info.command(self, argument)
        except Exception as exc:
            self.response(*error_to_reply(exc))
        if not self._response_sent:
            self.response(200, "Done")

    def get_status(self) -> list[str]:
        if self.username is None:
            login = "Logged in anonymously"
        else:
            login = f"Logged in as {self.username}"
        return [
            f"Connected from {self.client_host} ({self.client_host})",
            login,
            f"TYPE: {'ASCII' if self.ascii else 'Binary'}, STRUcture: File, MODE: Stream",
            f"Total bytes transferred for session: {self.bytes_transferred}",
        ]

    # data channel

    def create_passive_server(self) -> int:
        """
        Start single-use passive listener, replacing previous data target.

        :return: listening port
        :rtype: :py:class:`int`
        """
        self.clear_data_target()
        family = socket.AF_INET6 if ":" in self.server_host else socket.AF_INET
        listener = socket.create_server((self.server_host, 0), family=family, backlog=5)
        with self._lock:
            self.passive_server = listener
        return listener.getsockname()[1]

    def set_active_address(self, host: str, port: int) -> None:
        self.clear_data_target()
        with self._lock:
            self.active_address = (host, port)

    def clear_data_target(self) -> None:
        with self._lock:
            listener, self.passive_server = self.passive_server, None
            self.active_address = None
        if listener is not None:
            listener.close()

    def _connect(self) -> socket.socket:
        timeout = self.server.data_connection_timeout
        with self._lock:
            listener, self.passive_server = self.passive_server, None
            address = self.active_address
            if listener is not None:
                self._accepting.add(listener)
        if listener is not None:
            try:
                listener.settimeout(timeout)
                sock, _ = listener.accept()
            finally:
                with self._lock:
                    self._accepting.discard(listener)
                listener.close()
        elif address is not None:
            sock = socket.create_connection(address, timeout=timeout)
        else:
            raise errors.ResponseError(425, "Use PORT or PASV first")
        if self.protection is ProtectionLevel.PRIVATE:
            try:
                sock.settimeout(timeout)
                sock = self.server.ssl.wrap_socket(sock, server_side=True)  # type: ignore[union-attr]
            except Exception:
                sock.close()
                raise
        return sock

    def open_data_connection(self) -> DataConnection:
        try:
            sock = self._connect()
        except OSError as exc:
            logger.warning("can't open data connection for %s:%s: %r", self.client_host, self.client_port, exc)
            raise errors.ResponseError(425, "Can't open data connection") from exc
        return DataConnection(
            sock,
            timeout=self.server.data_connection_timeout,
            block_size=self.server.block_size,
        )

    @contextmanager
    def data_connection(self) -> Iterator[DataConnection]:
        """
        Context manager, opens data connection from current data target and
        always closes it. Raises :py:class:`embedftp.DataConnectionError`
        when connection was aborted.
        """
        stream = self.open_data_connection()
        with self._lock:
            self._data_connections.add(stream)
            aborting = self._aborting
        if aborting:
            stream.abort()
        try:
            yield stream
        finally:
            with self._lock:
                self._data_connections.discard(stream)
            stream.close()
        if stream.aborted:
            raise errors.DataConnectionError("Transfer aborted")

    def abort_transfers(self) -> None:
        """
        Close all data connections and passive listeners, wait for transfer
        threads to report. Data connections opened while aborting are
        aborted right away.
        """
        with self._lock:
            self._aborting = True
            streams = list(self._data_connections)
            listeners = list(self._accepting)
            transfers = list(self._transfers)
        try:
            self.clear_data_target()
            for stream in streams:
                stream.abort()
            for listener in listeners:
                shutdown_socket(listener)
            for thread in transfers:
                if thread is not threading.current_thread():
                    thread.join(self.server.data_connection_timeout)
        finally:
            with self._lock:
                self._aborting = False

    def send_data(self, data: bytes) -> None:
        with self.data_connection() as stream:
            stream.write(data)
            self.add_transferred(len(data))

    def _skip_ascii(self, source: BinaryIO, offset: int) -> tuple[bytes, bytes, bytes]:
        """
        Skip `offset` bytes of ascii representation of `source`.

        :return: (wire bytes left from last skipped character, unsent part
            of last read block, last read byte)
        """
        skipped = 0
        previous = b""
        while skipped < offset:
            block = source.read(self.server.block_size)
            if not block:
                raise OSError("Couldn't skip this file. End of the file was reached")
            for index in range(len(block)):
                byte = block[index : index + 1]
                skipped += 2 if byte == b"\n" and previous != b"\r" else 1
                previous = byte
                if skipped >= offset:
                    prefix = b"\n" if skipped > offset else b""
                    return prefix, block[index + 1 :], previous
        return b"", b"", previous

    def send_stream(self, source: BinaryIO, skip: int = 0) -> None:
        """
        Send file stream to data connection. In ascii mode ``\\n`` is sent as
        ``\\r\\n`` and `skip` counts bytes of this representation.

        :param source: file stream, closed after transfer
        :type source: :py:class:`io.BufferedIOBase`

        :param skip: ascii restart offset
        :type skip: :py:class:`int`
        """
        block_size = self.server.block_size
        with source:
            encoder = AsciiEncoder() if self.ascii else None
            with self.data_connection() as stream:
                prefix = block = b""
                if encoder is not None and skip:
                    prefix, block, encoder.last = self._skip_ascii(source, skip)
                if prefix:
                    stream.write(prefix)
                    self.add_transferred(len(prefix))
                block = block or source.read(block_size)
                while block:
                    data = block if encoder is None else encoder.encode(block)
                    stream.write(data)
                    self.add_transferred(len(data))
                    block = source.read(block_size)

    def receive_stream(self, destination: BinaryIO) -> None:
        """
        Receive data connection stream into file. In ascii mode ``\\r\\n`` is
        stored as ``\\n``.

        :param destination: file stream, closed after transfer
        :type destination: :py:class:`io.BufferedIOBase`
        """
        with destination:
            decoder = AsciiDecoder() if self.ascii else None
            with self.data_connection() as stream:
                while True:
                    block = stream.read(self.server.block_size)
                    if not block:
                        break
                    self.add_transferred(len(block))
                    destination.write(block if decoder is None else decoder.decode(block))
            if decoder is not None:
                destination.write(decoder.flush())

    def start_transfer(self, function: Callable[..., None], *args: Any, message: str) -> None:
        """
        Run `function` in transfer thread, reply ``226`` with `message` on
        success or mapped error reply on failure.
        """
        thread = threading.Thread(
            target=self._transfer,
            args=(function, args, message),
            name=f"embedftp-transfer-{self.client_host}:{self.client_port}",
            daemon=True,
        )
        with self._lock:
            self._transfers.add(thread)
        thread.start()

    def _transfer(self, function: Callable[..., None], args: tuple[Any, ...], message: str) -> None:
        try:
            function(*args)
        except Exception as exc:
            code, info = (426, "Transfer aborted") if self._aborting else error_to_reply(exc)
            if code == 426:
                logger.warning("transfer for %s:%s aborted", self.client_host, self.client_port)
            self._transfer_response(code, info)
        else:
            self._transfer_response(226, message)
        finally:
            with self._lock:
                self._transfers.discard(threading.current_thread())

    def _transfer_response(self, code: int, message: str) -> None:
        try:
            self.response(code, message)
        except OSError as exc:
            logger.debug("can't send transfer result to %s:%s: %r", self.client_host, self.client_port, exc)

    # lifecycle

    def stop(self) -> None:
        """
        Finish session after current command.
        """
        self._stop.set()

    def close(self) -> None:
        """
        Abort transfers, close all sockets and unregister from server. Safe
        to call from any thread, more than once.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        self.abort_transfers()
        self.stream.close()
        if self.acquired:
            self.server.available_connections.release()
        self.server.connection_closed(self)
