import abc
import contextlib
import hashlib
import hmac
import logging
import socket
import ssl
import sys
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Union

from . import errors
from .common import DEFAULT_BLOCK_SIZE, DEFAULT_DATA_CONNECTION_TIMEOUT, DEFAULT_IDLE_TIMEOUT
from .connection import Connection
from .pathio import AbstractFileSystem, NativeFileSystem

if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


__all__ = (
    "User",
    "AbstractAuthenticator",
    "NoOpAuthenticator",
    "MemoryAuthenticator",
    "AvailableConnections",
    "ServerListener",
    "Server",
)


logger = logging.getLogger(__name__)


class User:
    """
    User description.

    :param login: user login, :py:class:`None` matches any login
    :type login: :py:class:`str` or :py:class:`None`

    :param password: user password, :py:class:`None` for login without
        password
    :type password: :py:class:`str` or :py:class:`None`

    :param file_system: file system served to this user, if not set
        :py:class:`embedftp.NativeFileSystem` over `base_path` is used
    :type file_system: :py:class:`embedftp.AbstractFileSystem`

    :param base_path: real user path for native file system
    :type base_path: :py:class:`str` or :py:class:`pathlib.Path`

    :param read_only: reject modifications of native file system
    :type read_only: :py:class:`bool`

    :param password_md5: hex MD5 digest of password, used instead of
        `password`
    :type password_md5: :py:class:`str` or :py:class:`None`
    """

    def __init__(
        self,
        login: Union[str, None] = None,
        password: Union[str, None] = None,
        *,
        file_system: Union[AbstractFileSystem[Any], None] = None,
        base_path: Union[str, Path] = Path("."),
        read_only: bool = False,
        password_md5: Union[str, None] = None,
    ) -> None:
        self.login = login
        self.password = password
        self.password_md5 = password_md5.lower() if password_md5 else None
        if file_system is None:
            file_system = NativeFileSystem(base_path, read_only=read_only)
        self.file_system = file_system

    @classmethod
    def from_md5(cls, login: str, password_md5: str, **kwargs: Any) -> "User":
        return cls(login, password_md5=password_md5, **kwargs)

    @property
    def needs_password(self) -> bool:
        return self.password is not None or self.password_md5 is not None

    def check_password(self, password: Union[str, None]) -> bool:
        if not self.needs_password:
            return True
        if password is None:
            return False
        if self.password_md5 is not None:
            digest = hashlib.md5(password.encode()).hexdigest()
            return hmac.compare_digest(digest, self.password_md5)
        return hmac.compare_digest(password, self.password)  # type: ignore[arg-type]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.login!r}, file_system={self.file_system!r})"


class AbstractAuthenticator(abc.ABC):
    """
    Abstract authenticator. Decides if a session needs credentials and
    resolves the file system of authenticated user.
    """

    @abc.abstractmethod
    def needs_username(self, connection: Connection) -> bool:
        """
        Should session ask for username. If not, user is authenticated right
        after connection with empty credentials.

        :param connection: session
        :type connection: :py:class:`embedftp.Connection`

        :rtype: :py:class:`bool`
        """

    @abc.abstractmethod
    def needs_password(self, connection: Connection, username: str, host: Union[str, None] = None) -> bool:
        """
        Should session ask for password of `username`.

        :rtype: :py:class:`bool`
        """

    @abc.abstractmethod
    def authenticate(
        self,
        connection: Connection,
        host: Union[str, None],
        username: Union[str, None],
        password: Union[str, None],
    ) -> AbstractFileSystem[Any]:
        """
        Check credentials.

        :param host: remote host of session
        :param username: login or :py:class:`None`
        :param password: password or :py:class:`None`

        :return: file system for this user
        :rtype: :py:class:`embedftp.AbstractFileSystem`

        :raises embedftp.AuthenticationError: if credentials are rejected
        """

    def accepts_host(self, connection: Connection, host: str) -> bool:
        """
        Can session from `host` proceed at all.

        :rtype: :py:class:`bool`
        """
        return True


class NoOpAuthenticator(AbstractAuthenticator):
    """
    Authenticates everybody without credentials.

    :param file_system: file system served to every user
    :type file_system: :py:class:`embedftp.AbstractFileSystem`
    """

    def __init__(self, file_system: AbstractFileSystem[Any]) -> None:
        self.file_system = file_system

    def needs_username(self, connection: Connection) -> bool:
        return False

    def needs_password(self, connection: Connection, username: str, host: Union[str, None] = None) -> bool:
        return False

    def authenticate(
        self,
        connection: Connection,
        host: Union[str, None],
        username: Union[str, None],
        password: Union[str, None],
    ) -> AbstractFileSystem[Any]:
        return self.file_system


class MemoryAuthenticator(AbstractAuthenticator):
    """
    Authenticator that keeps predefined set of users in memory. User with
    login :py:class:`None` is used for any unknown login.

    :param users: container of users
    :type users: :py:class:`list`, :py:class:`tuple`, etc. of
        :py:class:`embedftp.User`

    :param hosts: allowed remote hosts, :py:class:`None` allows any
    :type hosts: collection of :py:class:`str` or :py:class:`None`
    """

    def __init__(self, users: Sequence[User], *, hosts: Union[Iterable[str], None] = None) -> None:
        self.users = users
        self.hosts = None if hosts is None else frozenset(hosts)

    def get_user(self, login: Union[str, None]) -> Union[User, None]:
        user = None
        for u in self.users:
            if u.login is None and user is None:
                user = u
            elif u.login == login:
                return u
        return user

    def accepts_host(self, connection: Connection, host: str) -> bool:
        return self.hosts is None or host in self.hosts

    def needs_username(self, connection: Connection) -> bool:
        return True

    def needs_password(self, connection: Connection, username: str, host: Union[str, None] = None) -> bool:
        user = self.get_user(username)
        return user is None or user.needs_password

    def authenticate(
        self,
        connection: Connection,
        host: Union[str, None],
        username: Union[str, None],
        password: Union[str, None],
    ) -> AbstractFileSystem[Any]:
        user = self.get_user(username)
        if user is None:
            raise errors.AuthenticationError(f"no such username {username!r}")
        if not user.check_password(password):
            raise errors.AuthenticationError(f"wrong password for {username!r}")
        return user.file_system


class AvailableConnections:
    """
    Thread safe semaphore-like object. Have no blocks, acquire fails when
    there is no free slot. If value is :py:class:`None` have no limits.

    :param value:
    :type value: :py:class:`int` or :py:class:`None`
    """

    def __init__(self, value: Union[int, None] = None) -> None:
        self.value = self.maximum_value = value
        self._lock = threading.Lock()

    def locked(self) -> bool:
        """
        Returns True if semaphore-like can not be acquired.

        :rtype: :py:class:`bool`
        """
        return self.value == 0

    def acquire(self) -> bool:
        """
        Acquire, decrementing the internal counter by one.

        :return: acquired or not
        :rtype: :py:class:`bool`
        """
        with self._lock:
            if self.value is None:
                return True
            if self.value == 0:
                return False
            self.value -= 1
            return True

    def release(self) -> None:
        """
        Release, incrementing the internal counter by one.
        """
        with self._lock:
            if self.value is not None and self.maximum_value is not None:
                self.value += 1
                if self.value > self.maximum_value:
                    raise ValueError("Too many releases")


class ServerListener:
    """
    Base class for connection events receivers. Callbacks are called from
    acceptor and session threads.
    """

    def on_connected(self, connection: Connection) -> None:
        pass

    def on_disconnected(self, connection: Connection) -> None:
        pass


class Server:
    """
    FTP server. Every control connection is served by its own thread.

    :param authenticator: authenticator for sessions
    :type authenticator: :py:class:`embedftp.AbstractAuthenticator`

    :param idle_timeout: timeout for control socket read operations, session
        is closed on timeout only while transferring
    :type idle_timeout: :py:class:`float`, :py:class:`int` or
        :py:class:`None`

    :param block_size: bytes count for socket read operations
    :type block_size: :py:class:`int`

    :param data_connection_timeout: timeout for data connection establishing
        and data socket read and write operations
    :type data_connection_timeout: :py:class:`float`, :py:class:`int` or
        :py:class:`None`

    :param maximum_connections: Maximum command connections per server
    :type maximum_connections: :py:class:`int`

    :param ipv4_pasv_forced_response_address: external IPv4 address for passive
        connections
    :type ipv4_pasv_forced_response_address: :py:class:`str` or
        :py:class:`None`

    :param encoding: encoding to use for convertion strings to bytes
    :type encoding: :py:class:`str`

    :param ssl: TLS context for `AUTH TLS` and protected data connections
    :type ssl: :py:class:`ssl.SSLContext`

    :param implicit_ssl: wrap every accepted connection in TLS right away
    :type implicit_ssl: :py:class:`bool`

    :param listeners: connection events receivers
    :type listeners: iterable of :py:class:`embedftp.ServerListener`

    :param connection_factory: session class
    :type connection_factory: :py:class:`embedftp.Connection` subclass
    """

    poll_interval = 0.5

    def __init__(
        self,
        authenticator: AbstractAuthenticator,
        *,
        idle_timeout: Union[float, int, None] = DEFAULT_IDLE_TIMEOUT,
        block_size: int = DEFAULT_BLOCK_SIZE,
        data_connection_timeout: Union[float, int, None] = DEFAULT_DATA_CONNECTION_TIMEOUT,
        maximum_connections: Union[int, None] = None,
        ipv4_pasv_forced_response_address: Union[str, None] = None,
        encoding: str = "utf-8",
        ssl: Union[ssl.SSLContext, None] = None,
        implicit_ssl: bool = False,
        listeners: Iterable[ServerListener] = (),
        connection_factory: type[Connection] = Connection,
    ) -> None:
        if implicit_ssl and ssl is None:
            raise ValueError("implicit_ssl requires ssl context")
        self.authenticator = authenticator
        self.idle_timeout = idle_timeout
        self.block_size = block_size
        self.data_connection_timeout = data_connection_timeout
        self.available_connections = AvailableConnections(maximum_connections)
        self.ipv4_pasv_forced_response_address = ipv4_pasv_forced_response_address
        self.encoding = encoding
        self.ssl = ssl
        self.implicit_ssl = implicit_ssl
        self.connection_factory = connection_factory
        self.listeners = list(listeners)
        self.connections: set[Connection] = set()
        self.socket: Union[socket.socket, None] = None
        self.server_host: Union[str, None] = None
        self.server_port: Union[int, None] = None
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._acceptor: Union[threading.Thread, None] = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def address(self) -> tuple[Union[str, None], Union[int, None]]:
        """
        Server listen socket host and port as :py:class:`tuple`
        """
        return self.server_host, self.server_port

    def add_listener(self, listener: ServerListener) -> None:
        with self._lock:
            self.listeners.append(listener)

    def remove_listener(self, listener: ServerListener) -> None:
        with self._lock:
            self.listeners.remove(listener)

    def _bind(self, host: Union[str, None], port: int) -> None:
        if host is None:
            family, address = socket.AF_INET, ("0.0.0.0", port)
        else:
            family, _, _, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0]
        self.socket = socket.create_server(address, family=family, backlog=50)
        self.socket.settimeout(self.poll_interval)
        self.server_host, self.server_port = self.socket.getsockname()[:2]
        logger.info("serving on %s:%s", self.server_host, self.server_port)

    def listen(self, host: Union[str, None] = None, port: int = 0) -> None:
        """
        Bind and serve in background thread, returns once bound.

        :param host: ip address to bind for listening, IPv4 wildcard if
            :py:class:`None`
        :type host: :py:class:`str`

        :param port: port number to bind for listening, ``0`` for ephemeral
        :type port: :py:class:`int`
        """
        self._bind(host, port)
        self._acceptor = threading.Thread(target=self.serve_forever, name="embedftp-acceptor", daemon=True)
        self._acceptor.start()

    def listen_sync(self, host: Union[str, None] = None, port: int = 0) -> None:
        """
        Bind and serve in current thread until :py:meth:`close`.
        """
        self._bind(host, port)
        self.serve_forever()

    def run(self, host: Union[str, None] = None, port: int = 0) -> None:
        """
        Single entrypoint to bind, serve and close.
        """
        try:
            self.listen_sync(host, port)
        finally:
            self.close()

    def serve_forever(self) -> None:
        if self.socket is None:
            raise RuntimeError("server is not bound")
        while not self._closed.is_set():
            try:
                sock, address = self.socket.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._closed.is_set():
                    break
                logger.exception("acceptor caught exception")
                continue
            self.accept(sock, address)

    def accept(self, sock: socket.socket, address: tuple[Any, ...]) -> None:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_OOBINLINE, 1)
        connection = self.connection_factory(self, sock, address)
        with self._lock:
            self.connections.add(connection)
            listeners = list(self.listeners)
        for listener in listeners:
            try:
                listener.on_connected(connection)
            except Exception:
                logger.exception("listener caught exception")
        connection.start()

    def connection_closed(self, connection: Connection) -> None:
        with self._lock:
            if connection not in self.connections:
                return
            self.connections.discard(connection)
            listeners = list(self.listeners)
        for listener in listeners:
            try:
                listener.on_disconnected(connection)
            except Exception:
                logger.exception("listener caught exception")

    def close(self) -> None:
        """
        Shutdown the server and close all connections.
        """
        self._closed.set()
        if self.socket is not None:
            with contextlib.suppress(OSError):
                self.socket.shutdown(socket.SHUT_RDWR)
        if self._acceptor is not None and self._acceptor is not threading.current_thread():
            self._acceptor.join()
        with self._lock:
            connections = list(self.connections)
        for connection in connections:
            connection.close()
        if self.socket is not None:
            self.socket.close()
        logger.info("server on %s:%s closed", self.server_host, self.server_port)
