import enum
import functools
import ipaddress
import logging
import socket
import stat
import sys
import time
import uuid
from collections.abc import Callable, Sequence
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, NamedTuple, TypeVar, Union

if sys.version_info >= (3, 11):
    from typing import Concatenate, ParamSpec
else:
    from typing_extensions import Concatenate, ParamSpec

from . import errors
from .common import END_OF_LINE, HALF_OF_YEAR_IN_SECONDS, format_mdtm, parse_mdtm, setlocale

if TYPE_CHECKING:
    from .connection import Connection
    from .pathio import AbstractFileSystem


__all__ = (
    "Arguments",
    "ProtectionLevel",
    "CommandInfo",
    "argument_required",
    "no_arguments",
    "arguments_list",
    "ConnectionConditions",
    "PathConditions",
    "ConnectionCommands",
    "FileCommands",
)


logger = logging.getLogger(__name__)


Arguments = enum.Enum("Arguments", "REQUIRED NONE LIST")


class ProtectionLevel(enum.Enum):
    CLEAR = "C"
    PRIVATE = "P"


Command = Callable[["Connection", str], None]


class CommandInfo(NamedTuple):
    """
    Registered command: uniform handler, help string and authentication
    requirement.
    """

    command: Command
    help: str
    needs_auth: bool


def argument_required(f: Callable[["Connection", str], None]) -> Command:
    """
    Command adapter, rejects empty argument with ``501``.
    """

    @functools.wraps(f)
    def wrapper(connection: "Connection", argument: str) -> None:
        if not argument:
            raise errors.ResponseError(501, "Missing parameters")
        f(connection, argument)

    return wrapper


def no_arguments(f: Callable[["Connection"], None]) -> Command:
    """
    Command adapter, argument is ignored.
    """

    @functools.wraps(f)
    def wrapper(connection: "Connection", argument: str) -> None:
        f(connection)

    return wrapper


def arguments_list(f: Callable[["Connection", list[str]], None]) -> Command:
    """
    Command adapter, argument is split by whitespace.
    """

    @functools.wraps(f)
    def wrapper(connection: "Connection", argument: str) -> None:
        f(connection, argument.split())

    return wrapper


ADAPTERS: dict[Any, Callable[[Any], Command]] = {
    Arguments.REQUIRED: argument_required,
    Arguments.NONE: no_arguments,
    Arguments.LIST: arguments_list,
}


ConnectionConditionsParamSpec = ParamSpec("ConnectionConditionsParamSpec")
ConnectionConditionsReturnType = TypeVar("ConnectionConditionsReturnType")


class ConnectionConditions:
    """
    Decorator for checking `connection` attributes are set before command
    runs.

    :param fields: * `ConnectionConditions.secure_required` - control connection is
          TLS-protected
        * `ConnectionConditions.rename_from_required` - user already told
          filename for rename

    :param fail_code: reply code on failure
    :type fail_code: :py:class:`int`

    :param fail_info: reply text on failure. If :py:class:`None`, then use
        default string
    :type fail_info: :py:class:`str`

    ::

        >>> @ConnectionConditions(
        ...     ConnectionConditions.secure_required,
        ...     fail_code=503)
        ... def foo(self, connection, argument):
        ...     ...
    """

    secure_required = ("is_secure", "enable TLS/SSL first")
    rename_from_required = ("rename_from", "use RNFR first")

    def __init__(
        self,
        *fields: tuple[str, str],
        fail_code: int = 503,
        fail_info: Union[str, None] = None,
    ) -> None:
        self.fields = fields
        self.fail_code = fail_code
        self.fail_info = fail_info

    def __call__(
        self,
        f: Callable[
            Concatenate[Any, "Connection", ConnectionConditionsParamSpec],
            ConnectionConditionsReturnType,
        ],
    ) -> Callable[
        Concatenate[Any, "Connection", ConnectionConditionsParamSpec],
        ConnectionConditionsReturnType,
    ]:
        @functools.wraps(f)
        def wrapper(
            cls: Any,
            connection: "Connection",
            *args: ConnectionConditionsParamSpec.args,
            **kwargs: ConnectionConditionsParamSpec.kwargs,
        ) -> ConnectionConditionsReturnType:
            for name, message in self.fields:
                if not getattr(connection, name):
                    info = self.fail_info or f"Bad sequence of commands ({message})"
                    raise errors.ResponseError(self.fail_code, info)
            return f(cls, connection, *args, **kwargs)

        return wrapper


PathConditionsParamSpec = ParamSpec("PathConditionsParamSpec")
PathConditionsReturnType = TypeVar("PathConditionsReturnType")


class PathConditions:
    """
    Decorator for checking paths, fails with ``550``. Available options:

    * `path_must_exists`
    * `path_must_be_dir`
    * `path_must_be_file`

    ::

        >>> @PathConditions(
        ...     PathConditions.path_must_exists,
        ...     PathConditions.path_must_be_dir)
        ... def foo(self, connection, path):
        ...     ...
    """

    path_must_exists = ("exists", False, "File not found")
    path_must_be_dir = ("is_dir", False, "Not a directory")
    path_must_be_file = ("is_dir", True, "Not a file")

    def __init__(self, *conditions: tuple[str, bool, str]) -> None:
        self.conditions = conditions

    def __call__(
        self,
        f: Callable[
            Concatenate["FileCommands", "Connection", str, PathConditionsParamSpec],
            PathConditionsReturnType,
        ],
    ) -> Callable[
        Concatenate["FileCommands", "Connection", str, PathConditionsParamSpec],
        PathConditionsReturnType,
    ]:
        @functools.wraps(f)
        def wrapper(
            cls: "FileCommands",
            connection: "Connection",
            path: str,
            *args: PathConditionsParamSpec.args,
            **kwargs: PathConditionsParamSpec.kwargs,
        ) -> PathConditionsReturnType:
            file = cls.get_file(connection, path)
            for name, fail, message in self.conditions:
                if getattr(connection.file_system, name)(file) == fail:
                    raise errors.ResponseError(550, message)
            return f(cls, connection, path, *args, **kwargs)

        return wrapper


def _parse_host_port(numbers: Sequence[int]) -> int:
    if len(numbers) != 2 or not all(0 <= n <= 255 for n in numbers):
        raise ValueError(f"bad port bytes {numbers!r}")
    return numbers[0] << 8 | numbers[1]


class ConnectionCommands:
    """
    Login, transfer parameters, data channel and TLS negotiation commands.
    """

    features = (
        "base",
        "secu",
        "hist",
        "nat6",
        "UTF8",
        "TYPE A;AN;AT;AC;L;I",
        "AUTH TLS",
        "PBSZ",
        "PROT",
        "EPSV",
        "EPRT",
    )

    def register(self, connection: "Connection") -> None:
        r = connection.register_command
        r("SITE", "SITE <command> [arguments]", self.site)
        r("FEAT", "FEAT", self.feat, needs_auth=False, arguments=Arguments.NONE)
        r("OPTS", "OPTS <option> [value]", self.opts, arguments=Arguments.LIST)
        r("NOOP", "NOOP", self.noop, needs_auth=False, arguments=Arguments.NONE)
        r("HELP", "HELP [command]", self.help, needs_auth=False, arguments=Arguments.LIST)
        r("QUIT", "QUIT", self.quit, needs_auth=False, arguments=Arguments.NONE)
        r("REIN", "REIN", self.rein, needs_auth=False, arguments=Arguments.NONE)
        r("USER", "USER <username>", self.user, needs_auth=False)
        r("PASS", "PASS <password>", self.pass_, needs_auth=False)
        r("ACCT", "ACCT <info>", self.acct, needs_auth=False, arguments=Arguments.LIST)
        r("SYST", "SYST", self.syst, arguments=Arguments.NONE)
        r("PASV", "PASV", self.pasv, arguments=Arguments.NONE)
        r("PORT", "PORT <h1,h2,h3,h4,p1,p2>", self.port)
        r("LPSV", "LPSV", self.lpsv, arguments=Arguments.NONE)
        r("LPRT", "LPRT <af,hal,h1,...,pal,p1,...>", self.lprt)
        r("EPSV", "EPSV [protocol]", self.epsv, arguments=Arguments.LIST)
        r("EPRT", "EPRT <|protocol|address|port|>", self.eprt)
        r("ABOR", "ABOR", self.abor, arguments=Arguments.NONE)
        r("TYPE", "TYPE <type>", self.type)
        r("STRU", "STRU <structure>", self.stru)
        r("MODE", "MODE <mode>", self.mode)
        r("STAT", "STAT", self.stat, arguments=Arguments.NONE)
        r("AUTH", "AUTH <mechanism>", self.auth, needs_auth=False)
        r("PBSZ", "PBSZ <size>", self.pbsz, needs_auth=False)
        r("PROT", "PROT <level>", self.prot, needs_auth=False)
        for feature in self.features:
            connection.register_feature(feature)
        connection.register_option("UTF8", "ON")

    def site(self, connection: "Connection", argument: str) -> None:
        name, _, rest = argument.partition(" ")
        info = connection.site_commands.get(name.lower())
        if info is None:
            raise errors.ResponseError(504, "Unknown site command")
        connection.process_command(info, rest)

    def feat(self, connection: "Connection") -> None:
        connection.multiline_response(211, "Supported Features:", connection.features, "End")

    def opts(self, connection: "Connection", args: list[str]) -> None:
        """
        ``OPTS name`` shows option value, ``OPTS name value`` updates it.
        """
        if not args:
            raise errors.ResponseError(501, "Missing parameters")
        name = args[0].upper()
        if name not in connection.options:
            raise errors.ResponseError(501, "No option found")
        if len(args) > 1:
            connection.options[name] = args[1].upper()
            connection.response(200, "Option updated")
        else:
            connection.response(200, connection.options[name])

    def noop(self, connection: "Connection") -> None:
        connection.response(200, "OK")

    def help(self, connection: "Connection", args: list[str]) -> None:
        if not args:
            names = sorted(name.upper() for name in connection.commands)
            lines = [" ".join(names[i : i + 8]) for i in range(0, len(names), 8)]
            connection.multiline_response(214, "The following commands are recognized:", lines, "Help OK")
            return
        if args[0].lower() == "site" and len(args) > 1:
            info = connection.site_commands.get(args[1].lower())
            text = None if info is None else f"SITE {info.help}"
        else:
            info = connection.commands.get(args[0].lower())
            text = None if info is None else info.help
        if text is None:
            raise errors.ResponseError(502, "Unknown command")
        connection.response(214, text)

    def quit(self, connection: "Connection") -> None:
        connection.response(221, "Closing connection...")
        connection.stop()

    def rein(self, connection: "Connection") -> None:
        connection.reinitialize()
        connection.response(220, "Ready for a new user")

    def user(self, connection: "Connection", username: str) -> None:
        if connection.authenticated:
            connection.response(230, "Logged in!")
            return
        connection.username = username
        authenticator = connection.server.authenticator
        if authenticator.needs_password(connection, username, connection.client_host):
            connection.response(331, "Needs a password")
        elif connection.authenticate(username, None):
            connection.response(230, "Logged in!")
        else:
            connection.response(530, "Authentication failed")
            connection.stop()

    def pass_(self, connection: "Connection", password: str) -> None:
        if connection.authenticated:
            connection.response(230, "Logged in!")
            return
        if connection.username is None and connection.server.authenticator.needs_username(connection):
            raise errors.ResponseError(503, "Bad sequence of commands (use USER first)")
        if connection.authenticate(connection.username, password):
            connection.response(230, "Logged in!")
        else:
            connection.response(530, "Authentication failed")
            connection.stop()

    def acct(self, connection: "Connection", args: list[str]) -> None:
        connection.response(530, "Account information is not supported")

    def syst(self, connection: "Connection") -> None:
        connection.response(215, "UNIX Type: L8")

    @staticmethod
    def _get_passive_address(connection: "Connection") -> Union[ipaddress.IPv4Address, ipaddress.IPv6Address]:
        forced = connection.server.ipv4_pasv_forced_response_address
        if forced:
            return ipaddress.ip_address(forced)
        address = ipaddress.ip_address(connection.server_host.split("%")[0])
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
            return address.ipv4_mapped
        return address

    def pasv(self, connection: "Connection") -> None:
        address = self._get_passive_address(connection)
        if address.version != 4:
            raise errors.ResponseError(503, "This server started in IPv6 mode (use EPSV)")
        port = connection.create_passive_server()
        numbers = str(address).split(".") + [str(port >> 8), str(port & 0xFF)]
        connection.response(227, f"Enabled Passive Mode ({','.join(numbers)})")

    def lpsv(self, connection: "Connection") -> None:
        address = self._get_passive_address(connection)
        port = connection.create_passive_server()
        numbers = [address.version, len(address.packed), *address.packed, 2, port >> 8, port & 0xFF]
        connection.response(229, f"Enabled Passive Mode ({','.join(map(str, numbers))})")

    def epsv(self, connection: "Connection", args: list[str]) -> None:
        if args and args[0].upper() == "ALL":
            connection.response(200, "EPSV ALL command successful")
            return
        if args and args[0] not in ("1", "2"):
            raise errors.ResponseError(522, "Network protocol not supported, use (1,2)")
        port = connection.create_passive_server()
        connection.response(229, f"Enabled Passive Mode (|||{port}|)")

    def port(self, connection: "Connection", argument: str) -> None:
        try:
            numbers = [int(part) for part in argument.split(",")]
            if len(numbers) != 6 or not all(0 <= n <= 255 for n in numbers[:4]):
                raise ValueError(f"bad address {argument!r}")
            port = _parse_host_port(numbers[4:])
        except ValueError:
            raise errors.ResponseError(501, "Invalid address")
        host = ".".join(map(str, numbers[:4]))
        connection.set_active_address(host, port)
        connection.response(200, "Enabled Active Mode")

    def lprt(self, connection: "Connection", argument: str) -> None:
        try:
            numbers = [int(part) for part in argument.split(",")]
            family, host_length = numbers[:2]
            families = {4: (socket.AF_INET, 4), 6: (socket.AF_INET6, 16)}
            if family not in families or families[family][1] != host_length:
                raise ValueError(f"bad address family {family}")
            host_bytes = numbers[2 : 2 + host_length]
            port_length = numbers[2 + host_length]
            port_bytes = numbers[3 + host_length :]
            if port_length != len(port_bytes):
                raise ValueError(f"bad port length {port_length}")
            host = socket.inet_ntop(families[family][0], bytes(host_bytes))
            port = _parse_host_port(port_bytes)
        except (ValueError, IndexError):
            raise errors.ResponseError(501, "Invalid address")
        connection.set_active_address(host, port)
        connection.response(200, "Enabled Active Mode")

    def eprt(self, connection: "Connection", argument: str) -> None:
        delimiter = argument[0]
        parts = argument.split(delimiter)
        if len(parts) != 5:
            raise errors.ResponseError(501, "Invalid address")
        protocol, host, port_string = parts[1:4]
        if protocol not in ("1", "2"):
            raise errors.ResponseError(522, "Network protocol not supported, use (1,2)")
        try:
            address = ipaddress.ip_address(host)
            port = int(port_string)
            if address.version != (4 if protocol == "1" else 6) or not 0 < port < 65536:
                raise ValueError(f"bad address {argument!r}")
        except ValueError:
            raise errors.ResponseError(501, "Invalid address")
        connection.set_active_address(host, port)
        connection.response(200, "Enabled Active Mode")

    def abor(self, connection: "Connection") -> None:
        connection.abort_transfers()
        connection.response(226, "All transfers were aborted successfully")

    def type(self, connection: "Connection", argument: str) -> None:
        kind = argument.upper()
        if kind.startswith("A"):
            connection.ascii = True
        elif kind.startswith(("L", "I")):
            connection.ascii = False
        else:
            raise errors.ResponseError(500, f"Unknown type {argument}")
        connection.response(200, f"Type set to {kind}")

    def stru(self, connection: "Connection", argument: str) -> None:
        if argument.upper() != "F":
            raise errors.ResponseError(504, f"Structure {argument} is not supported")
        connection.response(200, "The structure type was set to file")

    def mode(self, connection: "Connection", argument: str) -> None:
        if argument.upper() != "S":
            raise errors.ResponseError(504, f"Mode {argument} is not supported")
        connection.response(200, "The mode was set to stream")

    def stat(self, connection: "Connection") -> None:
        lines = connection.get_status()
        if connection.has_data_target:
            connection.response(211, "Sending the status...")
            data = "".join(line + END_OF_LINE for line in lines)
            connection.send_data(data.encode(connection.server.encoding))
            connection.response(211, "Status sent!")
        else:
            connection.multiline_response(211, "Status of the session:", lines, "End")

    def auth(self, connection: "Connection", mechanism: str) -> None:
        if mechanism.upper() not in ("TLS", "TLS-C", "SSL", "TLS-P"):
            raise errors.ResponseError(502, "Unsupported mechanism")
        context = connection.server.ssl
        if context is None:
            raise errors.ResponseError(431, "TLS/SSL is not available")
        if connection.is_secure:
            raise errors.ResponseError(503, "TLS/SSL is already enabled")
        connection.response(234, "Enabling TLS/SSL...")
        try:
            connection.stream.start_tls(context)
        except OSError:
            logger.info("tls handshake with %s:%s failed", connection.client_host, connection.client_port, exc_info=True)
            connection.stop()

    @ConnectionConditions(ConnectionConditions.secure_required)
    def pbsz(self, connection: "Connection", size: str) -> None:
        connection.response(200, "The protection buffer size was set to 0")

    @ConnectionConditions(ConnectionConditions.secure_required)
    def prot(self, connection: "Connection", level: str) -> None:
        level = level.upper()
        if level in ("S", "E"):
            raise errors.ResponseError(521, "Unsupported protection level")
        try:
            connection.protection = ProtectionLevel(level)
        except ValueError:
            raise errors.ResponseError(502, "Unknown protection level")
        connection.response(200, f"Protection level set to {connection.protection.name.lower()}")


class FileCommands:
    """
    File system commands. Paths are resolved with :py:meth:`get_file`
    against current working directory of the connection.
    """

    features = (
        "REST STREAM",
        "MDTM",
        "SIZE",
        "MLST Type*;Size*;Modify*;Perm*;",
        "TVFS",
        "MFMT",
        "MD5",
        "HASH MD5;SHA-1;SHA-256",
    )
    hash_algorithms = ("MD5", "SHA-1", "SHA-256")

    def register(self, connection: "Connection") -> None:
        r = connection.register_command
        r(("CWD", "XCWD"), "CWD <file>", self.cwd)
        r(("CDUP", "XCUP"), "CDUP", self.cdup, arguments=Arguments.NONE)
        r(("PWD", "XPWD"), "PWD", self.pwd, arguments=Arguments.NONE)
        r(("MKD", "XMKD"), "MKD <file>", self.mkd)
        r(("RMD", "XRMD"), "RMD <file>", self.rmd)
        r("DELE", "DELE <file>", self.dele)
        r("RNFR", "RNFR <file>", self.rnfr)
        r("RNTO", "RNTO <file>", self.rnto)
        r("STOR", "STOR <file>", self.stor)
        r("STOU", "STOU [file]", self.stou, arguments=Arguments.LIST)
        r("APPE", "APPE <file>", self.appe)
        r("RETR", "RETR <file>", self.retr)
        r("REST", "REST <bytes>", self.rest)
        r("ALLO", "ALLO <size>", self.allo, arguments=Arguments.LIST)
        r("SMNT", "SMNT <file>", self.smnt, arguments=Arguments.LIST)
        r("LIST", "LIST [file]", self.list_, arguments=Arguments.LIST)
        r("NLST", "NLST [file]", self.nlst, arguments=Arguments.LIST)
        r("MLSD", "MLSD [file]", self.mlsd, arguments=Arguments.LIST)
        r("MLST", "MLST [file]", self.mlst, arguments=Arguments.LIST)
        r("MDTM", "MDTM <file>", self.mdtm)
        r("SIZE", "SIZE <file>", self.size)
        r("MFMT", "MFMT <time> <file>", self.mfmt, arguments=Arguments.LIST)
        r("MD5", "MD5 <file>", self.md5)
        r("HASH", "HASH <file>", self.hash)
        connection.register_site_command("CHMOD", "CHMOD <perm> <file>", self.site_chmod, arguments=Arguments.LIST)
        for feature in self.features:
            connection.register_feature(feature)
        connection.register_option("MLST", "Type;Size;Modify;Perm;")
        connection.register_option("HASH", "MD5")

    @staticmethod
    def get_file(connection: "Connection", path: str) -> Any:
        """
        Resolve user path into file system handle: ``..`` and ``...`` are
        parent of current directory, absolute paths start from root.

        :param connection: current session
        :type connection: :py:class:`embedftp.Connection`

        :param path: received path from user
        :type path: :py:class:`str`
        """
        file_system = connection.file_system
        if path in ("..", "..."):
            return file_system.get_parent(connection.current_directory)
        if path == "/":
            return file_system.root
        if path.startswith("/"):
            return file_system.find(path[1:])
        return file_system.find(path, connection.current_directory)

    @staticmethod
    def _path_argument(args: list[str]) -> str:
        while args and args[0].startswith("-"):
            args = args[1:]
        return " ".join(args)

    def cwd(self, connection: "Connection", path: str) -> None:
        file = self.get_file(connection, path)
        if not connection.file_system.is_dir(file):
            raise errors.ResponseError(550, "Not a valid directory")
        connection.current_directory = file
        connection.response(250, "The working directory was changed")

    def cdup(self, connection: "Connection") -> None:
        fs = connection.file_system
        connection.current_directory = fs.get_parent(connection.current_directory)
        connection.response(200, "The working directory was changed")

    def pwd(self, connection: "Connection") -> None:
        path = connection.file_system.get_path(connection.current_directory)
        connection.response(257, f'"/{path}" CWD Name')

    def mkd(self, connection: "Connection", path: str) -> None:
        connection.file_system.mkdirs(self.get_file(connection, path))
        connection.response(257, f'"{path}" Directory Created')

    @PathConditions(PathConditions.path_must_be_dir)
    def rmd(self, connection: "Connection", path: str) -> None:
        connection.file_system.delete(self.get_file(connection, path))
        connection.response(250, f'"{path}" Directory Deleted')

    @PathConditions(PathConditions.path_must_exists, PathConditions.path_must_be_file)
    def dele(self, connection: "Connection", path: str) -> None:
        connection.file_system.delete(self.get_file(connection, path))
        connection.response(250, f'"{path}" File Deleted')

    @PathConditions(PathConditions.path_must_exists)
    def rnfr(self, connection: "Connection", path: str) -> None:
        connection.rename_from = self.get_file(connection, path)
        connection.response(350, "Rename request received")

    @ConnectionConditions(
        ConnectionConditions.rename_from_required,
        fail_info="No rename request was received",
    )
    def rnto(self, connection: "Connection", path: str) -> None:
        source, connection.rename_from = connection.rename_from, None
        connection.file_system.rename(source, self.get_file(connection, path))
        connection.response(250, "File successfully renamed")

    def stor(self, connection: "Connection", path: str) -> None:
        file = self.get_file(connection, path)
        offset, connection.restart_offset = connection.restart_offset, 0
        destination = connection.file_system.write(file, offset)
        connection.response(150, f"Receiving a file stream for {path}")
        connection.start_transfer(connection.receive_stream, destination, message="File received!")

    def stou(self, connection: "Connection", args: list[str]) -> None:
        fs = connection.file_system
        hint = " ".join(args)
        file = self.get_file(connection, hint) if hint else None
        extension = PurePosixPath(hint).suffix or ".tmp"
        while file is None or fs.exists(file):
            file = fs.find(uuid.uuid4().hex + extension, connection.current_directory)
        destination = fs.write(file, 0)
        connection.response(150, f"File: /{fs.get_path(file)}")
        connection.start_transfer(connection.receive_stream, destination, message="File received!")

    def appe(self, connection: "Connection", path: str) -> None:
        fs = connection.file_system
        file = self.get_file(connection, path)
        start = fs.get_size(file) if fs.exists(file) else 0
        destination = fs.write(file, start)
        connection.response(150, f"Receiving a file stream for {path}")
        connection.start_transfer(connection.receive_stream, destination, message="File received!")

    @PathConditions(PathConditions.path_must_exists, PathConditions.path_must_be_file)
    def retr(self, connection: "Connection", path: str) -> None:
        fs = connection.file_system
        file = self.get_file(connection, path)
        offset, connection.restart_offset = connection.restart_offset, 0
        if connection.ascii:
            source, skip = fs.read(file, 0), offset
        else:
            source, skip = fs.read(file, offset), 0
        connection.response(150, f"Sending the file stream for {path} ({fs.get_size(file)} bytes)")
        connection.start_transfer(connection.send_stream, source, skip, message="File sent!")

    def rest(self, connection: "Connection", argument: str) -> None:
        try:
            offset = int(argument)
        except ValueError:
            offset = -1
        if offset < 0:
            raise errors.ResponseError(501, "Invalid restart position")
        connection.restart_offset = offset
        connection.response(350, f"Restarting at {offset}. Ready to receive a RETR or STOR command")

    def allo(self, connection: "Connection", args: list[str]) -> None:
        connection.response(200, "There's no need to allocate space")

    def smnt(self, connection: "Connection", args: list[str]) -> None:
        connection.response(502, "SMNT is not implemented in this server")

    @staticmethod
    def build_list_mtime(st_mtime: float, now: Union[float, None] = None) -> str:
        if now is None:
            now = time.time()
        mtime = time.localtime(st_mtime)
        with setlocale("C"):
            if now - HALF_OF_YEAR_IN_SECONDS < st_mtime <= now:
                return time.strftime("%b %d %H:%M", mtime)
            return time.strftime("%b %d %Y ", mtime)

    def build_list_string(self, file_system: "AbstractFileSystem[Any]", file: Any) -> str:
        kind = stat.S_IFDIR if file_system.is_dir(file) else stat.S_IFREG
        return "%s %3d %-8s %-8s %8d %s %s" % (
            stat.filemode(kind | file_system.get_permissions(file)),
            file_system.get_hard_links(file),
            file_system.get_owner(file),
            file_system.get_group(file),
            file_system.get_size(file),
            self.build_list_mtime(file_system.get_last_modified(file)),
            file_system.get_name(file),
        )

    def build_facts(self, connection: "Connection", file: Any) -> str:
        fs = connection.file_system
        is_dir = fs.is_dir(file)
        facts = []
        for option in connection.get_option("MLST").split(";"):
            name = option.strip().lower()
            if name == "type":
                facts.append("type=" + ("dir" if is_dir else "file"))
            elif name == "size":
                facts.append(f"size={fs.get_size(file)}")
            elif name == "modify":
                facts.append("modify=" + format_mdtm(fs.get_last_modified(file)))
            elif name == "perm":
                permissions = fs.get_permissions(file)
                perm = ""
                if permissions & stat.S_IRUSR:
                    perm += "el" if is_dir else "r"
                if permissions & stat.S_IWUSR:
                    perm += "fpcm" if is_dir else "fadw"
                facts.append("perm=" + perm)
        return "".join(fact + ";" for fact in facts) + " " + fs.get_name(file)

    def _get_directory(self, connection: "Connection", args: list[str]) -> Any:
        path = self._path_argument(args)
        directory = self.get_file(connection, path) if path else connection.current_directory
        if not connection.file_system.is_dir(directory):
            raise errors.ResponseError(550, "Not a directory")
        return directory

    def _send_lines(self, connection: "Connection", lines: Sequence[str]) -> None:
        data = "".join(line + END_OF_LINE for line in lines)
        connection.response(150, "Sending file list...")
        connection.send_data(data.encode(connection.server.encoding))

    def list_(self, connection: "Connection", args: list[str]) -> None:
        fs = connection.file_system
        directory = self._get_directory(connection, args)
        self._send_lines(connection, [self.build_list_string(fs, file) for file in fs.list(directory)])
        connection.response(226, "The list was sent")

    def nlst(self, connection: "Connection", args: list[str]) -> None:
        fs = connection.file_system
        directory = self._get_directory(connection, args)
        self._send_lines(connection, [fs.get_name(file) for file in fs.list(directory)])
        connection.response(226, "The list was sent")

    def mlsd(self, connection: "Connection", args: list[str]) -> None:
        fs = connection.file_system
        directory = self._get_directory(connection, args)
        self._send_lines(connection, [self.build_facts(connection, file) for file in fs.list(directory)])
        connection.response(226, "The file list was sent!")

    def mlst(self, connection: "Connection", args: list[str]) -> None:
        path = " ".join(args)
        file = self.get_file(connection, path) if path else connection.current_directory
        if not connection.file_system.exists(file):
            raise errors.ResponseError(550, "File not found")
        facts = self.build_facts(connection, file)
        connection.multiline_response(250, f"Listing {path or '.'}", [facts], "End")

    @PathConditions(PathConditions.path_must_exists)
    def mdtm(self, connection: "Connection", path: str) -> None:
        modified = connection.file_system.get_last_modified(self.get_file(connection, path))
        connection.response(213, format_mdtm(modified))

    @PathConditions(PathConditions.path_must_exists)
    def size(self, connection: "Connection", path: str) -> None:
        connection.response(213, str(connection.file_system.get_size(self.get_file(connection, path))))

    def mfmt(self, connection: "Connection", args: list[str]) -> None:
        if len(args) < 2:
            raise errors.ResponseError(501, "Missing parameters")
        value, path = args[0], " ".join(args[1:])
        fs = connection.file_system
        file = self.get_file(connection, path)
        if not fs.exists(file):
            raise errors.ResponseError(550, "File not found")
        try:
            modified = parse_mdtm(value)
        except (ValueError, OverflowError):
            raise errors.ResponseError(500, "Couldn't parse the time")
        fs.touch(file, modified)
        connection.response(213, f"Modify={value}; /{fs.get_path(file)}")

    @PathConditions(PathConditions.path_must_exists, PathConditions.path_must_be_file)
    def md5(self, connection: "Connection", path: str) -> None:
        digest = connection.file_system.digest(self.get_file(connection, path), "MD5")
        connection.response(251, f"{path} {digest.hex().upper()}")

    @PathConditions(PathConditions.path_must_exists, PathConditions.path_must_be_file)
    def hash(self, connection: "Connection", path: str) -> None:
        fs = connection.file_system
        file = self.get_file(connection, path)
        algorithm = connection.get_option("HASH")
        if algorithm not in self.hash_algorithms:
            raise errors.ResponseError(504, f"Unknown algorithm {algorithm}")
        digest = fs.digest(file, algorithm)
        connection.response(213, f"{algorithm} 0-{fs.get_size(file)} {digest.hex().upper()} {path}")

    def site_chmod(self, connection: "Connection", args: list[str]) -> None:
        if len(args) < 2:
            raise errors.ResponseError(501, "Missing parameters")
        try:
            permissions = int(args[0], 8)
        except ValueError:
            raise errors.ResponseError(501, "Invalid permissions")
        connection.file_system.chmod(self.get_file(connection, " ".join(args[1:])), permissions)
        connection.response(200, "The file permissions were successfully changed")
