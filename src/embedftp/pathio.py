import abc
import functools
import hashlib
import io
import os
import stat
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Generic, Literal, TypeVar, Union

if sys.version_info >= (3, 11):
    from typing import ParamSpec
else:
    from typing_extensions import ParamSpec

from .common import DEFAULT_BLOCK_SIZE
from .errors import PathIOError

__all__ = (
    "AbstractFileSystem",
    "NativeFileSystem",
    "MemoryFileSystem",
    "Node",
    "universal_exception",
)


UniversalExceptionParamSpec = ParamSpec("UniversalExceptionParamSpec")
UniversalExceptionReturnType = TypeVar("UniversalExceptionReturnType")


def universal_exception(
    f: Callable[UniversalExceptionParamSpec, UniversalExceptionReturnType],
) -> Callable[UniversalExceptionParamSpec, UniversalExceptionReturnType]:
    """
    Decorator. Reraising any exception (except `NotImplementedError`) with
    universal exception :py:class:`embedftp.PathIOError`
    """

    @functools.wraps(f)
    def wrapper(
        *args: UniversalExceptionParamSpec.args,
        **kwargs: UniversalExceptionParamSpec.kwargs,
    ) -> UniversalExceptionReturnType:
        try:
            return f(*args, **kwargs)
        except (NotImplementedError, PathIOError):
            raise
        except Exception as exc:
            raise PathIOError(reason=sys.exc_info()) from exc

    return wrapper


PathType = TypeVar("PathType")


class AbstractFileSystem(abc.ABC, Generic[PathType]):
    """
    Abstract file system, which is served to an authenticated user. File
    handles (`PathType`) are opaque to the server and flow only through
    methods of this class.

    Failed lookups should raise :py:class:`FileNotFoundError` (or
    :py:class:`PermissionError`) which are reported as ``550``, other
    :py:class:`OSError` are reported as ``450``. Read-only views reject
    mutating operations with :py:class:`OSError`.
    """

    @property
    @abc.abstractmethod
    def root(self) -> PathType:
        """
        Root directory handle
        """

    @abc.abstractmethod
    def get_path(self, file: PathType) -> str:
        """
        Path relative to root, ``/``-separated, empty string for root
        """

    @abc.abstractmethod
    def exists(self, file: PathType) -> bool:
        pass

    @abc.abstractmethod
    def is_dir(self, file: PathType) -> bool:
        pass

    @abc.abstractmethod
    def get_permissions(self, file: PathType) -> int:
        """
        9-bit unix permissions (``0o755`` like)
        """

    @abc.abstractmethod
    def get_size(self, file: PathType) -> int:
        pass

    @abc.abstractmethod
    def get_last_modified(self, file: PathType) -> float:
        """
        Modification time as seconds since epoch
        """

    @abc.abstractmethod
    def get_hard_links(self, file: PathType) -> int:
        pass

    @abc.abstractmethod
    def get_name(self, file: PathType) -> str:
        pass

    @abc.abstractmethod
    def get_owner(self, file: PathType) -> str:
        pass

    @abc.abstractmethod
    def get_group(self, file: PathType) -> str:
        pass

    @abc.abstractmethod
    def get_parent(self, file: PathType) -> PathType:
        """
        Parent directory handle

        :raises FileNotFoundError: for root or inaccessible parent
        """

    @abc.abstractmethod
    def list(self, directory: PathType) -> list[PathType]:
        pass

    @abc.abstractmethod
    def find(self, path: str, cwd: Union[PathType, None] = None) -> PathType:
        """
        Resolve `path` relative to `cwd` (or root if `cwd` is :py:class:`None`).
        File does not have to exist.

        :raises FileNotFoundError: when path escapes root
        """

    @abc.abstractmethod
    def read(self, file: PathType, start: int = 0) -> BinaryIO:
        """
        Open file for reading, positioned at `start`
        """

    @abc.abstractmethod
    def write(self, file: PathType, start: int = 0) -> BinaryIO:
        """
        Open file for writing, positioned at `start`; file is created if
        absent, truncated if `start` is zero
        """

    @abc.abstractmethod
    def mkdirs(self, file: PathType) -> None:
        pass

    @abc.abstractmethod
    def delete(self, file: PathType) -> None:
        pass

    @abc.abstractmethod
    def rename(self, source: PathType, destination: PathType) -> None:
        pass

    @abc.abstractmethod
    def chmod(self, file: PathType, permissions: int) -> None:
        pass

    @abc.abstractmethod
    def touch(self, file: PathType, modified: float) -> None:
        """
        Set modification time
        """

    def digest(self, file: PathType, algorithm: str) -> bytes:
        """
        Hash file content. Algorithm names are the ones used on the wire
        (``MD5``, ``SHA-1``, ``SHA-256``).

        :raises ValueError: for unsupported algorithm
        """
        hasher = hashlib.new(algorithm.replace("-", "").lower())
        with self.read(file) as stream:
            for block in iter(functools.partial(stream.read, DEFAULT_BLOCK_SIZE * 64), b""):
                hasher.update(block)
        return hasher.digest()


class NativeFileSystem(AbstractFileSystem[Path]):
    """
    File system over native directory tree, users are confined inside
    `root`.

    :param root: root directory, created if absent
    :type root: :py:class:`str` or :py:class:`pathlib.Path`

    :param read_only: reject all mutating operations
    :type read_only: :py:class:`bool`
    """

    def __init__(self, root: Union[str, Path] = ".", *, read_only: bool = False) -> None:
        self.read_only = read_only
        self._root = Path(root).resolve()
        if not self._root.exists() and not read_only:
            self._root.mkdir(parents=True)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({str(self._root)!r}, read_only={self.read_only!r})"

    def _check_writable(self) -> None:
        if self.read_only:
            raise OSError("This file system is read-only")

    def _is_inside(self, file: Path) -> bool:
        return file.resolve().is_relative_to(self._root)

    @property
    def root(self) -> Path:
        return self._root

    def get_path(self, file: Path) -> str:
        path = file.relative_to(self._root).as_posix()
        return "" if path == "." else path

    @universal_exception
    def exists(self, file: Path) -> bool:
        return file.exists()

    @universal_exception
    def is_dir(self, file: Path) -> bool:
        return file.is_dir()

    @universal_exception
    def get_permissions(self, file: Path) -> int:
        return stat.S_IMODE(file.stat().st_mode) & 0o777

    @universal_exception
    def get_size(self, file: Path) -> int:
        return file.stat().st_size

    @universal_exception
    def get_last_modified(self, file: Path) -> float:
        return file.stat().st_mtime

    @universal_exception
    def get_hard_links(self, file: Path) -> int:
        return file.stat().st_nlink

    def get_name(self, file: Path) -> str:
        return file.name

    def get_owner(self, file: Path) -> str:
        return "-"

    def get_group(self, file: Path) -> str:
        return "-"

    @universal_exception
    def get_parent(self, file: Path) -> Path:
        if file == self._root:
            raise FileNotFoundError("No permission to access this file")
        return file.parent

    @universal_exception
    def list(self, directory: Path) -> list[Path]:
        return sorted(directory.iterdir())

    @universal_exception
    def find(self, path: str, cwd: Union[Path, None] = None) -> Path:
        base = self._root if cwd is None else cwd
        file = Path(os.path.normpath(base / path.lstrip("/")))
        if not self._is_inside(file):
            raise FileNotFoundError("No permission to access this file")
        return file

    @universal_exception
    def read(self, file: Path, start: int = 0) -> BinaryIO:
        stream = file.open("rb")
        if start:
            stream.seek(start)
        return stream

    @universal_exception
    def write(self, file: Path, start: int = 0) -> BinaryIO:
        self._check_writable()
        if start > 0 and file.exists():
            stream = file.open("r+b")
        else:
            stream = file.open("wb")
        if start:
            stream.seek(start)
        return stream

    @universal_exception
    def mkdirs(self, file: Path) -> None:
        self._check_writable()
        file.mkdir(parents=True)

    @universal_exception
    def delete(self, file: Path) -> None:
        self._check_writable()
        if file == self._root:
            raise PermissionError("Root directory can't be deleted")
        if file.is_dir():
            file.rmdir()
        else:
            file.unlink()

    @universal_exception
    def rename(self, source: Path, destination: Path) -> None:
        self._check_writable()
        source.rename(destination)

    @universal_exception
    def chmod(self, file: Path, permissions: int) -> None:
        self._check_writable()
        file.chmod(permissions)

    @universal_exception
    def touch(self, file: Path, modified: float) -> None:
        self._check_writable()
        os.utime(file, (file.stat().st_atime, modified))


class Node:
    def __init__(
        self,
        type: Union[Literal["dir"], Literal["file"]],
        name: str,
        mtime: Union[float, None] = None,
        *,
        permissions: Union[int, None] = None,
        content: Union[dict[str, "Node"], bytes, None] = None,
    ) -> None:
        self.type = type
        self.name = name
        self.mtime = time.time() if mtime is None else mtime
        if permissions is None:
            permissions = 0o777 if type == "dir" else 0o666
        self.permissions = permissions
        if content is None:
            content = {} if type == "dir" else b""
        self.content = content

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(type={self.type!r}, "
            f"name={self.name!r}, mtime={self.mtime!r}, "
            f"permissions={oct(self.permissions)}, content={self.content!r})"
        )


class _MemoryWriter(io.BytesIO):
    def __init__(self, node: Node, start: int, lock: threading.RLock) -> None:
        super().__init__(node.content if start > 0 else b"")  # type: ignore[arg-type]
        self.node = node
        self.lock = lock
        self.seek(start)

    def close(self) -> None:
        if not self.closed:
            with self.lock:
                self.node.content = self.getvalue()
                self.node.mtime = time.time()
        super().close()


class MemoryFileSystem(AbstractFileSystem[PurePosixPath]):
    """
    File system based on in-memory tree. Written data is visible after
    writing stream is closed. One instance can be shared between sessions.
    """

    def __init__(self, state: Union[Node, None] = None) -> None:
        self.state = state or Node("dir", "/")
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.state!r})"

    def get_node(self, file: PurePosixPath) -> Union[Node, None]:
        node = self.state
        for part in file.parts[1:]:
            if not isinstance(node.content, dict):
                return None
            child = node.content.get(part)
            if child is None:
                return None
            node = child
        return node

    def _get_existing(self, file: PurePosixPath) -> Node:
        node = self.get_node(file)
        if node is None:
            raise FileNotFoundError(f"{str(file)!r} does not exist")
        return node

    def _get_parent_content(self, file: PurePosixPath) -> dict[str, Node]:
        parent = self._get_existing(file.parent)
        if not isinstance(parent.content, dict):
            raise NotADirectoryError(f"{str(file.parent)!r} is not a directory")
        return parent.content

    @property
    def root(self) -> PurePosixPath:
        return PurePosixPath("/")

    def get_path(self, file: PurePosixPath) -> str:
        path = str(file.relative_to("/"))
        return "" if path == "." else path

    def exists(self, file: PurePosixPath) -> bool:
        return self.get_node(file) is not None

    def is_dir(self, file: PurePosixPath) -> bool:
        node = self.get_node(file)
        return node is not None and node.type == "dir"

    @universal_exception
    def get_permissions(self, file: PurePosixPath) -> int:
        return self._get_existing(file).permissions

    @universal_exception
    def get_size(self, file: PurePosixPath) -> int:
        node = self._get_existing(file)
        if isinstance(node.content, bytes):
            return len(node.content)
        return 0

    @universal_exception
    def get_last_modified(self, file: PurePosixPath) -> float:
        return self._get_existing(file).mtime

    @universal_exception
    def get_hard_links(self, file: PurePosixPath) -> int:
        self._get_existing(file)
        return 1

    def get_name(self, file: PurePosixPath) -> str:
        return file.name

    def get_owner(self, file: PurePosixPath) -> str:
        return "-"

    def get_group(self, file: PurePosixPath) -> str:
        return "-"

    @universal_exception
    def get_parent(self, file: PurePosixPath) -> PurePosixPath:
        if file == self.root:
            raise FileNotFoundError("No permission to access this file")
        return file.parent

    @universal_exception
    def list(self, directory: PurePosixPath) -> list[PurePosixPath]:
        with self.lock:
            node = self._get_existing(directory)
            if not isinstance(node.content, dict):
                raise NotADirectoryError(f"{str(directory)!r} is not a directory")
            return [directory / name for name in sorted(node.content)]

    @universal_exception
    def find(self, path: str, cwd: Union[PurePosixPath, None] = None) -> PurePosixPath:
        base = self.root if cwd is None else cwd
        resolved = self.root
        for part in (base / path.lstrip("/")).parts[1:]:
            if part == "..":
                if resolved == self.root:
                    raise FileNotFoundError("No permission to access this file")
                resolved = resolved.parent
            elif part != ".":
                resolved /= part
        return resolved

    @universal_exception
    def read(self, file: PurePosixPath, start: int = 0) -> BinaryIO:
        with self.lock:
            node = self._get_existing(file)
            if not isinstance(node.content, bytes):
                raise IsADirectoryError(f"{str(file)!r} is a directory")
            stream = io.BytesIO(node.content)
        stream.seek(start)
        return stream

    @universal_exception
    def write(self, file: PurePosixPath, start: int = 0) -> BinaryIO:
        with self.lock:
            node = self.get_node(file)
            if node is None:
                node = Node("file", file.name)
                self._get_parent_content(file)[file.name] = node
            elif node.type != "file":
                raise IsADirectoryError(f"{str(file)!r} is a directory")
            return _MemoryWriter(node, start, self.lock)

    @universal_exception
    def mkdirs(self, file: PurePosixPath) -> None:
        with self.lock:
            if self.get_node(file) is not None:
                raise FileExistsError(f"{str(file)!r} already exists")
            node = self.state
            for part in file.parts[1:]:
                if not isinstance(node.content, dict):
                    raise NotADirectoryError(f"{part!r} is not a directory")
                node = node.content.setdefault(part, Node("dir", part))

    @universal_exception
    def delete(self, file: PurePosixPath) -> None:
        with self.lock:
            node = self._get_existing(file)
            if file == self.root:
                raise PermissionError("Root directory can't be deleted")
            if node.type == "dir" and node.content:
                raise OSError("Directory not empty")
            self._get_parent_content(file).pop(file.name)

    @universal_exception
    def rename(self, source: PurePosixPath, destination: PurePosixPath) -> None:
        with self.lock:
            node = self._get_existing(source)
            if source == self.root:
                raise PermissionError("Root directory can't be renamed")
            content = self._get_parent_content(destination)
            self._get_parent_content(source).pop(source.name)
            node.name = destination.name
            content[destination.name] = node

    @universal_exception
    def chmod(self, file: PurePosixPath, permissions: int) -> None:
        with self.lock:
            self._get_existing(file).permissions = permissions & 0o777

    @universal_exception
    def touch(self, file: PurePosixPath, modified: float) -> None:
        with self.lock:
            self._get_existing(file).mtime = modified
