from types import TracebackType
from typing import Any, Union

__all__ = (
    "EmbedFTPException",
    "ResponseError",
    "AuthenticationError",
    "PathIOError",
    "DataConnectionError",
)


class EmbedFTPException(Exception):
    """
    Base exception class.
    """


class ResponseError(EmbedFTPException):
    """
    Raised by command handlers to answer the client with a specific reply.
    Dispatcher catches it and writes `code` and `message` to the control
    connection, session keeps going.

    :param code: reply code
    :type code: :py:class:`int`

    :param message: reply text
    :type message: :py:class:`str`

    ::

        >>> def command(self, connection, argument):
        ...     if not argument.isdigit():
        ...         raise ResponseError(501, "Not a number")
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"{code} {message}")
        self.code = code
        self.message = message


class AuthenticationError(EmbedFTPException):
    """
    Raised by authenticators when credentials are rejected.
    """


ExcInfo = tuple[type[BaseException], BaseException, TracebackType]
OptExcInfo = Union[ExcInfo, tuple[None, None, None]]


class PathIOError(EmbedFTPException):
    """
    Universal exception for any file system errors.

    ::

        >>> try:
        ...     # some file system operation
        ... except PathIOError as exc:
        ...     type, value, traceback = exc.reason
        ...     if isinstance(value, FileNotFoundError):
        ...         # handle
        ...     elif ...
        ...         # handle
    """

    def __init__(self, *args: Any, reason: Union[OptExcInfo, None] = None, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.reason = reason


class DataConnectionError(EmbedFTPException, OSError):
    """
    Raised when data connection can't be established or was broken while
    transferring.
    """
