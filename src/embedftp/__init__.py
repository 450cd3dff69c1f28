"""embeddable threaded ftp server"""

# flake8: noqa

from .commands import *
from .common import *
from .connection import *
from .errors import *
from .pathio import *
from .server import *

__version__ = "0.1.0"
version = tuple(map(int, __version__.split(".")))

__all__ = (
    commands.__all__  # type: ignore[name-defined]
    + common.__all__  # type: ignore[name-defined]
    + connection.__all__  # type: ignore[name-defined]
    + errors.__all__  # type: ignore[name-defined]
    + pathio.__all__  # type: ignore[name-defined]
    + server.__all__  # type: ignore[name-defined]
    + ("version", "__version__")
)
