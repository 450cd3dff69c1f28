"""Simple embedftp-based server with one user (anonymous or not)"""

import argparse
import contextlib
import logging
import ssl

import embedftp

parser = argparse.ArgumentParser(
    prog="embedftp",
    usage="%(prog)s [options]",
    description="Simple embedftp-based server with one user (anonymous or not).",
)
parser.add_argument("--user", metavar="LOGIN", dest="login", help="user name to login")
parser.add_argument("--pass", metavar="PASSWORD", dest="password", help="password to login")
parser.add_argument(
    "-d",
    "--directory",
    metavar="DIRECTORY",
    dest="home",
    default=".",
    help="the directory to share [default: current directory]",
)
parser.add_argument("--memory", action="store_true", help="use memory storage")
parser.add_argument("--read-only", action="store_true", help="reject any modification of shared directory")
parser.add_argument("--host", default=None, help="host for binding [default: all IPv4 interfaces]")
parser.add_argument("--port", type=int, default=2121, help="port for binding [default: %(default)s]")
parser.add_argument(
    "--idle-timeout",
    type=float,
    default=embedftp.DEFAULT_IDLE_TIMEOUT,
    help="control connection idle timeout in seconds [default: %(default)s]",
)
parser.add_argument("--cert", metavar="FILE", help="certificate chain for AUTH TLS")
parser.add_argument("--key", metavar="FILE", help="private key for certificate")
parser.add_argument("--implicit-tls", action="store_true", help="wrap every connection in TLS right away")
parser.add_argument("-q", "--quiet", action="store_true", help="set logging level to 'ERROR' instead of 'INFO'")
parser.add_argument("--debug", action="store_true", help="set logging level to 'DEBUG', show commands and replies")

args = parser.parse_args()
print(f"embedftp v{embedftp.__version__}")

if args.debug:
    level = logging.DEBUG
elif args.quiet:
    level = logging.ERROR
else:
    level = logging.INFO
logging.basicConfig(
    level=level,
    format="%(asctime)s [%(name)s] %(message)s",
    datefmt="[%H:%M:%S]:",
)

if args.memory:
    file_system = embedftp.MemoryFileSystem()
else:
    file_system = embedftp.NativeFileSystem(args.home, read_only=args.read_only)
if args.login is None:
    authenticator = embedftp.NoOpAuthenticator(file_system)
else:
    user = embedftp.User(args.login, args.password, file_system=file_system)
    authenticator = embedftp.MemoryAuthenticator([user])

context = None
if args.cert:
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.load_cert_chain(args.cert, args.key)
elif args.implicit_tls:
    parser.error("--implicit-tls requires --cert")

server = embedftp.Server(
    authenticator,
    idle_timeout=args.idle_timeout,
    ssl=context,
    implicit_ssl=args.implicit_tls,
)
with contextlib.suppress(KeyboardInterrupt):
    server.run(args.host, args.port)
