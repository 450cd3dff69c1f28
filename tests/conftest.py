import contextlib
import ftplib
import io
import socket
import ssl
import threading
import time

import pytest
import trustme

import embedftp

ca = trustme.CA()
server_cert = ca.issue_cert("127.0.0.1", "::1")

ssl_server = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
# ftplib unwraps data connections, tls 1.3 session tickets break this
ssl_server.maximum_version = ssl.TLSVersion.TLSv1_2
server_cert.configure_cert(ssl_server)

ssl_client = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
ca.configure_trust(ssl_client)


def _has_ipv6_loopback():
    if not socket.has_ipv6:
        return False
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_STREAM) as s:
            s.bind(("::1", 0))
    except OSError:
        return False
    return True


HOSTS = [
    "127.0.0.1",
    pytest.param("::1", marks=pytest.mark.skipif(not _has_ipv6_loopback(), reason="no IPv6 loopback")),
]


class RawClient:
    """
    Line-level control connection client for byte-exact assertions.
    """

    def __init__(self, host, port, *, context=None):
        sock = socket.create_connection((host, port), timeout=5)
        if context is not None:
            sock = context.wrap_socket(sock, server_hostname=host)
        self.socket = sock
        self.file = sock.makefile("rb")

    def send(self, line):
        self.socket.sendall(line.encode() + b"\r\n")

    def read_line(self):
        return self.file.readline().decode().rstrip("\r\n")

    def read_reply(self):
        lines = [self.read_line()]
        if lines[0][3:4] == "-":
            code = lines[0][:3]
            while True:
                line = self.read_line()
                lines.append(line)
                if line[:3] == code and line[3:4] == " ":
                    break
        return lines

    def command(self, line):
        self.send(line)
        return self.read_reply()

    def close(self):
        self.file.close()
        self.socket.close()


@pytest.fixture(params=HOSTS)
def pair_factory(request):
    class Factory:
        def __init__(
            self,
            authenticator=None,
            *,
            file_system=None,
            connected=True,
            logged=True,
            do_quit=True,
            host=request.param,
            client_factory=ftplib.FTP,
            **server_kwargs,
        ):
            if file_system is None:
                file_system = embedftp.MemoryFileSystem()
            self.file_system = file_system
            if authenticator is None:
                authenticator = embedftp.MemoryAuthenticator([embedftp.User(file_system=file_system)])
            self.server = embedftp.Server(authenticator, **server_kwargs)
            self.client = client_factory(timeout=5)
            self.connected = connected
            self.logged = logged
            self.do_quit = do_quit
            self.host = host

        def make_server_files(self, *paths, size=None, atom=b"-"):
            if size is None:
                size = embedftp.DEFAULT_BLOCK_SIZE * 3
            fs = self.file_system
            for path in paths:
                file = fs.find(path)
                parent = fs.get_parent(file)
                if not fs.exists(parent):
                    fs.mkdirs(parent)
                with fs.write(file) as stream:
                    stream.write(atom * size)

        def server_content(self, path):
            with self.file_system.read(self.file_system.find(path)) as stream:
                return stream.read()

        def server_paths_exists(self, *paths):
            values = [self.file_system.exists(self.file_system.find(p)) for p in paths]
            if all(values):
                return True
            if any(values):
                raise ValueError("Mixed exists/not exists list")
            return False

        def upload(self, path, data):
            self.client.storbinary(f"STOR {path}", io.BytesIO(data))

        def download(self, path):
            blocks = []
            self.client.retrbinary(f"RETR {path}", blocks.append)
            return b"".join(blocks)

        def raw(self, **kwargs):
            return RawClient(self.host, self.server.server_port, **kwargs)

        def __enter__(self):
            self.server.listen(self.host)
            if self.connected:
                self.client.connect(self.host, self.server.server_port)
                if self.logged:
                    self.client.login()
            return self

        def __exit__(self, *exc_info):
            if self.connected and self.do_quit:
                self.client.quit()
            self.client.close()
            self.server.close()

    return Factory


@pytest.fixture
def expect_codes_in_exception():
    @contextlib.contextmanager
    def context(*codes):
        try:
            yield
        except ftplib.Error as e:
            assert str(e)[:3] in codes
        else:
            raise RuntimeError("There was no exception")

    return context


@pytest.fixture
def wait_for():
    def wait(predicate, timeout=2):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise TimeoutError("condition was not met")
            time.sleep(0.01)
        return True

    return wait


@pytest.fixture(params=["memory", "native"])
def file_system(request, tmp_path):
    if request.param == "memory":
        return embedftp.MemoryFileSystem()
    return embedftp.NativeFileSystem(tmp_path)


@pytest.fixture
def background():
    threads = []

    def start(target, *args):
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        threads.append(thread)
        return thread

    yield start
    for thread in threads:
        thread.join(5)
