import ftplib
import socket
import time

import pytest

BIG_SIZE = 32 * 1024 * 1024


def test_abort_without_transfer(pair_factory):
    with pair_factory() as pair:
        assert pair.client.abort() == "226 All transfers were aborted successfully"


def test_abort_retrieve(pair_factory, wait_for):
    with pair_factory() as pair:
        pair.make_server_files("big.bin", size=BIG_SIZE)
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("RETR big.bin")
        assert connection.recv(1024)
        (session,) = pair.server.connections
        assert pair.client.abort() == "426 Transfer aborted"
        connection.close()
        assert pair.client.voidresp() == "226 All transfers were aborted successfully"
        assert not session.transferring
        assert pair.client.sendcmd("NOOP") == "200 OK"


def test_abort_store(pair_factory):
    with pair_factory() as pair:
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("STOR foo.bin")
        connection.sendall(b"-" * 1024)
        assert pair.client.abort() == "426 Transfer aborted"
        connection.close()
        assert pair.client.voidresp() == "226 All transfers were aborted successfully"
        assert pair.server_paths_exists("foo.bin")


def test_status_during_transfer(pair_factory):
    with pair_factory() as pair:
        pair.make_server_files("big.bin", size=BIG_SIZE)
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("RETR big.bin")
        assert connection.recv(1024)
        lines = pair.client.sendcmd("STAT").split("\n")
        assert lines[0] == "211-Status of the session:"
        assert lines[-1] == "211 End"
        pair.client.abort()
        connection.close()
        pair.client.voidresp()


def test_abort_closes_passive_listener(pair_factory):
    with pair_factory() as pair:
        host, port = pair.client.makepasv()
        pair.client.abort()
        with pytest.raises(OSError):
            socket.create_connection((host, port), timeout=1)
        with pytest.raises(ftplib.error_temp, match="425"):
            pair.client.sendcmd("NLST")
            pair.client.voidresp()


def test_quit_during_transfer(pair_factory, wait_for):
    with pair_factory(do_quit=False) as pair:
        pair.make_server_files("big.bin", size=BIG_SIZE)
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("RETR big.bin")
        assert connection.recv(1024)
        (session,) = pair.server.connections
        pair.client.putcmd("QUIT")
        assert wait_for(lambda: not pair.server.connections)
        assert not session.transferring
        connection.close()


def test_server_close_during_transfer(pair_factory, wait_for):
    with pair_factory(do_quit=False) as pair:
        pair.make_server_files("big.bin", size=BIG_SIZE)
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("RETR big.bin")
        assert connection.recv(1024)
        (session,) = pair.server.connections
        pair.server.close()
        assert not pair.server.connections
        assert not session.transferring
        connection.close()


def test_idle_timeout_while_transferring(pair_factory, wait_for):
    with pair_factory(do_quit=False, idle_timeout=0.2) as pair:
        pair.client.voidcmd("TYPE I")
        connection = pair.client.transfercmd("STOR foo.bin")
        with pytest.raises(ftplib.error_temp, match="426"):
            pair.client.voidresp()
        assert wait_for(lambda: not pair.server.connections)
        connection.close()


def test_idle_control_connection_is_kept(pair_factory):
    with pair_factory(idle_timeout=0.1) as pair:
        time.sleep(0.5)
        assert pair.client.sendcmd("NOOP") == "200 OK"
