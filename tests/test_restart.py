import ftplib
import io

import pytest


def _retrieve(client, command, rest=None):
    connection = client.transfercmd(command, rest)
    received = b""
    with connection:
        while True:
            block = connection.recv(1024)
            if not block:
                break
            received += block
    client.voidresp()
    return received


@pytest.mark.parametrize("offset", [0, 1, 3, 5, 6])
def test_restart_binary_retrieve(pair_factory, offset):
    with pair_factory() as pair:
        pair.upload("foo.bin", b"foobar")
        pair.client.voidcmd("TYPE I")
        assert _retrieve(pair.client, "RETR foo.bin", offset) == b"foobar"[offset:]


def test_restart_reply(pair_factory, expect_codes_in_exception):
    with pair_factory() as pair:
        assert pair.client.sendcmd("REST 10") == "350 Restarting at 10. Ready to receive a RETR or STOR command"
        with expect_codes_in_exception("501"):
            pair.client.sendcmd("REST -1")
        with expect_codes_in_exception("501"):
            pair.client.sendcmd("REST foo")


def test_restart_offset_is_reset_after_transfer(pair_factory):
    with pair_factory() as pair:
        pair.upload("foo.bin", b"foobar")
        pair.client.voidcmd("TYPE I")
        assert _retrieve(pair.client, "RETR foo.bin", 3) == b"bar"
        assert _retrieve(pair.client, "RETR foo.bin") == b"foobar"


def test_restart_binary_store(pair_factory):
    with pair_factory() as pair:
        pair.upload("foo.bin", b"foobar")
        pair.client.storbinary("STOR foo.bin", io.BytesIO(b"BAZQUX"), rest=3)
    assert pair.server_content("foo.bin") == b"fooBAZQUX"


def test_restart_binary_store_inside_file(pair_factory):
    with pair_factory() as pair:
        pair.upload("foo.bin", b"foobar")
        pair.client.storbinary("STOR foo.bin", io.BytesIO(b"X"), rest=1)
    assert pair.server_content("foo.bin") == b"fXobar"


def test_restart_beyond_end_of_binary_file(pair_factory):
    with pair_factory() as pair:
        pair.upload("foo.bin", b"foobar")
        pair.client.voidcmd("TYPE I")
        assert _retrieve(pair.client, "RETR foo.bin", 100) == b""


@pytest.mark.parametrize("offset", range(0, 10))
def test_restart_ascii_retrieve(pair_factory, offset):
    # "a\nb\r\nc\n" is "a\r\nb\r\nc\r\n" on the wire
    with pair_factory() as pair:
        pair.upload("foo.txt", b"a\nb\r\nc\n")
        pair.client.voidcmd("TYPE A")
        received = _retrieve(pair.client, "RETR foo.txt", offset)
    assert received == b"a\r\nb\r\nc\r\n"[offset:]


def test_restart_beyond_end_of_ascii_file(pair_factory):
    with pair_factory() as pair:
        pair.upload("foo.txt", b"a\n")
        pair.client.voidcmd("TYPE A")
        connection = pair.client.transfercmd("RETR foo.txt", 5)
        connection.close()
        with pytest.raises(ftplib.error_temp, match="450"):
            pair.client.voidresp()


def test_restart_ascii_retrieve_across_blocks(pair_factory):
    data = b"x\n" * 2000
    with pair_factory(block_size=7) as pair:
        pair.upload("foo.txt", data)
        pair.client.voidcmd("TYPE A")
        wire = data.replace(b"\n", b"\r\n")
        for offset in (1, 2, 3, 6, 7, 8, 1001, 3999):
            assert _retrieve(pair.client, "RETR foo.txt", offset) == wire[offset:]


@pytest.mark.parametrize("offset", [0, 2, 4])
def test_ascii_retrieve_counts_wire_bytes(pair_factory, offset):
    with pair_factory() as pair:
        pair.upload("foo.txt", b"a\nb\r\nc\n")
        (connection,) = pair.server.connections
        assert connection.bytes_transferred == 7
        pair.client.voidcmd("TYPE A")
        received = _retrieve(pair.client, "RETR foo.txt", offset)
        assert received == b"a\r\nb\r\nc\r\n"[offset:]
        assert connection.bytes_transferred == 7 + len(received)
