import locale
import sys
import time

import pytest

import embedftp
from embedftp.common import format_mdtm, parse_mdtm
from embedftp.connection import error_to_reply


def _encode(blocks, encoder=None):
    encoder = encoder or embedftp.AsciiEncoder()
    return b"".join(encoder.encode(block) for block in blocks)


def _decode(blocks):
    decoder = embedftp.AsciiDecoder()
    return b"".join(decoder.decode(block) for block in blocks) + decoder.flush()


@pytest.mark.parametrize(
    "blocks,expected",
    [
        ([b"foo\nbar"], b"foo\r\nbar"),
        ([b"foo\r\nbar\n"], b"foo\r\nbar\r\n"),
        ([b"foo\r", b"\nbar"], b"foo\r\nbar"),
        ([b"foo", b"\nbar"], b"foo\r\nbar"),
        ([b"\n\n"], b"\r\n\r\n"),
        ([b"foo\r"], b"foo\r"),
        ([b"", b"\n"], b"\r\n"),
    ],
)
def test_ascii_encoder(blocks, expected):
    assert _encode(blocks) == expected


def test_ascii_encoder_continues_after_restart():
    assert _encode([b"\nfoo"], embedftp.AsciiEncoder(b"\r")) == b"\nfoo"
    assert _encode([b"\nfoo"], embedftp.AsciiEncoder(b"x")) == b"\r\nfoo"


@pytest.mark.parametrize(
    "blocks,expected",
    [
        ([b"foo\r\nbar"], b"foo\nbar"),
        ([b"foo\r", b"\nbar"], b"foo\nbar"),
        ([b"foo\rbar"], b"foo\rbar"),
        ([b"foo\nbar"], b"foo\nbar"),
        ([b"foo\r"], b"foo\r"),
        ([b"foo\r", b"\r", b"\n"], b"foo\r\n"),
    ],
)
def test_ascii_decoder(blocks, expected):
    assert _decode(blocks) == expected


def test_mdtm_format():
    seconds = time.mktime((2021, 3, 4, 5, 6, 7, 0, 0, -1))
    assert format_mdtm(seconds) == "20210304050607"
    assert parse_mdtm("20210304050607") == seconds


@pytest.mark.parametrize("value", ["2021030405060", "202103040506071", "2021030405060x", "20211304050607"])
def test_mdtm_parse_errors(value):
    with pytest.raises(ValueError):
        parse_mdtm(value)


def test_list_mtime_recent():
    now = time.mktime((2021, 6, 15, 12, 0, 0, 0, 0, -1))
    mtime = time.mktime((2021, 3, 4, 5, 6, 7, 0, 0, -1))
    assert embedftp.FileCommands.build_list_mtime(mtime, now) == "Mar 04 05:06"


def test_list_mtime_old_and_future():
    now = time.mktime((2021, 6, 15, 12, 0, 0, 0, 0, -1))
    old = time.mktime((2020, 3, 4, 5, 6, 7, 0, 0, -1))
    future = now + 60
    assert embedftp.FileCommands.build_list_mtime(old, now) == "Mar 04 2020 "
    assert embedftp.FileCommands.build_list_mtime(future, now) == "Jun 15 2021 "


def test_list_mtime_uses_current_time(mocker):
    now = time.mktime((2021, 6, 15, 12, 0, 0, 0, 0, -1))
    mocker.patch("embedftp.commands.time.time", return_value=now)
    assert embedftp.FileCommands.build_list_mtime(now - 60) == "Jun 15 11:59"


def test_setlocale_restores_locale():
    before = locale.setlocale(locale.LC_ALL)
    with embedftp.setlocale("C") as name:
        assert name == "C"
    assert locale.setlocale(locale.LC_ALL) == before


def test_wrap_with_container():
    assert embedftp.wrap_with_container("foo") == ("foo",)
    assert embedftp.wrap_with_container(["foo", "bar"]) == ["foo", "bar"]


def _path_io_error(exc):
    try:
        raise exc
    except Exception:
        return embedftp.PathIOError(reason=sys.exc_info())


@pytest.mark.parametrize(
    "exc,code",
    [
        (embedftp.ResponseError(501, "foo"), 501),
        (embedftp.DataConnectionError("broken"), 426),
        (FileNotFoundError("foo"), 550),
        (PermissionError("foo"), 550),
        (_path_io_error(FileNotFoundError("foo")), 550),
        (_path_io_error(IsADirectoryError("foo")), 550),
        (_path_io_error(OSError("foo")), 450),
        (OSError("foo"), 450),
        (RuntimeError("foo"), 451),
    ],
)
def test_error_to_reply(exc, code):
    assert error_to_reply(exc)[0] == code


def test_error_to_reply_message():
    assert error_to_reply(embedftp.ResponseError(501, "Missing parameters")) == (501, "Missing parameters")
    assert error_to_reply(_path_io_error(OSError("disk is full"))) == (450, "disk is full")
    assert error_to_reply(RuntimeError("foo"))[1] == "Requested action aborted: local error in processing"


def test_response_error_text():
    assert str(embedftp.ResponseError(550, "File not found")) == "550 File not found"


def test_available_connections():
    available = embedftp.AvailableConnections(2)
    assert available.acquire()
    assert available.acquire()
    assert available.locked()
    assert not available.acquire()
    available.release()
    assert available.acquire()
    available.release()
    available.release()
    with pytest.raises(ValueError):
        available.release()


def test_unlimited_connections():
    available = embedftp.AvailableConnections()
    for _ in range(100):
        assert available.acquire()
    assert not available.locked()
    available.release()


def test_version():
    assert embedftp.version == tuple(map(int, embedftp.__version__.split(".")))
