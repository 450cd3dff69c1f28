import hashlib

import pytest

import embedftp


@pytest.fixture
def memory():
    return embedftp.MemoryFileSystem()


def test_anonymous_login(pair_factory):
    with pair_factory(logged=False) as pair:
        assert pair.client.login() == "230 Logged in!"


def test_login_with_login_and_password(pair_factory, memory):
    users = [embedftp.User("foo", "bar", file_system=memory)]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False) as pair:
        assert pair.client.sendcmd("USER foo") == "331 Needs a password"
        assert pair.client.sendcmd("PASS bar") == "230 Logged in!"
        assert pair.client.pwd() == "/"


def test_login_with_wrong_password(pair_factory, memory, expect_codes_in_exception, wait_for):
    users = [embedftp.User("foo", "bar", file_system=memory)]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False, do_quit=False) as pair:
        with expect_codes_in_exception("530"):
            pair.client.login("foo", "baz")
        assert wait_for(lambda: not pair.server.connections)


def test_login_with_unknown_user(pair_factory, memory, expect_codes_in_exception):
    users = [embedftp.User("foo", "bar", file_system=memory)]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False, do_quit=False) as pair:
        assert pair.client.sendcmd("USER baz") == "331 Needs a password"
        with expect_codes_in_exception("530"):
            pair.client.sendcmd("PASS bar")


def test_anonymous_user_accepts_any_login(pair_factory, memory):
    users = [embedftp.User("foo", "bar", file_system=memory), embedftp.User(file_system=memory)]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False) as pair:
        assert pair.client.sendcmd("USER whoever") == "230 Logged in!"


def test_md5_password(pair_factory, memory):
    digest = hashlib.md5(b"bar").hexdigest()
    users = [embedftp.User.from_md5("foo", digest, file_system=memory)]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False) as pair:
        assert pair.client.login("foo", "bar") == "230 Logged in!"


def test_pass_before_user(pair_factory):
    with pair_factory(connected=False) as pair:
        raw = pair.raw()
        raw.read_reply()
        assert raw.command("PASS foo")[0].startswith("503")
        raw.close()


def test_user_after_login(pair_factory):
    with pair_factory() as pair:
        assert pair.client.sendcmd("USER other") == "230 Logged in!"
        assert pair.client.sendcmd("PASS other") == "230 Logged in!"


def test_host_is_not_allowed(pair_factory, memory, wait_for):
    authenticator = embedftp.MemoryAuthenticator([embedftp.User(file_system=memory)], hosts=["192.0.2.1"])
    with pair_factory(authenticator, connected=False) as pair:
        raw = pair.raw()
        assert raw.read_reply() == ["421 Host not allowed"]
        assert raw.file.read() == b""
        raw.close()
        assert wait_for(lambda: not pair.server.connections)


def test_host_is_allowed(pair_factory, memory):
    with pair_factory(connected=False) as pair:
        authenticator = embedftp.MemoryAuthenticator([embedftp.User(file_system=memory)], hosts=[pair.host])
        pair.server.authenticator = authenticator
        raw = pair.raw()
        assert raw.read_reply() == ["220 Waiting for authentication..."]
        raw.close()


def test_authenticator_receives_client_host(pair_factory, memory, mocker):
    authenticator = embedftp.MemoryAuthenticator([embedftp.User("foo", "bar", file_system=memory)])
    spy = mocker.spy(authenticator, "authenticate")
    with pair_factory(authenticator, logged=False) as pair:
        pair.client.login("foo", "bar")
        (connection,) = pair.server.connections
    spy.assert_called_once_with(connection, pair.host, "foo", "bar")


def test_every_user_has_own_file_system(pair_factory):
    first, second = embedftp.MemoryFileSystem(), embedftp.MemoryFileSystem()
    users = [
        embedftp.User("first", file_system=first),
        embedftp.User("second", file_system=second),
    ]
    with pair_factory(embedftp.MemoryAuthenticator(users), logged=False) as pair:
        pair.client.login("first")
        pair.client.mkd("foo")
    assert first.exists(first.find("foo"))
    assert not second.exists(second.find("foo"))


def test_user_with_native_file_system(tmp_path):
    user = embedftp.User("foo", base_path=tmp_path / "home", read_only=True)
    assert isinstance(user.file_system, embedftp.NativeFileSystem)
    assert user.file_system.read_only
    assert not user.needs_password
    assert "foo" in repr(user)


def test_check_password():
    user = embedftp.User("foo", "bar")
    assert user.check_password("bar")
    assert not user.check_password("baz")
    assert not user.check_password(None)
    user = embedftp.User.from_md5("foo", hashlib.md5(b"bar").hexdigest().upper())
    assert user.check_password("bar")
    assert not user.check_password("BAR")


def test_authenticate_raises_for_wrong_credentials(memory):
    authenticator = embedftp.MemoryAuthenticator([embedftp.User("foo", "bar", file_system=memory)])
    assert authenticator.authenticate(None, "127.0.0.1", "foo", "bar") is memory
    with pytest.raises(embedftp.AuthenticationError):
        authenticator.authenticate(None, "127.0.0.1", "foo", "baz")
    with pytest.raises(embedftp.AuthenticationError):
        authenticator.authenticate(None, "127.0.0.1", "baz", "bar")
