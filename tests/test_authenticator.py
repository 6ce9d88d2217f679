"""Tests for the persistent login protocol: register, authenticate, logout."""

import threading
from dataclasses import replace
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from rememberme.service.authenticator import (
    AuthenticatorOptions,
    Authenticator,
    AuthOutcome,
)
from rememberme.service.cookie import decode_auth_cookie, encode_auth_cookie
from rememberme.service.errors import (
    ConfigurationError,
    CurrentUserError,
    InvalidUserError,
    NotInstalledError,
    SessionError,
)
from rememberme.service.request import RequestContext
from rememberme.storage.models import Login, NotLoadedUser, utcnow

AUTH = "remember_me"
SESSION = "session_id"


def new_request(authenticator, jar=None, *, ip="10.0.0.1", user_agent="pytest"):
    return authenticator.new_context(dict(jar or {}), remote_ip=ip, user_agent=user_agent)


def finish(authenticator, ctx, jar):
    """Commit the request and apply its response cookies like a browser would."""
    authenticator.commit(ctx)
    for op in ctx.response_cookies.values():
        if op.is_delete:
            jar.pop(op.name, None)
        else:
            jar[op.name] = op.value
    return jar


def login_as(authenticator, username="alice"):
    jar = {}
    ctx = new_request(authenticator, jar)
    ctx.session.put("current_user", {"username": username})
    login = authenticator.register_login(ctx)
    finish(authenticator, ctx, jar)
    return login, jar


def browser_restart(jar):
    """Keep only the persistent auth cookie."""
    return {AUTH: jar[AUTH]}


def stored_login(login_store, session_store, *, username="alice", serial="s1",
                 token="t1", sid="a", age_seconds=0):
    now = utcnow() - timedelta(seconds=age_seconds)
    login = Login(
        username=username,
        serial=serial,
        token=token,
        sid=sid,
        created_at=now,
        last_login=now,
    )
    login_store.put(login)
    if sid:
        session_store.put(sid, {"current_user": {"username": username}})
    return login


class TestInstallation:
    def test_protocol_requires_install(self, authenticator):
        ctx = RequestContext()
        with pytest.raises(NotInstalledError):
            authenticator.authenticate(ctx)
        with pytest.raises(NotInstalledError):
            authenticator.register_login(ctx)
        with pytest.raises(NotInstalledError):
            authenticator.logout(ctx)
        with pytest.raises(NotInstalledError):
            authenticator.unexpected_token(ctx)

    def test_context_installed_by_another_authenticator(self, authenticator, login_store, session_store):
        other = Authenticator(login_store, session_store)
        ctx = other.new_context()
        with pytest.raises(NotInstalledError):
            authenticator.authenticate(ctx)

    def test_install_loads_session_from_cookie(self, authenticator, session_store):
        session_store.put("existing", {"k": "v"})
        ctx = authenticator.install(RequestContext({SESSION: "existing"}))
        assert ctx.session.sid == "existing"
        assert ctx.session.get("k") == "v"

    def test_register_without_session_store_handle(self, authenticator):
        ctx = RequestContext()
        ctx.private["rememberme"] = authenticator
        with pytest.raises(SessionError):
            authenticator.register_login(ctx)


class TestOptions:
    @pytest.mark.parametrize(
        "kwargs,reason",
        [
            ({"auth_cookie": ""}, "no_auth_cookie"),
            ({"session_cookie": ""}, "no_session_cookie"),
            ({"cookie_max_age": 0}, "bad_cookie_max_age"),
        ],
    )
    def test_invalid_options(self, kwargs, reason):
        with pytest.raises(ConfigurationError) as excinfo:
            AuthenticatorOptions(**kwargs)
        assert excinfo.value.reason == reason

    def test_bad_per_call_max_age(self, authenticator):
        ctx = new_request(authenticator)
        ctx.session.put("current_user", {"username": "alice"})
        with pytest.raises(ConfigurationError):
            authenticator.register_login(ctx, cookie_max_age=-1)


class TestRegisterLogin:
    def test_creates_login_bound_to_saved_session(self, authenticator, login_store, session_store):
        ctx = new_request(authenticator, ip="192.168.1.5", user_agent="firefox")
        ctx.session.put("current_user", {"username": "alice"})

        login = authenticator.register_login(ctx)

        assert login_store.get("alice", login.serial) == login
        assert login.sid == ctx.session.sid
        assert session_store.get(login.sid)["current_user"] == {"username": "alice"}
        assert login.created_at == login.last_login
        assert login.last_ip == "192.168.1.5"
        assert login.last_useragent == "firefox"

    def test_issues_auth_cookie(self, authenticator):
        ctx = new_request(authenticator)
        ctx.session.put("current_user", {"username": "alice"})

        login = authenticator.register_login(ctx)

        op = ctx.response_cookies[AUTH]
        assert op.max_age == 7_776_000
        assert decode_auth_cookie(op.value) == ("alice", login.serial, login.token)

    def test_commit_sets_session_cookie(self, authenticator):
        login, jar = login_as(authenticator)
        assert jar[SESSION] == login.sid

    def test_missing_principal(self, authenticator):
        ctx = new_request(authenticator)
        with pytest.raises(CurrentUserError):
            authenticator.register_login(ctx)

    def test_principal_without_username(self, authenticator):
        ctx = new_request(authenticator)
        ctx.session.put("current_user", {"email": "alice@example.com"})
        with pytest.raises(InvalidUserError):
            authenticator.register_login(ctx)

    def test_object_principal_and_overrides(self, authenticator):
        ctx = new_request(authenticator)
        ctx.session.put("user", NotLoadedUser("carol"))

        login = authenticator.register_login(
            ctx, current_user_key="user", cookie_max_age=60
        )

        assert login.username == "carol"
        assert ctx.response_cookies[AUTH].max_age == 60

    def test_custom_username_field(self, authenticator):
        ctx = new_request(authenticator)
        ctx.session.put("current_user", {"email": "dave@example.com"})
        login = authenticator.register_login(ctx, username_field="email")
        assert login.username == "dave@example.com"

    def test_each_registration_is_a_new_serial(self, authenticator, login_store):
        first, _ = login_as(authenticator)
        second, _ = login_as(authenticator)
        assert first.serial != second.serial
        assert len(login_store.list_user_logins("alice")) == 2


class TestAuthenticate:
    def test_no_cookie_is_noop(self, authenticator):
        ctx = new_request(authenticator)
        result = authenticator.authenticate(ctx)
        assert result.outcome is AuthOutcome.NO_COOKIE
        assert not result.authenticated
        assert ctx.response_cookies == {}

    def test_authenticated_session_skips_store(self, authenticator, session_store):
        session_store.put("sid", {"authenticated": True, "current_user": {"username": "alice"}})
        authenticator.store = MagicMock()
        ctx = new_request(authenticator, {SESSION: "sid", AUTH: "anything"})

        result = authenticator.authenticate(ctx)

        assert result.outcome is AuthOutcome.SESSION
        assert result.username == "alice"
        assert ctx.assigns == {"authenticated": True, "current_user": {"username": "alice"}}
        assert authenticator.store.method_calls == []
        assert ctx.response_cookies == {}

    def test_malformed_cookie_is_deleted(self, authenticator):
        ctx = new_request(authenticator, {AUTH: "not-a-cookie"})
        result = authenticator.authenticate(ctx)
        assert result.outcome is AuthOutcome.INVALID_COOKIE
        assert ctx.response_cookies[AUTH].is_delete
        assert not authenticator.unexpected_token(ctx)

    def test_unknown_login_is_deleted(self, authenticator):
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})
        result = authenticator.authenticate(ctx)
        assert result.outcome is AuthOutcome.NO_LOGIN
        assert ctx.response_cookies[AUTH].is_delete

    def test_round_trip_rotates_token(self, authenticator, login_store):
        login, jar = login_as(authenticator)
        ctx = new_request(authenticator, browser_restart(jar))

        result = authenticator.authenticate(ctx)

        assert result.outcome is AuthOutcome.ROTATED
        assert result.authenticated
        rotated = login_store.get("alice", login.serial)
        assert rotated == result.login
        assert rotated.serial == login.serial
        assert rotated.created_at == login.created_at
        assert rotated.token != login.token
        assert rotated.last_login >= rotated.created_at
        assert decode_auth_cookie(ctx.response_cookies[AUTH].value).token == rotated.token

    def test_rotation_marks_renewed_session(self, authenticator, session_store):
        login, jar = login_as(authenticator)
        ctx = new_request(authenticator, browser_restart(jar), ip="10.9.9.9")

        result = authenticator.authenticate(ctx)
        finish(authenticator, ctx, jar)

        assert ctx.assigns["authenticated"] is True
        assert ctx.assigns["current_user"] == NotLoadedUser("alice")
        assert ctx.session.sid == result.login.sid
        assert jar[SESSION] == result.login.sid
        assert session_store.get(result.login.sid) == {
            "authenticated": True,
            "current_user": NotLoadedUser("alice"),
        }
        assert result.login.last_ip == "10.9.9.9"

    def test_rotation_deletes_old_session(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store, sid="a")
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})

        result = authenticator.authenticate(ctx)

        assert result.outcome is AuthOutcome.ROTATED
        assert session_store.get("a") is None
        assert login_store.get("alice", "s1").token != "t1"

    def test_replayed_token_revokes_every_login(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store, serial="s1", token="t1", sid="a")
        stored_login(login_store, session_store, serial="s2", token="other", sid="b")
        stored_login(login_store, session_store, username="bob", serial="s3", sid="c")
        cookie = encode_auth_cookie("alice", "s1", "t1")

        first = authenticator.authenticate(new_request(authenticator, {AUTH: cookie}))
        assert first.outcome is AuthOutcome.ROTATED

        replay = new_request(authenticator, {AUTH: cookie})
        result = authenticator.authenticate(replay)

        assert result.outcome is AuthOutcome.COMPROMISED
        assert result.compromised
        assert not result.authenticated
        assert login_store.list_user_logins("alice") == []
        assert session_store.get("b") is None
        assert session_store.get(first.login.sid) is None
        assert len(login_store.list_user_logins("bob")) == 1
        assert replay.response_cookies[AUTH].is_delete
        assert authenticator.unexpected_token(replay)
        assert "authenticated" not in replay.assigns

    def test_expired_siblings_are_cleaned_after_rotation(
        self, authenticator, login_store, session_store
    ):
        stored_login(login_store, session_store, serial="s1", token="t1", sid="a")
        stored_login(
            login_store, session_store, serial="stale", sid="old", age_seconds=8_000_000
        )
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})

        authenticator.authenticate(ctx)

        assert [l.serial for l in login_store.list_user_logins("alice")] == ["s1"]
        assert session_store.get("old") is None

    def test_per_call_keys(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store)
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})

        authenticator.authenticate(
            ctx, authenticated_key="signed_in", current_user_key="user", cookie_max_age=30
        )

        assert ctx.assigns == {"signed_in": True, "user": NotLoadedUser("alice")}
        assert ctx.response_cookies[AUTH].max_age == 30

    def test_lost_rotation_race_is_a_mismatch(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store)

        class RacingStore:
            """Another request rotates the token between our get and write."""

            def __getattr__(self, name):
                return getattr(login_store, name)

            def get(self, username, serial):
                current = login_store.get(username, serial)
                login_store.put(current.rotate("elsewhere"))
                return current

        authenticator.store = RacingStore()
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})

        result = authenticator.authenticate(ctx)

        assert result.outcome is AuthOutcome.COMPROMISED
        assert login_store.list_user_logins("alice") == []

    def test_login_deleted_during_rotation_is_not_a_theft(
        self, authenticator, login_store, session_store
    ):
        stored_login(login_store, session_store, serial="s1", token="t1", sid="a")
        stored_login(login_store, session_store, serial="s2", token="t2", sid="b")

        class DeletingStore:
            """The presented login is logged out between our get and write."""

            def __getattr__(self, name):
                return getattr(login_store, name)

            def get(self, username, serial):
                current = login_store.get(username, serial)
                login_store.delete(username, serial)
                return current

        authenticator.store = DeletingStore()
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "s1", "t1")})

        result = authenticator.authenticate(ctx)

        assert result.outcome is AuthOutcome.NO_LOGIN
        assert not result.authenticated
        assert ctx.response_cookies[AUTH].is_delete
        assert not authenticator.unexpected_token(ctx)
        assert [l.serial for l in login_store.list_user_logins("alice")] == ["s2"]
        assert session_store.get("b") is not None
        assert "authenticated" not in ctx.assigns

    def test_concurrent_presentations_rotate_once(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store)
        cookie = encode_auth_cookie("alice", "s1", "t1")
        barrier = threading.Barrier(2)
        outcomes = []

        def present():
            ctx = new_request(authenticator, {AUTH: cookie})
            barrier.wait()
            outcomes.append(authenticator.authenticate(ctx).outcome)

        threads = [threading.Thread(target=present) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(outcomes) == sorted([AuthOutcome.ROTATED, AuthOutcome.COMPROMISED])
        assert login_store.list_user_logins("alice") == []


class TestLogout:
    def test_logout_deletes_login_session_and_cookies(
        self, authenticator, login_store, session_store
    ):
        login, jar = login_as(authenticator)
        ctx = new_request(authenticator, jar)

        authenticator.logout(ctx)
        finish(authenticator, ctx, jar)

        assert login_store.get("alice", login.serial) is None
        assert session_store.get(login.sid) is None
        assert ctx.response_cookies[AUTH].is_delete
        assert ctx.response_cookies[SESSION].is_delete
        assert jar == {}

    def test_logout_with_unknown_login(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store, serial="kept")
        ctx = new_request(authenticator, {AUTH: encode_auth_cookie("alice", "gone", "t")})

        authenticator.logout(ctx)

        assert ctx.response_cookies[AUTH].is_delete
        assert SESSION not in ctx.response_cookies
        assert [l.serial for l in login_store.list_user_logins("alice")] == ["kept"]

    def test_logout_with_malformed_cookie(self, authenticator):
        ctx = new_request(authenticator, {AUTH: "junk"})
        authenticator.logout(ctx)
        assert ctx.response_cookies[AUTH].is_delete

    def test_logout_without_cookie(self, authenticator):
        ctx = new_request(authenticator)
        authenticator.logout(ctx)
        assert ctx.response_cookies[AUTH].is_delete


class TestAdministration:
    def test_delete_login_removes_session(self, authenticator, login_store, session_store):
        login = stored_login(login_store, session_store)
        authenticator.delete_login("alice", "s1")
        assert login_store.get("alice", "s1") is None
        assert session_store.get(login.sid) is None

    def test_delete_missing_login_is_noop(self, authenticator):
        authenticator.delete_login("alice", "missing")

    def test_delete_all_user_logins(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store, serial="s1", sid="a")
        stored_login(login_store, session_store, serial="s2", sid="b")
        assert authenticator.delete_all_user_logins("alice") == 2
        assert authenticator.list_user_logins("alice") == []
        assert session_store.get("a") is None and session_store.get("b") is None

    def test_clean_old_logins_counts_and_drops_sessions(
        self, authenticator, login_store, session_store
    ):
        stored_login(login_store, session_store, serial="fresh", sid="a", age_seconds=10)
        stored_login(
            login_store, session_store, serial="stale", sid="b", age_seconds=8_000_000
        )

        assert authenticator.clean_old_logins(7_776_000) == 1
        assert [l.serial for l in login_store.list_user_logins("alice")] == ["fresh"]
        assert session_store.get("a") is not None
        assert session_store.get("b") is None

    def test_clean_user_logins_keeps_recent(self, authenticator, login_store, session_store):
        stored_login(login_store, session_store, serial="recent", sid="a")
        stale = stored_login(
            login_store, session_store, serial="stale", sid="b", age_seconds=8_000_000
        )
        login_store.put(replace(stale, created_at=utcnow() - timedelta(seconds=9_000_000)))

        assert authenticator.clean_user_logins("alice") == 1
        assert [l.serial for l in login_store.list_user_logins("alice")] == ["recent"]
