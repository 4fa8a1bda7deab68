"""
End-to-end tests through the HTTP surface: login redirect, provider callback, protected page,
logout, and the failure paths of the callback.
"""
from dataclasses import replace
from urllib.parse import parse_qs, urlparse

import httpx
from fastapi.testclient import TestClient

from demo_web import main as main_module
from demo_web.access import sign_session_id, unsign_session_id
from demo_web.config import Settings
from demo_web.errors import SessionStoreUnavailable
from demo_web.main import create_app
from demo_web.session_store import MemorySessionStore

COOKIE = "demo_web_session"


def _start_login(client, provider, path="/login"):
    r = client.get(path, follow_redirects=False)
    assert r.status_code == 302
    return r, provider.authorize(r.headers["location"])


def _sign_in(client, provider, path="/login"):
    _, params = _start_login(client, provider, path)
    return client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "service": "demo_web", "auth": True}


def test_home_offers_sign_in(client):
    r = client.get("/")
    assert r.status_code == 200
    assert 'href="/login"' in r.text


def test_auth_routes_absent_without_client_id():
    app = create_app(Settings(client_id=""), session_store=MemorySessionStore())
    client = TestClient(app, base_url="https://testserver")
    assert client.get("/login", follow_redirects=False).status_code == 404
    assert client.get("/health").json()["auth"] is False
    assert "not configured" in client.get("/").text


def test_protected_page_redirects_anonymous_to_login(client):
    r = client.get("/account", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login?next=%2Faccount"


def test_login_redirects_to_authorize_with_pkce(client, settings):
    r = client.get("/login", follow_redirects=False)
    assert r.status_code == 302
    location = urlparse(r.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == settings.authorize_endpoint
    params = parse_qs(location.query)
    assert params["code_challenge_method"] == ["S256"]
    assert params["response_type"] == ["code"]
    assert params["redirect_uri"] == [settings.redirect_uri]
    set_cookie = r.headers["set-cookie"]
    assert set_cookie.startswith(f"{COOKIE}=")
    assert "HttpOnly" in set_cookie
    assert "Secure" in set_cookie
    assert "samesite=lax" in set_cookie.lower()


def test_full_sign_in_flow(client, provider):
    r = _sign_in(client, provider)
    assert r.status_code == 302
    assert r.headers["location"] == "/account"
    assert len(provider.calls) == 1

    account = client.get("/account", follow_redirects=False)
    assert account.status_code == 200
    assert "Ada Lovelace" in account.text
    assert "ada@example.com" in account.text
    assert "graph-access-token" not in account.text


def test_sign_in_returns_to_requested_page(client, provider):
    r = _sign_in(client, provider, "/login?next=/account%3Ftab%3D2")
    assert r.headers["location"] == "/account?tab=2"


def test_open_redirect_in_next_is_ignored(client, provider):
    r = _sign_in(client, provider, "/login?next=//evil.example/")
    assert r.headers["location"] == "/account"


def test_session_id_rotates_on_sign_in(client, provider):
    _, params = _start_login(client, provider)
    before = client.cookies.get(COOKIE)
    r = client.get("/signin", params={"code": "c", "state": params["state"]}, follow_redirects=False)
    assert r.status_code == 302
    assert client.cookies.get(COOKIE) != before


def test_duplicate_callback_keeps_session_and_skips_provider(client, provider):
    _, params = _start_login(client, provider)
    first = client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)
    assert first.status_code == 302

    again = client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)
    assert again.status_code == 302
    assert again.headers["location"] == "/login"
    assert len(provider.calls) == 1
    assert client.get("/account", follow_redirects=False).status_code == 200


def test_state_mismatch_redirects_to_login_without_exchange(client, provider):
    _start_login(client, provider)
    r = client.get("/signin", params={"code": "auth-code", "state": "forged"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    assert provider.calls == []
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_callback_without_session_cookie(client, provider):
    r = client.get("/signin", params={"code": "auth-code", "state": "whatever"}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    assert provider.calls == []


def test_provider_error_shows_failure_page(client, provider):
    _, params = _start_login(client, provider)
    r = client.get(
        "/signin",
        params={"error": "access_denied", "error_description": "AADSTS65004: declined", "state": params["state"]},
        follow_redirects=False,
    )
    assert r.status_code == 400
    assert "AADSTS65004" not in r.text
    # The pending verifier was erased, so the same state cannot be completed later
    r = client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)
    assert r.headers["location"] == "/login"
    assert provider.calls == []


def test_network_failure_sends_user_back_to_login(client, provider):
    _, params = _start_login(client, provider)
    provider.responses = [httpx.ConnectTimeout("timed out")] * 3
    r = client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/login"
    assert len(provider.calls) == 3
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_misconfigured_client_is_server_error(client, provider):
    _, params = _start_login(client, provider)
    provider.responses = [httpx.Response(401, json={"error": "invalid_client", "error_description": "bad secret"})]
    r = client.get("/signin", params={"code": "auth-code", "state": params["state"]}, follow_redirects=False)
    assert r.status_code == 500
    assert "bad secret" not in r.text


def test_login_when_already_signed_in_goes_to_landing(client, provider):
    _sign_in(client, provider)
    r = client.get("/login", follow_redirects=False)
    assert r.status_code == 302
    assert r.headers["location"] == "/account"
    assert len(provider.calls) == 1


def test_logout_destroys_session_and_redirects_to_provider(client, provider, settings, store):
    _sign_in(client, provider)
    old_cookie = client.cookies.get(COOKIE)

    r = client.get("/logout", follow_redirects=False)
    assert r.status_code == 302
    location = r.headers["location"]
    assert location.startswith(settings.end_session_endpoint)
    assert parse_qs(urlparse(location).query)["post_logout_redirect_uri"] == ["https://app.example/"]
    assert len(store) == 0

    # The old cookie value no longer identifies a session
    client.cookies.set(COOKIE, old_cookie)
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_logout_without_post_logout_uri_is_local_only(settings, store, exchange_client, provider):
    app = create_app(
        replace(settings, post_logout_redirect_uri=""), session_store=store, exchange_client=exchange_client
    )
    client = TestClient(app, base_url="https://testserver")
    _sign_in(client, provider)
    r = client.get("/logout", follow_redirects=False)
    assert r.headers["location"] == "/"
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_tampered_cookie_is_anonymous(client, provider):
    _sign_in(client, provider)
    session_id = client.cookies.get(COOKIE).rpartition(".")[0]
    client.cookies.clear()
    client.cookies.set(COOKIE, sign_session_id("wrong-secret", session_id))
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_unsign_rejects_malformed_values():
    assert unsign_session_id("k", sign_session_id("k", "abc")) == "abc"
    assert unsign_session_id("k", "abc.\xe9") is None
    assert unsign_session_id("k", "\xe9bc.deadbeef") is None
    assert unsign_session_id("k", "no-signature") is None


def test_non_ascii_cookie_signature_is_anonymous(client):
    headers = {"cookie": f"{COOKIE}=abc.\xe9".encode("latin-1")}
    r = client.get("/account", headers=headers, follow_redirects=False)
    assert r.status_code == 302
    r = client.get("/", headers=headers)
    assert r.status_code == 200
    assert 'href="/login"' in r.text


def test_auth_status(client, provider):
    assert client.get("/auth-status").json() == {"isAuthenticated": False, "user": None}
    _sign_in(client, provider)
    assert client.get("/auth-status").json() == {
        "isAuthenticated": True,
        "user": {"name": "Ada Lovelace", "username": "ada@example.com"},
    }


def test_store_unavailable_reads_as_anonymous(client, provider, store, monkeypatch):
    _sign_in(client, provider)

    def down(session_id):
        raise SessionStoreUnavailable("session store get failed")

    monkeypatch.setattr(store, "_get", down)
    assert client.get("/account", follow_redirects=False).status_code == 302


def test_store_unavailable_on_login_is_503(client, store, monkeypatch):
    def down(record):
        raise SessionStoreUnavailable("session store set failed")

    monkeypatch.setattr(store, "_set", down)
    assert client.get("/login", follow_redirects=False).status_code == 503


def test_callback_query_not_in_access_log(client, caplog):
    with caplog.at_level("INFO", logger="demo_web.access_log"):
        client.get("/signin?code=secret-code&state=s", follow_redirects=False)
        client.get("/health")
    assert "secret-code" not in caplog.text
    assert "/health" in caplog.text


def test_server_runs_without_uvicorn_access_log(monkeypatch):
    captured = {}
    monkeypatch.setattr(main_module.uvicorn, "run", lambda app, **kwargs: captured.update(kwargs, app=app))
    main_module.main()
    assert captured["app"] == "demo_web.main:create_app"
    assert captured["factory"] is True
    assert captured["access_log"] is False
