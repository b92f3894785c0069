"""Unit tests for the Flask session extension."""

import time
from dataclasses import dataclass

from conftest import TEST_SECRET, Clock, FakeRefresher
from flask import Flask, g, jsonify, request
from flask.testing import FlaskClient

from session_service.session_manager import SessionManager
from session_service.utils.cookie_chunks import CookieOptions
from session_service.utils.flask_session import StatelessSession, get_extension, session_required


@dataclass
class SessionHarness:
    """
    Bundle the app with the collaborators tests need to drive.

    Attributes:
        app: Flask app with the stateless session extension registered.
        clock: Mutable clock used by the session manager.
        refresher: Fake provider refresh collaborator.
    """

    app: Flask
    clock: Clock
    refresher: FakeRefresher


def _build_test_harness() -> SessionHarness:
    """
    Build a Flask test app with login, logout and a protected route.

    The clock starts at the real time so the test client's cookie jar does not
    discard cookies pinned to the absolute session expiry.

    Returns:
        Configured test harness.
    """
    app = Flask(__name__)
    app.config.update(TESTING=True)
    clock = Clock(now=float(int(time.time())))
    refresher = FakeRefresher()
    manager = SessionManager(TEST_SECRET, refresh_fn=refresher, cookie_name="sess", cookie_options=CookieOptions(secure=False), time_provider=clock)
    StatelessSession(app, manager=manager)

    @app.post("/login")
    def login():
        body = request.get_json()
        get_extension().sign_in(body["sub"], body["refresh_token"])
        return jsonify({"ok": True})

    @app.post("/logout")
    def logout():
        get_extension().sign_out()
        return jsonify({"ok": True})

    @app.get("/me")
    @session_required
    def me():
        return jsonify({"session": g.session_view.model_dump(by_alias=True, mode="json"), "outcome": str(g.session_outcome)})

    return SessionHarness(app=app, clock=clock, refresher=refresher)


def _set_cookie_headers(response) -> list[str]:
    return response.headers.getlist("Set-Cookie")


def _login(client: FlaskClient, refresh_token: str = "rt-0"):
    return client.post("/login", json={"sub": "user-1", "refresh_token": refresh_token})


def test_protected_route_rejects_anonymous_requests() -> None:
    client = _build_test_harness().app.test_client()

    response = client.get("/me")

    assert response.status_code == 401
    assert response.get_json() == {"error": "Session invalid", "detail": None}
    assert _set_cookie_headers(response) == []


def test_login_sets_http_only_session_cookie() -> None:
    client = _build_test_harness().app.test_client()

    headers = _set_cookie_headers(_login(client))

    assert len(headers) == 1
    assert headers[0].startswith("sess=")
    assert "HttpOnly" in headers[0]
    assert "SameSite=Lax" in headers[0]
    assert "Expires=" in headers[0]


def test_session_round_trip_through_client() -> None:
    client = _build_test_harness().app.test_client()
    _login(client)

    response = client.get("/me")

    assert response.status_code == 200
    body = response.get_json()
    assert body["outcome"] == "FRESH"
    assert body["session"]["tokenRotationCount"] == 0
    assert "providerRefreshToken" not in body["session"]
    assert any(header.startswith("sess=") for header in _set_cookie_headers(response))


def test_expired_window_is_refreshed_transparently() -> None:
    harness = _build_test_harness()
    client: FlaskClient = harness.app.test_client()
    _login(client)

    harness.clock.advance(901)
    response = client.get("/me")

    assert response.status_code == 200
    assert response.get_json()["outcome"] == "REFRESHED"
    assert response.get_json()["session"]["tokenRotationCount"] == 1
    assert harness.refresher.calls == ["rt-0"]

    harness.clock.advance(901)
    assert client.get("/me").get_json()["session"]["tokenRotationCount"] == 2
    assert harness.refresher.calls == ["rt-0", "rt-1"]


def test_failed_refresh_rejects_request_with_detail() -> None:
    harness = _build_test_harness()
    client: FlaskClient = harness.app.test_client()
    _login(client)
    harness.refresher.return_none = True

    harness.clock.advance(901)
    response = client.get("/me")

    assert response.status_code == 401
    assert response.get_json()["detail"] == "Provider ID token refresh failed"


def test_large_session_uses_chunk_cookies() -> None:
    client = _build_test_harness().app.test_client()

    headers = _set_cookie_headers(_login(client, refresh_token="r" * 6000))

    assert [header.split("=", 1)[0] for header in headers] == ["sess.0", "sess.1", "sess.2"]
    assert client.get("/me").status_code == 200


def test_missing_chunk_cookie_rejects_request() -> None:
    client = _build_test_harness().app.test_client()
    _login(client, refresh_token="r" * 6000)

    assert client.get_cookie("sess.2") is not None
    client.delete_cookie("sess.2")

    assert client.get("/me").status_code == 401


def test_logout_clears_every_session_cookie() -> None:
    client = _build_test_harness().app.test_client()
    _login(client, refresh_token="r" * 6000)

    response = client.post("/logout")
    headers = _set_cookie_headers(response)

    for name in ("sess", "sess.0", "sess.1", "sess.2"):
        assert any(header.startswith(f"{name}=;") for header in headers)
    assert client.get_cookie("sess.0") is None
    assert client.get("/me").status_code == 401
