"""
End-to-end tests for the /auth endpoints.
Run with: pytest tests/ -v
"""

from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy.exc import OperationalError

from sso_portal.auth.errors import ConfigurationError
from sso_portal.main import VERSION, create_app

from conftest import FRONTEND_URL


def _login(client, saml_response):
    return client.post(
        "/auth/callback",
        data={"SAMLResponse": saml_response},
        follow_redirects=False,
    )


def _tokens_from(response) -> tuple[str, str]:
    params = parse_qs(urlsplit(response.headers["location"]).query)
    return params["token"][0], params["refreshToken"][0]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _broken_session():
    raise OperationalError("SELECT", {}, Exception("database is locked"))


class TestLogin:
    def test_login_redirects_to_idp(self, client):
        response = client.get("/auth/login", follow_redirects=False)
        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}" == "https://idp.example.com"
        assert "SAMLRequest" in parse_qs(location.query)

    def test_login_ignores_request_parameters(self, client):
        response = client.get(
            "/auth/login?RelayState=https://evil.example.net&return_to=https://evil.example.net",
            follow_redirects=False,
        )
        assert "evil.example.net" not in response.headers["location"]


class TestCallback:
    def test_first_login_creates_user_and_redirects(self, client, store, build_response):
        response = _login(client, build_response(email="jane@example.com"))

        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{FRONTEND_URL}/auth/callback?")
        token, refresh_token = _tokens_from(response)
        assert token and refresh_token

        profile = client.get("/auth/me", headers=_bearer(token)).json()
        assert profile["email"] == "jane@example.com"
        assert profile["firstName"] == "Jane"
        assert profile["emailVerified"] is True
        assert profile["provider"] == "saml"
        assert profile["roles"] == ["student"]
        assert store.count() == 1

    def test_repeat_login_reuses_user(self, client, store, build_response):
        first, _ = _tokens_from(_login(client, build_response()))
        second, _ = _tokens_from(_login(client, build_response()))
        assert first != second
        assert store.count() == 1
        me_first = client.get("/auth/me", headers=_bearer(first)).json()
        me_second = client.get("/auth/me", headers=_bearer(second)).json()
        assert me_first["id"] == me_second["id"]

    @pytest.mark.parametrize(
        "overrides",
        [
            {"issuer": "https://other-idp.example.com"},
            {"audience": "https://other-sp.example.com"},
            {"sign_assertion": False},
            {"not_on_or_after": 1000, "now": 500},
            {"destination": "https://other-sp.example.com/auth/callback"},
            {"recipient": "https://other-sp.example.com/auth/callback"},
        ],
    )
    def test_rejected_response_is_generic_500(self, client, store, build_response, overrides):
        response = _login(client, build_response(**overrides))
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}
        assert store.count() == 0

    def test_forged_signature_is_generic_500(self, client, build_response, rogue_keys):
        response = _login(client, build_response(keys=rogue_keys))
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}

    def test_garbage_is_generic_500(self, client):
        response = _login(client, "PHNhbWw+bm9wZTwvc2FtbD4=")
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}

    def test_missing_field_is_generic_500(self, client):
        response = client.post("/auth/callback", data={}, follow_redirects=False)
        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}

    def test_lost_provisioning_race_is_generic_500(self, client, store, build_response, monkeypatch):
        """A loser of a concurrent first login gets the generic failure, not a second account."""
        assert _login(client, build_response()).status_code == 302

        # Simulate the other request having read "no such user" before the insert
        monkeypatch.setattr(store, "find_by_email", lambda email: None)
        response = _login(client, build_response())

        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}
        assert store.count() == 1

    def test_store_read_failure_is_generic_500(self, client, store, build_response, monkeypatch):
        """A database outage during lookup still answers with the JSON failure body."""
        monkeypatch.setattr(store, "_session_factory", _broken_session)
        response = _login(client, build_response())

        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}

    def test_unexpected_error_is_generic_500(self, client, store, build_response, monkeypatch):
        def explode(claims):
            raise RuntimeError("boom")

        monkeypatch.setattr(client.app.state.auth.reconciler, "reconcile", explode)
        response = _login(client, build_response())

        assert response.status_code == 500
        assert response.json() == {"error": "Authentication failed"}


class TestSession:
    def test_me_requires_token(self, client):
        response = client.get("/auth/me")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    def test_me_rejects_garbage_token(self, client):
        assert client.get("/auth/me", headers=_bearer("garbage")).status_code == 401

    def test_logout_revokes_token(self, client, build_response):
        token, refresh_token = _tokens_from(_login(client, build_response()))

        response = client.post("/auth/logout", headers=_bearer(token))
        assert response.status_code == 200
        assert response.json() == {"message": "Logged out successfully"}

        assert client.get("/auth/me", headers=_bearer(token)).status_code == 401
        assert client.post("/auth/refresh", json={"refreshToken": refresh_token}).status_code == 401

    def test_logout_requires_token(self, client):
        assert client.post("/auth/logout").status_code == 401

    def test_store_outage_is_503(self, client, store, build_response, monkeypatch):
        token, _ = _tokens_from(_login(client, build_response()))
        monkeypatch.setattr(store, "_session_factory", _broken_session)
        assert client.get("/auth/me", headers=_bearer(token)).status_code == 503

    def test_refresh_issues_new_pair(self, client, build_response):
        token, refresh_token = _tokens_from(_login(client, build_response()))

        response = client.post("/auth/refresh", json={"refreshToken": refresh_token})
        assert response.status_code == 200
        body = response.json()
        assert body["token"] != token
        assert body["refreshToken"] != refresh_token
        assert body["expiresAt"]

        assert client.get("/auth/me", headers=_bearer(body["token"])).status_code == 200
        assert client.get("/auth/me", headers=_bearer(token)).status_code == 401

    def test_refresh_rejects_access_token(self, client, build_response):
        token, _ = _tokens_from(_login(client, build_response()))
        assert client.post("/auth/refresh", json={"refreshToken": token}).status_code == 401


class TestMetadataAndHealth:
    def test_metadata_is_xml(self, client):
        response = client.get("/auth/metadata")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "EntityDescriptor" in response.text
        assert "https://sp.example.com/auth/callback" in response.text

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "version": VERSION}


class TestAppFactory:
    def test_bad_configuration_fails_at_startup(self, make_settings, store):
        with pytest.raises(ConfigurationError):
            create_app(make_settings(idp_certificate="broken"), store=store)
