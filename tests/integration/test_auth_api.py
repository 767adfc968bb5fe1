"""Integration tests for the /api/auth endpoints.

Requests go through the full Flask stack, the real SessionManager and a
temporary SQLite database; only the IMAP server, SMTP transport and
discovery are in-memory.
"""

import pytest

from fakes import TEST_EMAIL, TEST_PASSWORD

pytestmark = pytest.mark.integration


def _login(client, **overrides):
    body = {"email": TEST_EMAIL, "password": TEST_PASSWORD}
    body.update(overrides)
    return client.post("/api/auth/login", json=body)


class TestLogin:
    """Test POST /api/auth/login."""

    def test_login_returns_token_user_and_mailboxes(self, client):
        """
        Validates: a successful login provisions the user and mints a token

        Expected outcome:
        - 200 with success, token and the public user fields
        - Mailboxes listed with their roles
        """
        response = _login(client)
        body = response.get_json()

        assert response.status_code == 200
        assert body["success"] is True
        assert body["token"].count(".") == 2
        assert body["user"] == {"id": body["user"]["id"], "email": TEST_EMAIL, "name": "user"}
        roles = {m["path"]: m["type"] for m in body["mailboxes"]}
        assert roles["INBOX"] == "inbox"
        assert roles["Trash"] == "trash"

    def test_password_never_returned(self, client):
        assert TEST_PASSWORD not in _login(client).get_data(as_text=True)

    def test_explicit_servers_skip_discovery(self, client, fake_discovery):
        response = _login(client, imapServer="imap.example.com", imapPort=993, smtpServer="smtp.example.com",
                          smtpPort=587, smtpSecurity="starttls")

        assert response.status_code == 200
        fake_discovery.discover.assert_not_called()

    def test_wrong_password(self, client):
        response = _login(client, password="wrong")

        assert response.status_code == 401
        assert response.get_json()["error"] == "Authentication Failed"

    @pytest.mark.parametrize(
        "body",
        [
            {"email": "not-an-email", "password": "x"},
            {"email": TEST_EMAIL},
            {"email": TEST_EMAIL, "password": ""},
            {"email": TEST_EMAIL, "password": "x", "imapServer": "imap.example.com", "imapPort": "abc"},
            {"email": TEST_EMAIL, "password": "x", "imapServer": "imap.example.com", "imapPort": 70000},
        ],
    )
    def test_invalid_body(self, client, body):
        response = client.post("/api/auth/login", json=body)
        assert response.status_code == 400
        assert response.get_json()["error"] == "Validation Error"

    def test_repeated_failures_lock_account(self, client):
        """
        Validates: repeated bad passwords trigger the login lockout

        Expected outcome:
        - After the threshold, even the right password is refused with 429
        - Retry-After header present
        """
        for _ in range(5):
            assert _login(client, password="wrong").status_code == 401

        response = _login(client)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0


class TestTokenLifecycle:
    """Test verify, logout and session management."""

    def test_verify(self, client, auth_headers):
        response = client.post("/api/auth/verify", headers=auth_headers)

        assert response.status_code == 200
        assert response.get_json()["valid"] is True
        assert response.get_json()["user"]["email"] == TEST_EMAIL

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Basic dXNlcjpwYXNz"}, {"Authorization": "Bearer not.a.token"}],
    )
    def test_missing_or_bad_token(self, client, headers):
        response = client.post("/api/auth/verify", headers=headers)

        assert response.status_code == 401
        assert response.get_json()["error"] == "Unauthorized"

    def test_logout_revokes_token(self, client, auth_headers):
        assert client.post("/api/auth/logout", headers=auth_headers).status_code == 200
        assert client.post("/api/auth/verify", headers=auth_headers).status_code == 401

    def test_list_sessions_marks_current(self, client, auth_headers):
        _login(client)

        sessions = client.get("/api/auth/sessions", headers=auth_headers).get_json()["sessions"]

        assert len(sessions) == 2
        assert sum(1 for s in sessions if s["current"]) == 1

    def test_revoke_other_session(self, client, auth_headers):
        other_token = _login(client).get_json()["token"]
        other_headers = {"Authorization": f"Bearer {other_token}"}
        sessions = client.get("/api/auth/sessions", headers=auth_headers).get_json()["sessions"]
        other_jti = next(s["jti"] for s in sessions if not s["current"])

        response = client.delete(f"/api/auth/sessions/{other_jti}", headers=auth_headers)

        assert response.status_code == 200
        assert client.post("/api/auth/verify", headers=other_headers).status_code == 401
        assert client.post("/api/auth/verify", headers=auth_headers).status_code == 200

    def test_revoke_unknown_session(self, client, auth_headers):
        assert client.delete("/api/auth/sessions/unknown", headers=auth_headers).status_code == 404

    def test_unreadable_stored_credential(self, client, temp_db):
        """
        Validates: a stored password that no longer decrypts forces a new login

        Expected outcome:
        - 401 "Unauthorized" instead of a server error
        - The token stays rejected afterwards
        """
        body = _login(client).get_json()
        headers = {"Authorization": f"Bearer {body['token']}"}
        temp_db.update_encrypted_password(body["user"]["id"], "k1$00:11:22")

        response = client.get("/api/folders", headers=headers)

        assert response.status_code == 401
        assert response.get_json()["error"] == "Unauthorized"
        assert client.post("/api/auth/verify", headers=headers).status_code == 401


class TestAutoconfig:
    def test_autoconfig(self, client, fake_discovery):
        response = client.post("/api/auth/autoconfig", json={"email": " User@Example.com "})
        body = response.get_json()

        assert response.status_code == 200
        assert body["found"] is True
        assert body["config"]["imap"]["host"] == "imap.example.com"
        fake_discovery.discover.assert_called_once_with("user@example.com")

    def test_autoconfig_requires_email(self, client):
        assert client.post("/api/auth/autoconfig", json={"email": "nope"}).status_code == 400
