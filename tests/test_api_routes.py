"""
tests/test_api_routes.py -- Integration tests for the default HTTP routes.

These tests exercise the full stack: FastAPI routing -> dependency injection
-> SessionResolver/AuthController/UserManager -> AdminStore and the cache ->
{"errno", "data"} envelope. The api_client fixture seeds root/admin.

Coverage:
  - /status 401 when anonymous, 200 once signed in (cookie or header)
  - /login success sets the cookie; failures return 403 with errno
  - /logout clears the session; a second logout fails
  - /register signs the new user in; duplicate email rejected
  - /useradd, /userlist, /userdel as root
  - /chpasswd and /chbio
  - /byway passwordless sign-in and its off switch
  - malformed bodies use the ErrorResponse envelope
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.errors import ErrorCode


def _login(client: TestClient, uname: str = "root", upass: str = "admin"):
    return client.post("/api/v1/login", json={"uname": uname, "upass": upass})


def _register_jack(client: TestClient):
    return client.post(
        "/api/v1/register",
        json={"addname": "jack", "addpass1": "jackpass", "addpass2": "jackpass", "email": "jack@example.org"},
    )


class TestSessionRoutes:
    def test_status_anonymous(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/status")
        assert resp.status_code == 401
        assert resp.json() == {"errno": ErrorCode.NOT_LOGGED_IN, "data": None}

    def test_login_sets_cookie(self, api_client: TestClient) -> None:
        resp = _login(api_client)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["errno"] == 0
        assert body["data"]["uid"] == 1
        assert api_client.cookies.get("keygate") == body["data"]["token"]
        assert resp.headers["Cache-Control"] == "no-store"
        assert "httponly" in resp.headers["set-cookie"].lower()

    def test_status_after_login(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.get("/api/v1/status")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["uname"] == "root"
        assert "upass" not in data
        assert "token" not in data

    def test_authorization_header(self, api_client: TestClient) -> None:
        token = _login(api_client).json()["data"]["token"]
        api_client.cookies.clear()
        resp = api_client.get("/api/v1/status", headers={"Authorization": f"keygate {token}"})
        assert resp.status_code == 200
        assert resp.json()["data"]["uid"] == 1

    def test_wrong_scheme_ignored(self, api_client: TestClient) -> None:
        token = _login(api_client).json()["data"]["token"]
        api_client.cookies.clear()
        resp = api_client.get("/api/v1/status", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401

    def test_login_wrong_password(self, api_client: TestClient) -> None:
        resp = _login(api_client, upass="nope")
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.WRONG_PASSWORD
        assert "keygate" not in api_client.cookies

    def test_login_empty_body(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/login", json={})
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.DATA_INCOMPLETE

    def test_login_twice(self, api_client: TestClient) -> None:
        _login(api_client)
        assert _login(api_client).json()["errno"] == ErrorCode.ALREADY_LOGGED_IN

    def test_logout(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/logout")
        assert resp.status_code == 200
        assert resp.json()["errno"] == 0
        assert api_client.get("/api/v1/status").status_code == 401

    def test_double_logout(self, api_client: TestClient) -> None:
        token = _login(api_client).json()["data"]["token"]
        headers = {"Authorization": f"keygate {token}"}
        api_client.cookies.clear()
        assert api_client.post("/api/v1/logout", headers=headers).status_code == 200
        resp = api_client.post("/api/v1/logout", headers=headers)
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.NOT_LOGGED_IN


class TestAccountRoutes:
    def test_register_signs_in(self, api_client: TestClient) -> None:
        resp = _register_jack(api_client)
        assert resp.status_code == 200, resp.text
        assert resp.json()["data"]["uname"] == "jack"
        assert api_client.get("/api/v1/status").json()["data"]["email"] == "jack@example.org"

    def test_register_duplicate_email(self, api_client: TestClient) -> None:
        _register_jack(api_client)
        api_client.post("/api/v1/logout")
        resp = api_client.post(
            "/api/v1/register",
            json={"addname": "jeremy", "addpass1": "jeremypass", "addpass2": "jeremypass", "email": "jack@example.org"},
        )
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.EMAIL_EXISTS

    def test_register_password_mismatch(self, api_client: TestClient) -> None:
        resp = api_client.post(
            "/api/v1/register",
            json={"addname": "jack", "addpass1": "jackpass", "addpass2": "jackpas", "email": "jack@example.org"},
        )
        assert resp.json()["errno"] == ErrorCode.PASSWORD_MISMATCH

    def test_register_disabled(self, api_client: TestClient) -> None:
        api_client.app.state.settings.self_registration_enabled = False
        resp = _register_jack(api_client)
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.SELF_REGISTER_NOT_ALLOWED

    def test_chpasswd(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/chpasswd", json={"pass0": "admin", "pass1": "n3wpass", "pass2": "n3wpass"})
        assert resp.status_code == 200, resp.text
        api_client.post("/api/v1/logout")
        assert _login(api_client, upass="n3wpass").status_code == 200

    def test_chpasswd_requires_old_password(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/chpasswd", json={"pass1": "n3wpass", "pass2": "n3wpass"})
        assert resp.json()["errno"] == ErrorCode.DATA_INCOMPLETE

    def test_chpasswd_reports_reason(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/chpasswd", json={"pass0": "admin", "pass1": "abc", "pass2": "abc"})
        assert resp.json() == {"errno": ErrorCode.PASSWORD_INVALID, "data": ErrorCode.PASSWORD_TOO_SHORT}

    def test_chbio(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/chbio", json={"fname": "Root", "site": "https://example.org"})
        assert resp.status_code == 200
        data = api_client.get("/api/v1/status").json()["data"]
        assert data["fname"] == "Root"
        assert data["site"] == "https://example.org"


class TestAdminRoutes:
    def test_useradd_list_delete(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post(
            "/api/v1/useradd", json={"addname": "jack", "addpass1": "jackpass", "email": "jack@example.org"}
        )
        assert resp.status_code == 200, resp.text
        uid = resp.json()["data"]["uid"]

        rows = api_client.post("/api/v1/userlist", json={"order": "ASC"}).json()["data"]
        assert [r["uname"] for r in rows] == ["root", "jack"]

        assert api_client.post("/api/v1/userdel", json={"uid": uid}).status_code == 200
        rows = api_client.post("/api/v1/userlist", json={}).json()["data"]
        assert [r["uname"] for r in rows] == ["root"]

    def test_userdel_root(self, api_client: TestClient) -> None:
        _login(api_client)
        resp = api_client.post("/api/v1/userdel", json={"uid": 1})
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.NOT_AUTHORIZED

    def test_userlist_anonymous(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/userlist", json={})
        assert resp.status_code == 403
        assert resp.json()["errno"] == ErrorCode.NOT_LOGGED_IN

    def test_userlist_non_root(self, api_client: TestClient) -> None:
        _register_jack(api_client)
        resp = api_client.post("/api/v1/userlist", json={})
        assert resp.json()["errno"] == ErrorCode.NOT_AUTHORIZED


class TestByway:
    def test_byway_signs_in(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/byway", json={"uname": "jack", "uservice": "github"})
        assert resp.status_code == 200, resp.text
        data = resp.json()["data"]
        assert data["uname"] == "+jack:github"
        assert api_client.cookies.get("keygate") == data["token"]
        assert api_client.get("/api/v1/status").json()["data"]["uid"] == data["uid"]

    def test_byway_disabled(self, api_client: TestClient) -> None:
        api_client.app.state.settings.byway_enabled = False
        resp = api_client.post("/api/v1/byway", json={"uname": "jack", "uservice": "github"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"


class TestErrorEnvelope:
    def test_malformed_json(self, api_client: TestClient) -> None:
        resp = api_client.post("/api/v1/login", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_unknown_route(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "http_404"
