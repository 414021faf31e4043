# tests/v1/test_admin_api.py
"""Tests for the administrative security controls."""

from __future__ import annotations

import pyotp
import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN_ID, csrf_headers, login
from tracas_guard.services.keystore import KEY_ROLES
from tracas_guard.services.orchestrator import SecurityOrchestrator

BASE = "/api/v1/admin/security"


@pytest.fixture()
def admin_headers(client: TestClient) -> dict[str, str]:
    """Sign in as an admin and confirm the second factor for this session."""
    login(client, ADMIN_ID)
    headers = csrf_headers(client)
    secret = client.post("/api/v1/auth/2fa/setup", headers=headers).json()["secret"]
    response = client.post(
        "/api/v1/auth/2fa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=headers
    )
    assert response.status_code == 200
    return headers


class TestAccess:
    def test_requires_a_token(self, client: TestClient) -> None:
        response = client.get(f"{BASE}/status")

        assert response.status_code == 401
        assert response.json()["code"] == "NO_TOKEN"

    def test_parents_are_forbidden(self, client: TestClient) -> None:
        login(client)

        response = client.get(f"{BASE}/status")

        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

    def test_admins_need_a_verified_session(self, client: TestClient) -> None:
        login(client, ADMIN_ID)

        response = client.get(f"{BASE}/status")

        assert response.status_code == 403
        assert response.json()["code"] == "TWO_FACTOR_REQUIRED"

    def test_new_login_drops_the_second_factor(self, client: TestClient, admin_headers) -> None:
        assert client.get(f"{BASE}/status").status_code == 200

        login(client, ADMIN_ID)

        assert client.get(f"{BASE}/status").json()["code"] == "TWO_FACTOR_REQUIRED"


class TestControls:
    def test_status(self, client: TestClient, admin_headers) -> None:
        response = client.get(f"{BASE}/status")

        assert response.status_code == 200
        body = response.json()
        assert set(body["keys"]) == set(KEY_ROLES)
        assert body["waf"]["enabled"] is True
        assert body["rate_limiter"]["backend"] == "memory"
        assert all("material" not in entry for entry in body["keys"].values())

    def test_ban_lifecycle(self, client: TestClient, admin_headers) -> None:
        created = client.post(
            f"{BASE}/bans", json={"address": "198.51.100.9", "reason": "abuse"}, headers=admin_headers
        )
        assert created.status_code == 201

        bans = client.get(f"{BASE}/bans").json()
        assert [(entry["address"], entry["reason"]) for entry in bans] == [("198.51.100.9", "abuse")]

        assert client.delete(f"{BASE}/bans/198.51.100.9", headers=admin_headers).status_code == 200
        assert client.delete(f"{BASE}/bans/198.51.100.9", headers=admin_headers).status_code == 404
        assert client.get(f"{BASE}/bans").json() == []

    def test_loopback_cannot_be_banned(self, client: TestClient, admin_headers) -> None:
        response = client.post(f"{BASE}/bans", json={"address": "127.0.0.1"}, headers=admin_headers)

        assert response.status_code == 400

    def test_banning_the_caller_locks_them_out(self, client: TestClient, admin_headers) -> None:
        client.post(f"{BASE}/bans", json={"address": "testclient"}, headers=admin_headers)

        response = client.get(f"{BASE}/status")

        assert response.status_code == 403
        assert response.json()["code"] == "IP_BLOCKED"

    def test_toggle_rules(self, client: TestClient, admin_headers, guard: SecurityOrchestrator) -> None:
        response = client.put(f"{BASE}/waf/rules/xss", json={"enabled": False}, headers=admin_headers)

        assert response.status_code == 200
        assert guard.waf.rules["xss"] is False
        unknown = client.put(f"{BASE}/waf/rules/telepathy", json={"enabled": False}, headers=admin_headers)
        assert unknown.status_code == 404

    def test_toggle_inspector(self, client: TestClient, admin_headers, guard) -> None:
        response = client.put(f"{BASE}/waf/enabled", json={"enabled": False}, headers=admin_headers)

        assert response.json() == {"enabled": False}
        assert guard.waf.enabled is False

    def test_allowed_countries(self, client: TestClient, admin_headers) -> None:
        response = client.put(
            f"{BASE}/waf/countries", json={"countries": ["id", "sg"]}, headers=admin_headers
        )

        assert response.json() == {"allowed_countries": ["ID", "SG"]}
        invalid = client.put(
            f"{BASE}/waf/countries", json={"countries": ["IDN"]}, headers=admin_headers
        )
        assert invalid.status_code == 422

    def test_rotate_one_role(self, client: TestClient, admin_headers, guard) -> None:
        before = guard.keystore.active("mac").id

        response = client.post(f"{BASE}/keys/rotate", json={"role": "mac"}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["rotated"] == {"mac": guard.keystore.active("mac").id}
        assert guard.keystore.active("mac").id != before

    def test_rotate_everything_keeps_the_session_alive(self, client: TestClient, admin_headers) -> None:
        response = client.post(f"{BASE}/keys/rotate", json={}, headers=admin_headers)

        assert set(response.json()["rotated"]) == set(KEY_ROLES)
        # The access token was signed by the previous key, still inside the overlap window.
        assert client.get(f"{BASE}/status").status_code == 200

    def test_rotate_unknown_role(self, client: TestClient, admin_headers) -> None:
        response = client.post(f"{BASE}/keys/rotate", json={"role": "bogus"}, headers=admin_headers)

        assert response.status_code == 400
