# tests/v1/test_security_pipeline.py
"""End-to-end behaviour of the request screening middleware."""

from __future__ import annotations

from collections.abc import Callable

from fastapi.testclient import TestClient

from conftest import PARENT_ID, PASSWORD, FakeClock
from tracas_guard.main import create_app


def test_health(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestHeaders:
    def test_hardening_headers(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "Cache-Control" not in response.headers
        assert "Strict-Transport-Security" not in response.headers

    def test_api_responses_are_not_cached(self, client: TestClient) -> None:
        response = client.get("/api/v1/auth/csrf")

        assert response.headers["Cache-Control"].startswith("no-store")
        assert response.headers["Pragma"] == "no-cache"

    def test_rate_limit_headers(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.headers["RateLimit-Limit"] == "100"
        assert int(response.headers["RateLimit-Remaining"]) == 99

    def test_malformed_device_id(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Device-ID": "bad id!"})

        assert response.status_code == 403
        assert response.json()["code"] == "INVALID_DEVICE_ID"


class TestInspection:
    def test_sql_injection_is_blocked_before_csrf(self, client: TestClient) -> None:
        response = client.post(
            "/api/v1/auth/login", json={"account_id": "' OR '1'='1", "password": PASSWORD}
        )

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "WAF_BLOCKED"
        assert set(body) == {"success", "message", "code"}

    def test_xss_in_query(self, client: TestClient) -> None:
        response = client.get("/health", params={"q": "<script>alert(1)</script>"})

        assert response.status_code == 403
        assert response.json()["code"] == "WAF_BLOCKED"

    def test_oversized_body_is_refused_unread(self, client_factory: Callable[..., TestClient]) -> None:
        client = client_factory(max_body_bytes=1024)

        response = client.post("/api/v1/auth/login", content=b"'or" * 1000)

        assert response.status_code == 413
        assert response.json()["code"] == "PAYLOAD_TOO_LARGE"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_body_under_the_limit_is_screened(self, client_factory: Callable[..., TestClient]) -> None:
        client = client_factory(max_body_bytes=1024)

        response = client.post(
            "/api/v1/auth/login", json={"account_id": "' OR '1'='1", "password": PASSWORD}
        )

        assert response.json()["code"] == "WAF_BLOCKED"


class TestThrottling:
    def test_auth_budget(self, client_factory: Callable[..., TestClient]) -> None:
        client = client_factory(rate_limit_auth=(3, 1800))
        payload = {"account_id": PARENT_ID, "password": PASSWORD}

        codes = [client.post("/api/v1/auth/login", json=payload).json()["code"] for _ in range(3)]
        response = client.post("/api/v1/auth/login", json=payload)

        assert codes == ["CSRF_TOKEN_MISSING"] * 3
        assert response.status_code == 429
        assert response.json()["code"] == "AUTH_ATTEMPTS_EXCEEDED"
        assert int(response.headers["Retry-After"]) > 0

    def test_burst_bans_the_client(self, client_factory: Callable[..., TestClient]) -> None:
        client = client_factory(clock=FakeClock(), ddos_requests_per_second=3)

        statuses = [client.get("/health").status_code for _ in range(3)]
        burst = client.get("/health")
        after = client.get("/health")

        assert statuses == [200, 200, 200]
        assert burst.status_code == 429
        assert burst.json()["code"] == "DDOS_PROTECTION"
        assert after.status_code == 403
        assert after.json()["code"] == "IP_BLOCKED"


def test_unexpected_errors_are_generic(guard) -> None:
    app = create_app(guard=guard)

    @app.get("/explode")
    async def explode() -> None:
        raise RuntimeError("database password is hunter2")

    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/explode")

    assert response.status_code == 500
    assert response.json() == {
        "success": False,
        "message": "Internal server error.",
        "code": "INTERNAL_ERROR",
    }
