# tests/conftest.py
from __future__ import annotations

import time
from collections.abc import Callable, Generator, Iterator
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from tracas_guard.core.settings import Settings
from tracas_guard.main import create_app
from tracas_guard.services.audit import MemoryAuditSink
from tracas_guard.services.identity import AccountRecord
from tracas_guard.services.keystore import KeyMaterialStore
from tracas_guard.services.orchestrator import SecurityOrchestrator

PASSWORD = "correct horse battery staple"
PARENT_ID = "parent@example.com"
ADMIN_ID = "admin@example.com"
BOUND_ID = "bound@example.com"
BOUND_DEVICE = "device-0001"

# account id -> (role, device bindings)
ACCOUNTS: dict[str, tuple[str, frozenset[str]]] = {
    PARENT_ID: ("parent", frozenset()),
    ADMIN_ID: ("admin", frozenset()),
    BOUND_ID: ("parent", frozenset({BOUND_DEVICE})),
}


class FakeClock:
    """Manually advanced time source shared by the components under test."""

    def __init__(self, start: float | None = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings_factory(tmp_path) -> Callable[..., Settings]:
    def build(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "environment": "local",
            "keys_dir": str(tmp_path / "keys"),
            "database_url": "sqlite://",
            "secret_key": "test-session-secret",
            "fingerprint_secret": "test-fingerprint-secret",
            "two_factor_master_key": "test-two-factor-master-key",
            "waf_enabled": True,
            "redis_url": None,
            "rate_limit_auth": (50, 1800),
            "rate_limit_sensitive": (50, 3600),
            # TestClient requests arrive faster than any real client.
            "ddos_requests_per_second": 1000,
            "ddos_requests_per_minute": 10_000,
        }
        values.update(overrides)
        return Settings(**values)

    return build


@pytest.fixture()
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    return settings_factory()


@pytest.fixture()
def keystore(tmp_path, clock: FakeClock) -> KeyMaterialStore:
    store = KeyMaterialStore(tmp_path / "store", clock=clock)
    store.initialize()
    return store


@pytest.fixture()
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture()
def guard_factory(
    settings_factory: Callable[..., Settings], audit: MemoryAuditSink
) -> Generator[Callable[..., SecurityOrchestrator], None, None]:
    created: list[SecurityOrchestrator] = []

    def build(*, clock: Callable[[], float] | None = None, **overrides: Any) -> SecurityOrchestrator:
        collaborators: dict[str, Any] = {"audit": audit}
        if clock is not None:
            collaborators["clock"] = clock
        guard = SecurityOrchestrator(settings_factory(**overrides), **collaborators)
        for account_id, (role, bindings) in ACCOUNTS.items():
            guard.identity_store.add(  # type: ignore[attr-defined]
                AccountRecord(
                    account_id=account_id,
                    password_hash=guard.hash_password(PASSWORD),
                    role=role,
                    device_bindings=bindings,
                )
            )
        created.append(guard)
        return guard

    try:
        yield build
    finally:
        for guard in created:
            guard.close()


@pytest.fixture()
def guard(guard_factory: Callable[..., SecurityOrchestrator]) -> SecurityOrchestrator:
    return guard_factory()


@pytest.fixture()
def app(guard: SecurityOrchestrator) -> FastAPI:
    return create_app(guard=guard)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def client_factory(
    guard_factory: Callable[..., SecurityOrchestrator],
) -> Generator[Callable[..., TestClient], None, None]:
    """Build a client around a guard with custom settings or clock."""
    clients: list[TestClient] = []

    def build(*, clock: Callable[[], float] | None = None, **overrides: Any) -> TestClient:
        test_client = TestClient(create_app(guard=guard_factory(clock=clock, **overrides)))
        test_client.__enter__()
        clients.append(test_client)
        return test_client

    try:
        yield build
    finally:
        for test_client in clients:
            test_client.__exit__(None, None, None)


def csrf_headers(client: TestClient) -> dict[str, str]:
    """Fetch a CSRF token (setting its cookie) and return the replay header."""
    response = client.get("/api/v1/auth/csrf")
    assert response.status_code == 200
    return {"X-CSRF-Token": response.json()["csrf_token"]}


def login(
    client: TestClient, account_id: str = PARENT_ID, **extra: Any
) -> dict[str, Any]:
    response = client.post(
        "/api/v1/auth/login",
        json={"account_id": account_id, "password": PASSWORD, **extra},
        headers=csrf_headers(client),
    )
    assert response.status_code == 200, response.text
    return response.json()
