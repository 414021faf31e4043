# tests/services/test_waf.py
"""Tests for the request inspector."""

from __future__ import annotations

import json
import time

import pytest

from tracas_guard.services.audit import MemoryAuditSink
from tracas_guard.services.waf import (
    InspectedRequest,
    RequestCounterWindow,
    RequestInspector,
    StaticGeoResolver,
)

ATTACKER = "203.0.113.50"


@pytest.fixture()
def waf(audit: MemoryAuditSink, clock) -> RequestInspector:
    return RequestInspector(audit=audit, clock=clock)


def post(body: str, address: str = ATTACKER, path: str = "/api/v1/children") -> InspectedRequest:
    return InspectedRequest(address=address, method="POST", path=path, body=body)


def get(path: str, query: str = "", address: str = ATTACKER) -> InspectedRequest:
    return InspectedRequest(address=address, method="GET", path=path, query_string=query)


class TestSignatures:
    def test_sql_injection_in_body(self, waf: RequestInspector, audit: MemoryAuditSink) -> None:
        result = waf.inspect(post(json.dumps({"email": "' OR '1'='1"})))

        assert result.blocked
        assert result.category == "SQL_INJECTION"
        assert result.code == "WAF_BLOCKED"
        assert result.status_code == 403
        assert result.matches
        event = audit.of_kind("intrusion_detected")[-1]
        assert event.severity == "high"
        assert event.detail["category"] == "SQL_INJECTION"

    def test_xss_in_body(self, waf: RequestInspector) -> None:
        result = waf.inspect(post(json.dumps({"name": "<script>alert(1)</script>"})))

        assert result.blocked
        assert result.category == "XSS"

    def test_command_injection_in_body(self, waf: RequestInspector) -> None:
        result = waf.inspect(post("note=hello | cat /etc/hosts"))

        assert result.blocked
        assert result.category == "COMMAND_INJECTION"

    def test_sql_injection_wins_over_later_categories(self, waf: RequestInspector) -> None:
        result = waf.inspect(post("1 union select password from users <script>"))

        assert result.category == "SQL_INJECTION"

    def test_clean_json_passes(self, waf: RequestInspector) -> None:
        body = json.dumps({"name": "Budi", "age": 9, "note": "Pickup at 15:00, school gate"})

        assert not waf.inspect(post(body)).blocked

    def test_path_traversal_in_query(self, waf: RequestInspector) -> None:
        result = waf.inspect(get("/api/v1/files", "name=..%2F..%2F..%2Fetc%2Fpasswd"))

        assert result.blocked
        assert result.category == "PATH_TRAVERSAL"

    def test_path_traversal_in_body(self, waf: RequestInspector) -> None:
        result = waf.inspect(post('{"file": "/etc/shadow"}'))

        assert result.category == "PATH_TRAVERSAL"

    def test_sensitive_file_request(self, waf: RequestInspector) -> None:
        result = waf.inspect(get("/.env"))

        assert result.blocked
        assert result.category == "SENSITIVE_FILE_ACCESS"

    def test_read_only_requests_ignore_the_body(self, waf: RequestInspector) -> None:
        request = InspectedRequest(
            address=ATTACKER, method="GET", path="/api/v1/children", body="<script>x</script>"
        )

        assert not waf.inspect(request).blocked

    def test_url_encoded_query_is_decoded(self, waf: RequestInspector) -> None:
        result = waf.inspect(get("/search", "q=%3Cscript%3Ealert(1)%3C%2Fscript%3E"))

        assert result.category == "XSS"

    def test_disabled_rule_is_skipped(self, waf: RequestInspector) -> None:
        waf.set_rule_enabled("sql_injection", False)

        assert not waf.inspect(post("' OR '1'='1")).blocked

    def test_unknown_rule(self, waf: RequestInspector) -> None:
        with pytest.raises(ValueError):
            waf.set_rule_enabled("telepathy", True)

    def test_disabled_inspector_allows_everything(self, waf: RequestInspector) -> None:
        waf.set_enabled(False)

        assert not waf.inspect(post("' OR '1'='1")).blocked

    def test_keywords_split_across_lines_are_not_joined(self, waf: RequestInspector) -> None:
        body = "Please select a pickup time\nfrom the list below"

        assert not waf.inspect(post(body)).blocked

    def test_adversarial_body_is_scanned_in_linear_time(self, waf: RequestInspector) -> None:
        started = time.perf_counter()
        result = waf.inspect(post("'or" * 20_000))
        elapsed = time.perf_counter() - started

        assert not result.blocked
        assert elapsed < 2.0


class TestBursts:
    def test_burst_bans_the_address(self, waf: RequestInspector, audit: MemoryAuditSink) -> None:
        for _ in range(10):
            assert not waf.inspect(get("/api/v1/children")).blocked

        result = waf.inspect(get("/api/v1/children"))

        assert result.blocked
        assert result.code == "DDOS_PROTECTION"
        assert result.status_code == 429
        assert waf.is_banned(ATTACKER)
        assert audit.of_kind("ip_banned")[-1].detail["reason"] == "DDoS protection"

        follow_up = waf.inspect(get("/api/v1/children"))
        assert follow_up.code == "IP_BLOCKED"

    def test_spread_out_requests_are_fine(self, waf: RequestInspector, clock) -> None:
        for _ in range(30):
            assert not waf.inspect(get("/api/v1/children")).blocked
            clock.advance(1)

    def test_per_minute_limit(self, audit, clock) -> None:
        waf = RequestInspector(requests_per_minute=20, audit=audit, clock=clock)
        results = []
        for _ in range(21):
            results.append(waf.inspect(get("/api/v1/children")))
            clock.advance(0.5)

        assert not any(result.blocked for result in results[:20])
        assert results[20].code == "DDOS_PROTECTION"

    def test_unban_restores_access(self, waf: RequestInspector) -> None:
        for _ in range(11):
            waf.inspect(get("/api/v1/children"))
        assert waf.is_banned(ATTACKER)

        assert waf.unban(ATTACKER)

        assert not waf.is_banned(ATTACKER)
        assert not waf.inspect(get("/api/v1/children")).blocked
        assert not waf.unban(ATTACKER)

    def test_disabled_ddos_rule(self, waf: RequestInspector) -> None:
        waf.set_rule_enabled("ddos", False)

        for _ in range(50):
            assert not waf.inspect(get("/api/v1/children")).blocked


class TestBadRequestRatio:
    def test_ratio_ban_needs_enough_traffic(self, waf: RequestInspector, clock) -> None:
        for _ in range(10):
            waf.inspect(post("' OR '1'='1"))
            clock.advance(1)
        assert not waf.is_banned(ATTACKER)

        waf.inspect(post("' OR '1'='1"))

        assert waf.is_banned(ATTACKER)
        assert waf.bans()[0].reason == "High bad request ratio"

    def test_mostly_clean_traffic_is_not_banned(self, waf: RequestInspector, clock) -> None:
        for _ in range(15):
            waf.inspect(post('{"ok": true}'))
            clock.advance(1)
        for _ in range(5):
            waf.inspect(post("' OR '1'='1"))
            clock.advance(1)

        assert not waf.is_banned(ATTACKER)


class TestBans:
    @pytest.mark.parametrize("address", ["127.0.0.1", "::1"])
    def test_loopback_is_never_banned(self, waf: RequestInspector, address: str) -> None:
        assert not waf.ban(address, "test")
        assert not waf.is_banned(address)

    def test_loopback_survives_bursts(self, waf: RequestInspector) -> None:
        for _ in range(20):
            waf.inspect(get("/api/v1/children", address="127.0.0.1"))

        assert not waf.is_banned("127.0.0.1")

    def test_subscribers_receive_the_ban_set(self, waf: RequestInspector) -> None:
        snapshots: list[frozenset[str]] = []
        waf.subscribe(snapshots.append)

        waf.ban(ATTACKER, "manual")
        waf.unban(ATTACKER)

        assert snapshots == [frozenset(), frozenset({ATTACKER}), frozenset()]

    def test_ban_entries(self, waf: RequestInspector, clock) -> None:
        waf.ban("198.51.100.1", "first", {"source": "admin"})
        clock.advance(1)
        waf.ban("198.51.100.2", "second")

        entries = [entry.as_dict() for entry in waf.bans()]

        assert [entry["address"] for entry in entries] == ["198.51.100.1", "198.51.100.2"]
        assert entries[0]["details"] == {"source": "admin"}


class TestGeoRestriction:
    @pytest.fixture()
    def geo_waf(self, audit, clock) -> RequestInspector:
        resolver = StaticGeoResolver({"8.8.8.8": "ru", "1.1.1.1": "ID", "10.0.0.5": "RU"})
        return RequestInspector(
            allowed_countries=["ID", "SG"], geo_resolver=resolver, audit=audit, clock=clock
        )

    def test_disallowed_country(self, geo_waf: RequestInspector) -> None:
        result = geo_waf.inspect(get("/api/v1/children", address="8.8.8.8"))

        assert result.blocked
        assert result.code == "GEO_BLOCKED"
        assert result.details["country"] == "RU"

    def test_allowed_country(self, geo_waf: RequestInspector) -> None:
        assert not geo_waf.inspect(get("/api/v1/children", address="1.1.1.1")).blocked

    @pytest.mark.parametrize("address", ["10.0.0.5", "127.0.0.1", "9.9.9.9", "testclient"])
    def test_private_unknown_and_unparseable_addresses_pass(
        self, geo_waf: RequestInspector, address: str
    ) -> None:
        assert not geo_waf.inspect(get("/api/v1/children", address=address)).blocked

    def test_empty_allow_list_allows_everyone(self, geo_waf: RequestInspector) -> None:
        geo_waf.set_allowed_countries([])

        assert not geo_waf.inspect(get("/api/v1/children", address="8.8.8.8")).blocked


class TestHousekeeping:
    def test_prune_forgets_idle_addresses(self, waf: RequestInspector, clock) -> None:
        waf.inspect(get("/api/v1/children"))
        assert len(waf.counters) == 1

        clock.advance(waf.retention_seconds + 1)

        assert waf.prune() == 1
        assert len(waf.counters) == 0

    def test_counter_window_counts(self) -> None:
        window = RequestCounterWindow()
        for stamp in (0.0, 30.0, 59.5, 60.0):
            window.track("a", stamp)

        assert window.counts("a", 60.0) == (2, 3)
        assert window.record_bad("a") == (1, 4)
        assert window.record_bad("missing") == (0, 0)

    def test_status(self, waf: RequestInspector) -> None:
        waf.ban(ATTACKER, "manual")

        status = waf.status()

        assert status["enabled"] is True
        assert status["banned"] == 1
        assert set(status["rules"]) == {
            "sql_injection",
            "xss",
            "command_injection",
            "path_traversal",
            "ddos",
            "geo_restriction",
        }
