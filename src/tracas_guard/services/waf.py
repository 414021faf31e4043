"""Request inspection: attack signatures, burst heuristics, geo restriction and bans.

Signatures are plain case-insensitive regular expressions grouped by category.
Categories are checked in a fixed priority order and inspection stops at the
first category that matches; the matched patterns are reported for audit but
never returned to callers.
"""

from __future__ import annotations

import ipaddress
import logging
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol
from urllib.parse import unquote_plus

from tracas_guard.core.settings import Settings
from tracas_guard.services.audit import AuditSink, SecurityEvent

logger = logging.getLogger(__name__)

RULE_SQL_INJECTION = "sql_injection"
RULE_XSS = "xss"
RULE_COMMAND_INJECTION = "command_injection"
RULE_PATH_TRAVERSAL = "path_traversal"
RULE_DDOS = "ddos"
RULE_GEO_RESTRICTION = "geo_restriction"

WAF_RULES = (
    RULE_SQL_INJECTION,
    RULE_XSS,
    RULE_COMMAND_INJECTION,
    RULE_PATH_TRAVERSAL,
    RULE_DDOS,
    RULE_GEO_RESTRICTION,
)

READ_ONLY_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
NEVER_BANNED = frozenset({"127.0.0.1", "::1"})

_SHELLS = r"(?:cmd|command|powershell|bash|sh|ksh|csh)"
# Bounded, single-line gap between signature keywords; keeps every pattern linear.
_GAP = r"[^\n]{0,100}?"


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


SIGNATURES: dict[str, tuple[re.Pattern[str], ...]] = {
    RULE_SQL_INJECTION: _compile(
        rf"'{_GAP}--",
        rf"union{_GAP}select",
        rf"exec{_GAP}sp_",
        rf"insert{_GAP}into{_GAP}values",
        rf"select{_GAP}from",
        rf"delete{_GAP}from",
        rf"drop{_GAP}table",
        rf"waitfor{_GAP}delay",
        rf";{_GAP};",
        r"'\s*or\s*'?\w+'?\s*=\s*'?\w+",
        r"'\s*;\s*(?:drop|delete|update|insert)\s",
    ),
    RULE_XSS: _compile(
        r"<script[^>]{0,200}>",
        r"javascript:",
        r"onerror=",
        r"onload=",
        r"onclick=",
        r"eval\([^)]{0,200}\)",
        r"alert\([^)]{0,200}\)",
        r"document\.cookie",
        r"document\.location",
        r"document\.write",
    ),
    RULE_COMMAND_INJECTION: _compile(
        rf"\|\s*{_SHELLS}",
        rf";\s*{_SHELLS}",
        r"`[^`\n]{0,200}`",
        rf"system\({_GAP}\)",
        rf"exec\({_GAP}\)",
        r"\$\([^)]{0,200}\)",
        r"\|\s*(?:ls|dir|cat|ps|netstat)",
    ),
    RULE_PATH_TRAVERSAL: _compile(
        r"(?:\.\.[/\\]){3}",
        r"etc/passwd",
        r"etc/shadow",
        r"/proc/self/environ",
        r"/var/log/",
        r"/windows/system32/",
        r"c:\\windows\\system32",
    ),
}

# Sensitive configuration files requested by scanners; checked on read-only requests.
SENSITIVE_FILES = _compile(
    r"\.htaccess",
    r"\.htpasswd",
    r"config\.php",
    r"wp-config\.php",
    r"config\.ini",
    r"\.env\b",
    r"\.git/",
    r"\.svn/",
)

_URL_SCAN_ORDER = (RULE_SQL_INJECTION, RULE_XSS, RULE_PATH_TRAVERSAL)
_BODY_SCAN_ORDER = (RULE_SQL_INJECTION, RULE_XSS, RULE_COMMAND_INJECTION)

_CATEGORY_LABELS = {
    RULE_SQL_INJECTION: "SQL_INJECTION",
    RULE_XSS: "XSS",
    RULE_COMMAND_INJECTION: "COMMAND_INJECTION",
    RULE_PATH_TRAVERSAL: "PATH_TRAVERSAL",
    "sensitive_file": "SENSITIVE_FILE_ACCESS",
}


class GeoResolver(Protocol):
    """Maps a network address to an ISO country code, or None when unknown."""

    def country(self, address: str) -> str | None: ...


class StaticGeoResolver:
    """Resolver backed by a fixed address -> country mapping."""

    def __init__(self, mapping: Mapping[str, str] | None = None) -> None:
        self._mapping = {address: code.upper() for address, code in (mapping or {}).items()}

    def country(self, address: str) -> str | None:
        return self._mapping.get(address)


@dataclass(frozen=True)
class InspectedRequest:
    """The parts of an inbound request the inspector looks at."""

    address: str
    method: str
    path: str
    query_string: str = ""
    body: str = ""

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query_string}" if self.query_string else self.path


@dataclass
class InspectionResult:
    """Outcome of :meth:`RequestInspector.inspect`."""

    blocked: bool
    reason: str | None = None
    category: str | None = None
    code: str | None = None
    status_code: int = 403
    matches: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allowed(cls) -> InspectionResult:
        return cls(blocked=False)


@dataclass(frozen=True)
class BanEntry:
    address: str
    reason: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "reason": self.reason,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


@dataclass
class _AddressWindow:
    timestamps: deque[float] = field(default_factory=deque)
    total_requests: int = 0
    bad_requests: int = 0


class RequestCounterWindow:
    """Per-address sliding record of request times and detection counters."""

    def __init__(self) -> None:
        self._windows: dict[str, _AddressWindow] = {}
        self._lock = threading.Lock()

    def track(self, address: str, now: float) -> None:
        with self._lock:
            window = self._windows.setdefault(address, _AddressWindow())
            window.timestamps.append(now)
            window.total_requests += 1

    def record_bad(self, address: str) -> tuple[int, int]:
        """Count a detection; return ``(bad_requests, total_requests)``."""
        with self._lock:
            window = self._windows.get(address)
            if window is None:
                return 0, 0
            window.bad_requests += 1
            return window.bad_requests, window.total_requests

    def counts(self, address: str, now: float) -> tuple[int, int]:
        """Return requests seen in the last second and the last minute."""
        with self._lock:
            window = self._windows.get(address)
            if window is None:
                return 0, 0
            last_second = sum(1 for stamp in window.timestamps if stamp > now - 1.0)
            last_minute = sum(1 for stamp in window.timestamps if stamp > now - 60.0)
            return last_second, last_minute

    def prune(self, cutoff: float) -> int:
        """Drop timestamps at or before ``cutoff`` and forget idle addresses."""
        removed = 0
        with self._lock:
            for address in list(self._windows):
                window = self._windows[address]
                while window.timestamps and window.timestamps[0] <= cutoff:
                    window.timestamps.popleft()
                if not window.timestamps:
                    del self._windows[address]
                    removed += 1
        return removed

    def forget(self, address: str) -> None:
        with self._lock:
            self._windows.pop(address, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RequestInspector:
    """Signature and heuristic request inspection with automatic banning."""

    def __init__(
        self,
        *,
        enabled: bool = True,
        rules: Mapping[str, bool] | None = None,
        allowed_countries: Iterable[str] = (),
        geo_resolver: GeoResolver | None = None,
        requests_per_second: int = 10,
        requests_per_minute: int = 100,
        bad_request_ratio: float = 0.5,
        min_requests_for_ratio: int = 10,
        retention_seconds: int = 300,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.enabled = enabled
        self.rules = {rule: True for rule in WAF_RULES}
        for rule, value in (rules or {}).items():
            if rule in self.rules:
                self.rules[rule] = bool(value)
        self.allowed_countries = [code.upper() for code in allowed_countries]
        self.geo_resolver = geo_resolver
        self.requests_per_second = requests_per_second
        self.requests_per_minute = requests_per_minute
        self.bad_request_ratio = bad_request_ratio
        self.min_requests_for_ratio = min_requests_for_ratio
        self.retention_seconds = retention_seconds
        self.counters = RequestCounterWindow()
        self._audit = audit
        self._clock = clock
        self._bans: dict[str, BanEntry] = {}
        self._bans_lock = threading.Lock()
        self._subscribers: list[Callable[[frozenset[str]], None]] = []

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        geo_resolver: GeoResolver | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> RequestInspector:
        return cls(
            enabled=settings.waf_active,
            rules=settings.waf_rules,
            allowed_countries=settings.waf_allowed_countries,
            geo_resolver=geo_resolver,
            requests_per_second=settings.ddos_requests_per_second,
            requests_per_minute=settings.ddos_requests_per_minute,
            bad_request_ratio=settings.waf_bad_request_ratio,
            min_requests_for_ratio=settings.waf_min_requests_for_ratio,
            retention_seconds=settings.waf_retention_seconds,
            audit=audit,
            clock=clock,
        )

    # --- inspection -----------------------------------------------------------------
    def inspect(self, request: InspectedRequest) -> InspectionResult:
        """Return whether ``request`` should be blocked and why."""
        if not self.enabled:
            return InspectionResult.allowed()

        address = request.address
        if self.is_banned(address):
            return InspectionResult(
                blocked=True,
                reason="IP address has been blocked",
                category="IP_BLOCKED",
                code="IP_BLOCKED",
            )

        now = self._clock()
        self.counters.track(address, now)

        if self.rules[RULE_GEO_RESTRICTION]:
            geo = self._check_geolocation(address)
            if geo.blocked:
                self._record_attack(request, geo)
                return geo

        url = unquote_plus(request.url)
        if request.method.upper() in READ_ONLY_METHODS:
            result = self._scan(url, _URL_SCAN_ORDER)
            if result is None and self.rules[RULE_PATH_TRAVERSAL]:
                result = self._match("sensitive_file", SENSITIVE_FILES, url)
        else:
            result = self._scan(request.body, _BODY_SCAN_ORDER)
            if result is None and self.rules[RULE_PATH_TRAVERSAL]:
                result = self._match(
                    RULE_PATH_TRAVERSAL,
                    SIGNATURES[RULE_PATH_TRAVERSAL],
                    f"{url}\n{request.body}",
                )
        if result is not None:
            self._record_attack(request, result)
            return result

        if self.rules[RULE_DDOS]:
            ddos = self._check_ddos(request, now)
            if ddos.blocked:
                return ddos
        return InspectionResult.allowed()

    def _scan(self, payload: str, order: Iterable[str]) -> InspectionResult | None:
        if not payload:
            return None
        for rule in order:
            if not self.rules[rule]:
                continue
            result = self._match(rule, SIGNATURES[rule], payload)
            if result is not None:
                return result
        return None

    @staticmethod
    def _match(
        rule: str, patterns: Iterable[re.Pattern[str]], payload: str
    ) -> InspectionResult | None:
        matches = [pattern.pattern for pattern in patterns if pattern.search(payload)]
        if not matches:
            return None
        category = _CATEGORY_LABELS[rule]
        return InspectionResult(
            blocked=True,
            reason=f"Potential {category.replace('_', ' ').lower()} detected",
            category=category,
            code="WAF_BLOCKED",
            matches=matches,
            details={"rule": rule},
        )

    def _check_geolocation(self, address: str) -> InspectionResult:
        if not self.allowed_countries or self.geo_resolver is None:
            return InspectionResult.allowed()
        try:
            parsed = ipaddress.ip_address(address)
        except ValueError:
            return InspectionResult.allowed()
        if parsed.is_private or parsed.is_loopback:
            return InspectionResult.allowed()
        country = self.geo_resolver.country(address)
        if not country or country.upper() in self.allowed_countries:
            return InspectionResult.allowed()
        return InspectionResult(
            blocked=True,
            reason=f"Access from country {country} is not allowed",
            category="GEO_BLOCKING",
            code="GEO_BLOCKED",
            details={"country": country, "allowed_countries": list(self.allowed_countries)},
        )

    def _check_ddos(self, request: InspectedRequest, now: float) -> InspectionResult:
        per_second, per_minute = self.counters.counts(request.address, now)
        if per_second <= self.requests_per_second and per_minute <= self.requests_per_minute:
            return InspectionResult.allowed()
        details = {"requests_last_second": per_second, "requests_last_minute": per_minute}
        self.ban(request.address, "DDoS protection", details)
        return InspectionResult(
            blocked=True,
            reason="Too many requests in a short period",
            category="DDOS",
            code="DDOS_PROTECTION",
            status_code=429,
            details=details,
        )

    def _record_attack(self, request: InspectedRequest, result: InspectionResult) -> None:
        self._emit(
            SecurityEvent(
                event_kind="intrusion_detected",
                severity="high",
                address=request.address,
                path=request.path,
                method=request.method,
                detail={
                    "category": result.category,
                    "matches": list(result.matches),
                    **result.details,
                },
            )
        )
        bad, total = self.counters.record_bad(request.address)
        if total > self.min_requests_for_ratio and bad / total > self.bad_request_ratio:
            self.ban(
                request.address,
                "High bad request ratio",
                {"bad_requests": bad, "total_requests": total, "ratio": bad / total},
            )

    # --- bans -----------------------------------------------------------------------
    def ban(self, address: str, reason: str, details: Mapping[str, Any] | None = None) -> bool:
        """Ban ``address``; loopback addresses are never banned."""
        if address in NEVER_BANNED:
            return False
        entry = BanEntry(
            address=address, reason=reason, timestamp=self._clock(), details=dict(details or {})
        )
        with self._bans_lock:
            self._bans[address] = entry
            snapshot = frozenset(self._bans)
        logger.warning("IP blocked: %s (%s)", address, reason)
        self._emit(
            SecurityEvent(
                event_kind="ip_banned",
                severity="high",
                address=address,
                detail={"reason": reason, **entry.details},
            )
        )
        self._publish(snapshot)
        return True

    def unban(self, address: str) -> bool:
        with self._bans_lock:
            removed = self._bans.pop(address, None) is not None
            snapshot = frozenset(self._bans)
        if removed:
            self.counters.forget(address)
            logger.info("IP unblocked: %s", address)
            self._emit(SecurityEvent(event_kind="ip_unbanned", address=address))
            self._publish(snapshot)
        return removed

    def is_banned(self, address: str) -> bool:
        with self._bans_lock:
            return address in self._bans

    def bans(self) -> list[BanEntry]:
        with self._bans_lock:
            return sorted(self._bans.values(), key=lambda entry: entry.timestamp)

    def subscribe(self, callback: Callable[[frozenset[str]], None]) -> None:
        """Register ``callback`` to receive the full ban set after every change."""
        self._subscribers.append(callback)
        with self._bans_lock:
            snapshot = frozenset(self._bans)
        callback(snapshot)

    def _publish(self, snapshot: frozenset[str]) -> None:
        for callback in self._subscribers:
            callback(snapshot)

    # --- housekeeping and admin -----------------------------------------------------
    def prune(self, now: float | None = None) -> int:
        """Forget request history older than the retention window."""
        current = self._clock() if now is None else now
        return self.counters.prune(current - self.retention_seconds)

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled
        logger.info("WAF %s", "enabled" if enabled else "disabled")

    def set_rule_enabled(self, rule: str, enabled: bool) -> None:
        if rule not in self.rules:
            raise ValueError(f"Unknown WAF rule: {rule}")
        self.rules[rule] = enabled
        logger.info("WAF rule %s %s", rule, "enabled" if enabled else "disabled")

    def set_allowed_countries(self, countries: Iterable[str]) -> None:
        self.allowed_countries = [code.strip().upper() for code in countries if code.strip()]
        logger.info("WAF allowed countries: %s", ", ".join(self.allowed_countries) or "any")

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "rules": dict(self.rules),
            "allowed_countries": list(self.allowed_countries),
            "banned": len(self.bans()),
            "tracked_addresses": len(self.counters),
        }

    def _emit(self, event: SecurityEvent) -> None:
        if self._audit is not None:
            self._audit.emit(event)
