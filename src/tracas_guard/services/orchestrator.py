"""Composes the security components into one ordered request pipeline.

Stage order for every inbound request: ban check, header validation, rate
limit, WAF inspection, CSRF check. Protected routes then run token
verification and the role check. Each stage raises a ``SecurityError`` to
short-circuit; nothing after a failing stage runs.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, NoReturn
from urllib.parse import urlsplit

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from tracas_guard.core import security
from tracas_guard.core.errors import (
    DeviceMismatchError,
    InsufficientRoleError,
    InvalidCredentialsError,
    InvalidHeadersError,
    InvalidTokenError,
    IpBlockedError,
    KeyManagementError,
    MissingCredentialsError,
    RateLimitExceededError,
    SecurityError,
    TokenExpiredError,
    WafBlockedError,
)
from tracas_guard.core.settings import Settings
from tracas_guard.db import create_db_engine, create_session_factory, create_tables
from tracas_guard.services.audit import (
    AuditSink,
    FanOutAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
    SecurityEvent,
)
from tracas_guard.services.csrf import SAFE_METHODS, CsrfGuard
from tracas_guard.services.identity import IdentityStore, InMemoryIdentityStore
from tracas_guard.services.keystore import (
    KEY_ROLES,
    ROLE_PASSWORD_KDF,
    EncryptedEnvelope,
    KeyMaterialStore,
    KeyRotationWorker,
)
from tracas_guard.services.rate_limiter import AdaptiveRateLimiter, RateLimitDecision
from tracas_guard.services.tokens import TOKEN_KIND_REFRESH, TokenPair, TokenService
from tracas_guard.services.two_factor import TwoFactorManager
from tracas_guard.services.waf import GeoResolver, InspectedRequest, RequestInspector

logger = logging.getLogger(__name__)

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9._:\-]{8,128}$")


@dataclass(frozen=True)
class GuardedRequest:
    """Transport-neutral view of an inbound request."""

    address: str
    method: str
    path: str
    query_string: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> str | None:
        # Starlette headers are case-insensitive; plain dicts are keyed in lower case.
        return self.headers.get(name.lower())


@dataclass(frozen=True)
class Principal:
    """The caller behind a verified access token."""

    subject: str
    role: str | None
    device_id: str | None
    claims: dict[str, Any]

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> Principal:
        device_id = claims.get("device_id")
        return cls(
            subject=str(claims["sub"]),
            role=claims.get("role"),
            device_id=str(device_id) if device_id else None,
            claims=dict(claims),
        )


@dataclass(frozen=True)
class LoginResult:
    tokens: TokenPair
    principal: Principal
    two_factor_required: bool


class SecurityOrchestrator:
    """Owns every security component and runs them in order.

    One instance per application (or per test). ``start``/``stop`` manage the
    background key rotation and housekeeping loops.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        identity_store: IdentityStore | None = None,
        geo_resolver: GeoResolver | None = None,
        audit: AuditSink | None = None,
        redis_client: Any | None = None,
        session_factory: sessionmaker[Session] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.recent_events = MemoryAuditSink(maxlen=500)
        self.audit: AuditSink = FanOutAuditSink(audit or LoggingAuditSink(), self.recent_events)

        self.keystore = KeyMaterialStore.from_settings(settings, clock=clock)
        self.keystore.initialize()
        self.tokens = TokenService.from_settings(settings, self.keystore, clock=clock)

        self._engine: Engine | None = None
        if session_factory is None:
            self._engine = create_db_engine(settings.database_url, echo=settings.sql_debug)
            create_tables(self._engine)
            session_factory = create_session_factory(self._engine)
        self.two_factor = TwoFactorManager.from_settings(
            settings, session_factory, audit=self.audit, clock=clock
        )
        self.csrf = CsrfGuard.from_settings(settings, self.keystore, clock=clock)
        self.waf = RequestInspector.from_settings(
            settings, geo_resolver=geo_resolver, audit=self.audit, clock=clock
        )
        self.rate_limiter = AdaptiveRateLimiter.from_settings(
            settings, redis_client=redis_client, clock=clock
        )
        self.waf.subscribe(self.rate_limiter.update_block_list)
        self.identity_store: IdentityStore = identity_store or InMemoryIdentityStore()

        self._auth_failures: dict[str, deque[float]] = {}
        self._auth_failures_lock = threading.Lock()
        self._rotation_worker = KeyRotationWorker(
            self.keystore, settings.key_rotation_check_seconds
        )
        self._housekeeping_task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # --- lifecycle ------------------------------------------------------------------
    async def start(self) -> None:
        """Start background key rotation (outside local mode) and housekeeping."""
        if self.settings.rotation_active:
            await self._rotation_worker.start()
        else:
            logger.info("Key rotation disabled in %s mode", self.settings.environment)
        if self._housekeeping_task is None or self._housekeeping_task.done():
            self._stopping = asyncio.Event()
            self._housekeeping_task = asyncio.create_task(self._housekeeping_loop())
        logger.info(
            "Security layer started (WAF %s, rate limiter on %s)",
            "enabled" if self.waf.enabled else "disabled",
            self.rate_limiter.backend,
        )

    async def stop(self) -> None:
        await self._rotation_worker.stop()
        if self._housekeeping_task is not None:
            self._stopping.set()
            await self._housekeeping_task
            self._housekeeping_task = None

    def close(self) -> None:
        """Release the database engine this instance created, if any."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    @property
    def running(self) -> bool:
        return self._housekeeping_task is not None and not self._housekeeping_task.done()

    async def _housekeeping_loop(self) -> None:
        interval = max(0.1, float(self.settings.waf_housekeeping_seconds))
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            else:
                return
            self.housekeeping()

    def housekeeping(self, now: float | None = None) -> None:
        """Prune request history, closed rate windows and stale auth failures."""
        current = self._clock() if now is None else now
        self.waf.prune(current)
        self.rate_limiter.prune(current)
        cutoff = current - self.settings.auth_failure_window_seconds
        with self._auth_failures_lock:
            for address in list(self._auth_failures):
                failures = self._auth_failures[address]
                while failures and failures[0] <= cutoff:
                    failures.popleft()
                if not failures:
                    del self._auth_failures[address]

    # --- pipeline -------------------------------------------------------------------
    def screen(self, request: GuardedRequest) -> RateLimitDecision | None:
        """Run the pre-route stages; returns the rate-limit decision when one applied."""
        self.check_ban(request)
        self.validate_headers(request)
        decision = self.check_rate_limit(request)
        self.inspect(request)
        self.check_csrf(request)
        return decision

    def check_ban(self, request: GuardedRequest) -> None:
        if self.waf.is_banned(request.address) or self.rate_limiter.is_blocked(request.address):
            raise IpBlockedError(detail={"address": request.address})

    def validate_headers(self, request: GuardedRequest) -> None:
        """Reject malformed device ids and, outside local mode, foreign origins."""
        device_id = request.header(self.settings.device_header_name)
        if device_id is not None and not _DEVICE_ID_RE.match(device_id):
            self._reject(
                request,
                "invalid_headers",
                "medium",
                InvalidHeadersError("Invalid device identifier.", code="INVALID_DEVICE_ID"),
            )

        if self.settings.is_local or request.method.upper() in SAFE_METHODS:
            return
        if self.csrf.is_exempt(request.path):
            return
        allowed = self.settings.origin_allow_list
        origin = request.header("origin") or ""
        referer = request.header("referer") or ""
        if referer:
            parts = urlsplit(referer)
            referer = f"{parts.scheme}://{parts.netloc}"
        if origin not in allowed and referer not in allowed:
            self._reject(
                request,
                "invalid_origin",
                "medium",
                InvalidHeadersError("Invalid origin.", code="INVALID_ORIGIN"),
                origin=origin or None,
            )

    def check_rate_limit(self, request: GuardedRequest) -> RateLimitDecision | None:
        if self.rate_limiter.is_exempt(request.address):
            return None
        budget = self.rate_limiter.classify(request.path)
        decision = self.rate_limiter.hit(budget, request.address)
        if not decision.allowed:
            self._reject(
                request,
                "rate_limit_exceeded",
                "medium",
                RateLimitExceededError(
                    decision.message,
                    code=decision.code,
                    headers=decision.headers(),
                ),
                budget=budget,
                limit=decision.limit,
            )
        return decision

    def inspect(self, request: GuardedRequest) -> None:
        result = self.waf.inspect(
            InspectedRequest(
                address=request.address,
                method=request.method,
                path=request.path,
                query_string=request.query_string,
                body=request.body,
            )
        )
        if not result.blocked:
            return
        detail = {"category": result.category, "matches": result.matches}
        if result.code == "IP_BLOCKED":
            raise IpBlockedError(detail=detail)
        if result.code == "DDOS_PROTECTION":
            raise RateLimitExceededError(
                "Too many requests, your address has been blocked.",
                code="DDOS_PROTECTION",
                detail=detail,
            )
        if result.code == "GEO_BLOCKED":
            raise WafBlockedError(
                "Access from your region is not allowed.", code="GEO_BLOCKED", detail=detail
            )
        raise WafBlockedError(detail=detail)

    def check_csrf(self, request: GuardedRequest) -> None:
        if request.method.upper() in SAFE_METHODS or self.csrf.is_exempt(request.path):
            return
        if self.settings.csrf_exempt_bearer and self._is_bearer_only(request):
            return
        try:
            self.csrf.verify(
                request.method,
                request.cookies.get(self.csrf.cookie_name),
                request.header(self.csrf.header_name),
            )
        except SecurityError as err:
            self._reject(request, "csrf_rejected", "medium", err)

    def _is_bearer_only(self, request: GuardedRequest) -> bool:
        authorization = request.header("authorization") or ""
        return authorization.lower().startswith("bearer ") and not request.cookies.get(
            self.settings.token_cookie_name
        )

    def authenticate(
        self, token: str | None, *, request: GuardedRequest | None = None
    ) -> Principal:
        """Verify ``token`` and bind it to the device named in the request, if any."""
        if not token:
            raise MissingCredentialsError()
        try:
            claims = self.tokens.verify(token)
        except DeviceMismatchError as err:
            self._reject(request, "device_mismatch", "high", err)
        except TokenExpiredError as err:
            self._reject(request, "token_expired", "info", err)
        except InvalidTokenError as err:
            self._reject(request, "invalid_token", "low", err)

        if claims.get("kind") == TOKEN_KIND_REFRESH:
            self._reject(
                request,
                "invalid_token",
                "low",
                InvalidTokenError("Invalid token type.", detail={"kind": TOKEN_KIND_REFRESH}),
            )

        principal = Principal.from_claims(claims)
        if request is not None:
            presented = request.header(self.settings.device_header_name)
            if presented and principal.device_id and presented != principal.device_id:
                self._reject(
                    request,
                    "device_mismatch",
                    "high",
                    DeviceMismatchError(detail={"subject": principal.subject}),
                )
        return principal

    def require_role(
        self,
        principal: Principal,
        roles: Iterable[str],
        *,
        request: GuardedRequest | None = None,
    ) -> None:
        allowed = set(roles)
        if principal.role not in allowed:
            self._reject(
                request,
                "insufficient_role",
                "medium",
                InsufficientRoleError(detail={"subject": principal.subject, "role": principal.role}),
                required=sorted(allowed),
            )

    # --- credentials ----------------------------------------------------------------
    def issue_token_pair(self, claims: Mapping[str, Any]) -> TokenPair:
        return self.tokens.issue_pair(claims)

    def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.refresh(refresh_token)

    def hash_password(self, password: str) -> str:
        """Hash ``password`` peppered with the active password-KDF key."""
        pepper = self.keystore.active(ROLE_PASSWORD_KDF)
        return security.hash_password(password, pepper=pepper.material, pepper_id=pepper.id)

    def verify_password(self, password: str, stored: str) -> bool:
        """Verify against the pepper recorded in ``stored``, even if since rotated."""
        try:
            pepper_id = security.parse_password_hash(stored).get("pepper_id")
        except ValueError:
            return False
        pepper: bytes | None = None
        if pepper_id:
            record = self.keystore.find(ROLE_PASSWORD_KDF, str(pepper_id))
            if record is None:
                logger.error("Password hash references unknown pepper %s", pepper_id)
                return False
            pepper = record.material
        return security.verify_password(password, stored, pepper=pepper)

    def encrypt_value(
        self, value: bytes | str, context: Mapping[str, Any] | None = None
    ) -> str:
        """Encrypt ``value`` bound to ``context``; returns a JSON envelope."""
        return self.keystore.encrypt(value, context).to_json()

    def decrypt_value(self, envelope: str, context: Mapping[str, Any] | None = None) -> bytes:
        """Open an envelope from :meth:`encrypt_value`; raises DecryptionError on tampering."""
        return self.keystore.decrypt(EncryptedEnvelope.from_json(envelope), context)

    def login(
        self,
        account_id: str,
        password: str,
        *,
        device_id: str | None = None,
        request: GuardedRequest | None = None,
    ) -> LoginResult:
        """Check credentials against the identity store and issue a token pair."""
        result = self.identity_store.lookup(account_id)
        if result.error is not None and result.error != "not_found":
            logger.error("Identity lookup failed for %s: %s", account_id, result.error)
        record = result.record
        if record is None or not self.verify_password(password, record.password_hash):
            self.record_auth_failure(request, account_id, "invalid_credentials")
            raise InvalidCredentialsError()
        if not record.allows_device(device_id):
            self.record_auth_failure(request, account_id, "unbound_device")
            raise DeviceMismatchError(detail={"subject": account_id, "device_id": device_id})

        claims: dict[str, Any] = {"sub": record.account_id, "role": record.role}
        if device_id:
            claims["device_id"] = device_id
        tokens = self.issue_token_pair(claims)
        if request is not None:
            self.clear_auth_failures(request.address)
        self._emit(request, "login_succeeded", "info", account_id=account_id)
        return LoginResult(
            tokens=tokens,
            principal=Principal.from_claims(claims),
            two_factor_required=self.two_factor.requires_second_factor(record.role)
            and self.two_factor.is_enabled(record.account_id),
        )

    def record_auth_failure(
        self, request: GuardedRequest | None, account_id: str | None, reason: str
    ) -> int:
        """Count a failed authentication and escalate past the thresholds.

        More than ``auth_failure_alert_threshold`` failures inside the window
        raise a medium intrusion event; more than ``auth_failure_ban_threshold``
        raise a high one and ban the address.
        """
        address = request.address if request is not None else None
        attempts = 1
        if address is not None:
            now = self._clock()
            cutoff = now - self.settings.auth_failure_window_seconds
            with self._auth_failures_lock:
                failures = self._auth_failures.setdefault(address, deque())
                while failures and failures[0] <= cutoff:
                    failures.popleft()
                failures.append(now)
                attempts = len(failures)

        severity = "low"
        if attempts > self.settings.auth_failure_ban_threshold:
            severity = "high"
        elif attempts > self.settings.auth_failure_alert_threshold:
            severity = "medium"
        self._emit(
            request,
            "auth_failure",
            severity,
            account_id=account_id,
            reason=reason,
            attempts=attempts,
        )
        if address is not None and attempts > self.settings.auth_failure_ban_threshold:
            self.waf.ban(address, "Repeated authentication failures", {"attempts": attempts})
        return attempts

    def clear_auth_failures(self, address: str) -> None:
        with self._auth_failures_lock:
            self._auth_failures.pop(address, None)

    # --- admin controls -------------------------------------------------------------
    def ban(self, address: str, reason: str = "Manual ban") -> bool:
        return self.waf.ban(address, reason, {"source": "admin"})

    def unban(self, address: str) -> bool:
        self.clear_auth_failures(address)
        return self.waf.unban(address)

    def list_bans(self) -> list[dict[str, Any]]:
        return [entry.as_dict() for entry in self.waf.bans()]

    def set_waf_enabled(self, enabled: bool) -> None:
        self.waf.set_enabled(enabled)

    def set_waf_rule(self, rule: str, enabled: bool) -> None:
        self.waf.set_rule_enabled(rule, enabled)

    def set_allowed_countries(self, countries: Iterable[str]) -> list[str]:
        self.waf.set_allowed_countries(countries)
        return list(self.waf.allowed_countries)

    def rotate_keys(self, role: str | None = None) -> dict[str, str]:
        """Rotate one role, or every role, immediately.

        Returns role -> new key id; roles whose rotation failed are omitted and
        keep their current key.
        """
        if role is not None and role not in KEY_ROLES:
            raise ValueError(f"Unknown key role: {role}")
        rotated: dict[str, str] = {}
        for name in [role] if role else list(KEY_ROLES):
            try:
                rotated[name] = self.keystore.rotate(name).id
            except KeyManagementError:
                continue
        self._emit(None, "keys_rotated", "info", roles=sorted(rotated))
        return rotated

    def status(self) -> dict[str, Any]:
        return {
            "environment": self.settings.environment,
            "keys": self.keystore.status(),
            "key_rotation": {
                "enabled": self.settings.rotation_active,
                "running": self._rotation_worker.running,
            },
            "waf": self.waf.status(),
            "rate_limiter": {"backend": self.rate_limiter.backend},
            "recent_events": len(self.recent_events.events),
        }

    # --- events ---------------------------------------------------------------------
    def _emit(
        self, request: GuardedRequest | None, kind: str, severity: str, **detail: Any
    ) -> None:
        self.audit.emit(
            SecurityEvent(
                event_kind=kind,
                severity=severity,
                address=request.address if request is not None else None,
                path=request.path if request is not None else None,
                method=request.method if request is not None else None,
                detail=detail,
            )
        )

    def _reject(
        self,
        request: GuardedRequest | None,
        kind: str,
        severity: str,
        error: SecurityError,
        **detail: Any,
    ) -> NoReturn:
        self._emit(request, kind, severity, **{**error.detail, **detail, "code": error.code})
        raise error
