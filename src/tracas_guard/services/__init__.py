# src/tracas_guard/services/__init__.py
"""Security components and the orchestrator that composes them."""

from .audit import LoggingAuditSink, MemoryAuditSink, SecurityEvent
from .csrf import CsrfGuard
from .identity import AccountRecord, InMemoryIdentityStore, LookupResult
from .keystore import KeyMaterialStore, KeyRotationWorker
from .orchestrator import GuardedRequest, Principal, SecurityOrchestrator
from .rate_limiter import AdaptiveRateLimiter
from .tokens import TokenPair, TokenService
from .two_factor import TwoFactorManager
from .waf import RequestInspector, StaticGeoResolver

__all__ = [
    "AccountRecord",
    "AdaptiveRateLimiter",
    "CsrfGuard",
    "GuardedRequest",
    "InMemoryIdentityStore",
    "KeyMaterialStore",
    "KeyRotationWorker",
    "LoggingAuditSink",
    "LookupResult",
    "MemoryAuditSink",
    "Principal",
    "RequestInspector",
    "SecurityEvent",
    "SecurityOrchestrator",
    "StaticGeoResolver",
    "TokenPair",
    "TokenService",
    "TwoFactorManager",
]
