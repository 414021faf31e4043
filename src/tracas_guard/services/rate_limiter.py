"""Per-route, per-identity request budgets."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import redis

from tracas_guard.core.settings import Settings

logger = logging.getLogger(__name__)

BUDGET_GENERAL = "general"
BUDGET_AUTH = "auth"
BUDGET_SENSITIVE = "sensitive"


@dataclass(frozen=True)
class RateLimitBudget:
    name: str
    max_requests: int
    window_seconds: int
    code: str
    message: str


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    budget: str
    limit: int
    remaining: int
    reset_after: int
    code: str | None = None
    message: str | None = None

    def headers(self) -> dict[str, str]:
        values = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(max(0, self.remaining)),
            "RateLimit-Reset": str(self.reset_after),
        }
        if not self.allowed:
            values["Retry-After"] = str(self.reset_after)
        return values


def default_budgets(settings: Settings) -> dict[str, RateLimitBudget]:
    general_max, general_window = settings.rate_limit_general
    auth_max, auth_window = settings.rate_limit_auth
    sensitive_max, sensitive_window = settings.rate_limit_sensitive
    return {
        BUDGET_GENERAL: RateLimitBudget(
            BUDGET_GENERAL,
            general_max,
            general_window,
            "RATE_LIMIT_EXCEEDED",
            "Too many requests, please try again later.",
        ),
        BUDGET_AUTH: RateLimitBudget(
            BUDGET_AUTH,
            auth_max,
            auth_window,
            "AUTH_ATTEMPTS_EXCEEDED",
            "Too many authentication attempts, please try again in 30 minutes.",
        ),
        BUDGET_SENSITIVE: RateLimitBudget(
            BUDGET_SENSITIVE,
            sensitive_max,
            sensitive_window,
            "SENSITIVE_RATE_EXCEEDED",
            "Too many sensitive operations, please try again later.",
        ),
    }


class AdaptiveRateLimiter:
    """Fixed-window counters in redis, degrading to process memory.

    Any redis error switches the limiter to local counters for the rest of the
    process lifetime, so an outage means per-instance limiting, never failed
    requests.
    """

    def __init__(
        self,
        budgets: dict[str, RateLimitBudget],
        *,
        redis_client: Any | None = None,
        auth_path_prefixes: Iterable[str] = ("/api/v1/auth",),
        sensitive_paths: Iterable[str] = (),
        allow_list: Iterable[str] = (),
        allow_list_enabled: bool = False,
        key_prefix: str = "tracas:rl",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.budgets = budgets
        self._redis = redis_client
        self.auth_path_prefixes = tuple(auth_path_prefixes)
        self.sensitive_paths = tuple(sensitive_paths)
        self.allow_list = frozenset(allow_list)
        self.allow_list_enabled = allow_list_enabled
        self.key_prefix = key_prefix
        self._clock = clock
        self._lock = threading.Lock()
        self._local: dict[tuple[str, str, int], int] = {}
        self._blocked: frozenset[str] = frozenset()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        redis_client: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> AdaptiveRateLimiter:
        client = redis_client
        if client is None and settings.redis_url:
            try:
                client = redis.from_url(settings.redis_url)
            except (redis.RedisError, ValueError) as err:
                logger.warning("Redis unavailable for rate limiting, using memory: %s", err)
                client = None
        return cls(
            default_budgets(settings),
            redis_client=client,
            auth_path_prefixes=settings.auth_path_prefixes,
            sensitive_paths=settings.sensitive_paths,
            allow_list=settings.rate_limit_allow_list,
            allow_list_enabled=not settings.is_production,
            clock=clock,
        )

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    def classify(self, path: str) -> str:
        """Pick the budget that applies to ``path``."""
        if any(path.startswith(prefix) for prefix in self.sensitive_paths):
            return BUDGET_SENSITIVE
        if any(path.startswith(prefix) for prefix in self.auth_path_prefixes):
            return BUDGET_AUTH
        return BUDGET_GENERAL

    def is_exempt(self, address: str) -> bool:
        return self.allow_list_enabled and address in self.allow_list

    def hit(self, budget_name: str, identity: str) -> RateLimitDecision:
        """Count one request from ``identity`` against ``budget_name``."""
        budget = self.budgets[budget_name]
        now = self._clock()
        window_index = int(now // budget.window_seconds)
        reset_after = max(1, math.ceil((window_index + 1) * budget.window_seconds - now))

        count = self._increment_shared(budget, identity, window_index)
        if count is None:
            count = self._increment_local(budget, identity, window_index)

        allowed = count <= budget.max_requests
        return RateLimitDecision(
            allowed=allowed,
            budget=budget.name,
            limit=budget.max_requests,
            remaining=budget.max_requests - count,
            reset_after=reset_after,
            code=None if allowed else budget.code,
            message=None if allowed else budget.message,
        )

    def _increment_shared(
        self, budget: RateLimitBudget, identity: str, window_index: int
    ) -> int | None:
        if self._redis is None:
            return None
        key = f"{self.key_prefix}:{budget.name}:{identity}:{window_index}"
        try:
            pipe = self._redis.pipeline()
            pipe.incr(key)
            pipe.expire(key, budget.window_seconds)
            count, _ = pipe.execute()
            return int(count)
        except redis.RedisError as err:
            logger.warning("Redis rate limiting failed, falling back to memory: %s", err)
            self._redis = None
            return None

    def _increment_local(self, budget: RateLimitBudget, identity: str, window_index: int) -> int:
        key = (budget.name, identity, window_index)
        with self._lock:
            count = self._local.get(key, 0) + 1
            self._local[key] = count
            return count

    def prune(self, now: float | None = None) -> None:
        """Drop local counters whose window has closed."""
        current = self._clock() if now is None else now
        with self._lock:
            for key in list(self._local):
                budget = self.budgets[key[0]]
                if key[2] < int(current // budget.window_seconds):
                    del self._local[key]

    def reset(self) -> None:
        with self._lock:
            self._local.clear()

    # --- block list shared with the request inspector -------------------------------
    def update_block_list(self, addresses: Iterable[str]) -> None:
        self._blocked = frozenset(addresses)

    def is_blocked(self, address: str) -> bool:
        return address in self._blocked
