"""
Abuse prevention for verification-code issuance and the busiest routes.

Three independent scopes must all pass before a code is sent:
per client address (sliding window), per destination (sliding window) and
per signing token (lifetime cap). Counters live in a CounterStore. The
in-memory store is correct for a single process only; a shared key-value
store can be dropped in behind the same interface without touching the
limiter logic.

RouteLimits adds flat per-address budgets for signature submission and the
tenant API.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from loguru import logger

from signaturehub.core.config import settings
from signaturehub.core.exceptions import RateLimitError


Clock = Callable[[], float]


class CounterStore(ABC):
    """Timestamped hit counters keyed by string."""

    @abstractmethod
    def hits(self, key: str) -> List[float]:
        ...

    @abstractmethod
    def add(self, key: str, at: float) -> None:
        ...

    @abstractmethod
    def prune(self, key: str, older_than: float) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class InMemoryCounterStore(CounterStore):
    def __init__(self):
        self._hits: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def hits(self, key: str) -> List[float]:
        with self._lock:
            return list(self._hits.get(key, []))

    def add(self, key: str, at: float) -> None:
        with self._lock:
            self._hits[key].append(at)

    def prune(self, key: str, older_than: float) -> None:
        with self._lock:
            remaining = [t for t in self._hits.get(key, []) if t > older_than]
            if remaining:
                self._hits[key] = remaining
            else:
                self._hits.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._hits.keys())

    def clear(self) -> None:
        with self._lock:
            self._hits.clear()


class SlidingWindowLimiter:
    """
    Allows at most `limit` hits per key within the trailing `window_seconds`.
    `allowed` is read-only; callers `record` only once the guarded action proceeds.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        store: Optional[CounterStore] = None,
        clock: Clock = time.monotonic,
    ):
        self.limit = limit
        self.window_seconds = window_seconds
        self.store = store or InMemoryCounterStore()
        self.clock = clock

    def allowed(self, key: str) -> bool:
        cutoff = self.clock() - self.window_seconds
        self.store.prune(key, cutoff)
        return len(self.store.hits(key)) < self.limit

    def record(self, key: str) -> None:
        self.store.add(key, self.clock())

    def sweep(self) -> int:
        """Drops expired entries for every key. Returns the number of keys left."""
        cutoff = self.clock() - self.window_seconds
        for key in self.store.keys():
            self.store.prune(key, cutoff)
        return len(self.store.keys())

    def reset(self) -> None:
        self.store.clear()


class LifetimeLimiter:
    """Caps the total number of hits per key, with no time window."""

    def __init__(self, limit: int, store: Optional[CounterStore] = None, clock: Clock = time.monotonic):
        self.limit = limit
        self.store = store or InMemoryCounterStore()
        self.clock = clock

    def allowed(self, key: str) -> bool:
        return len(self.store.hits(key)) < self.limit

    def record(self, key: str) -> None:
        self.store.add(key, self.clock())

    def forget(self, key: str) -> None:
        """Drops a key whose subject can never be used again."""
        self.store.prune(key, float("inf"))

    def reset(self) -> None:
        self.store.clear()


def normalize_destination(destination: str) -> str:
    return destination.strip().lower()


class VerificationThrottle:
    """
    The three all-must-pass layers in front of send-code.

    `check` raises RateLimitError without touching any counter. The client
    address hit is recorded once all layers pass; destination and token
    counters advance only after the code was actually dispatched.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self.by_ip = SlidingWindowLimiter(
            settings.verify_ip_limit, settings.verify_ip_window_minutes * 60, clock=clock)
        self.by_destination = SlidingWindowLimiter(
            settings.destination_limit, settings.destination_window_minutes * 60, clock=clock)
        self.by_token = LifetimeLimiter(settings.token_code_limit, clock=clock)

    def check(self, client_ip: Optional[str], destination: str, token_id: str) -> None:
        if client_ip and not self.by_ip.allowed(client_ip):
            logger.warning(f"Verification rate limit hit for address {client_ip}")
            raise RateLimitError("Too many verification requests from this address. Please try again later.")

        if not self.by_destination.allowed(normalize_destination(destination)):
            logger.warning(f"Verification rate limit hit for destination of token {token_id}")
            raise RateLimitError("Too many codes sent to this destination. Please try again later.")

        if not self.by_token.allowed(token_id):
            logger.warning(f"Lifetime code limit reached for token {token_id}")
            raise RateLimitError("Too many codes requested for this document. Please contact the sender.")

    def record_attempt(self, client_ip: Optional[str]) -> None:
        if client_ip:
            self.by_ip.record(client_ip)

    def hit_address(self, client_ip: Optional[str]) -> None:
        """
        Code confirmations draw on the same per-address budget as sends.
        Every call counts, whatever the outcome of the confirmation.
        """
        if not client_ip:
            return
        if not self.by_ip.allowed(client_ip):
            logger.warning(f"Verification rate limit hit for address {client_ip}")
            raise RateLimitError("Too many verification requests from this address. Please try again later.")
        self.by_ip.record(client_ip)

    def record_dispatch(self, destination: str, token_id: str) -> None:
        self.by_destination.record(normalize_destination(destination))
        self.by_token.record(token_id)

    def release_token(self, token_id: str) -> None:
        self.by_token.forget(token_id)

    def sweep(self) -> None:
        self.by_ip.sweep()
        remaining = self.by_destination.sweep()
        logger.debug(f"Destination limiter swept, {remaining} keys active")

    def reset(self) -> None:
        self.by_ip.reset()
        self.by_destination.reset()
        self.by_token.reset()


_throttle: Optional[VerificationThrottle] = None


def get_verification_throttle() -> VerificationThrottle:
    global _throttle
    if _throttle is None:
        _throttle = VerificationThrottle()
    return _throttle


def reset_verification_throttle(throttle: Optional[VerificationThrottle] = None) -> None:
    """Replaces the process-wide throttle. Used by tests."""
    global _throttle
    _throttle = throttle


class RouteLimits:
    """
    Per client address budgets applied to whole routes before the handler
    runs: signature submission and the tenant API.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self.submit = SlidingWindowLimiter(
            settings.submit_ip_limit, settings.submit_ip_window_minutes * 60, clock=clock)
        self.tenant_api = SlidingWindowLimiter(
            settings.api_rate_limit, settings.api_rate_window_seconds, clock=clock)

    @staticmethod
    def _hit(limiter: SlidingWindowLimiter, key: Optional[str], detail: str) -> None:
        if not key:
            return
        if not limiter.allowed(key):
            logger.warning(f"Route rate limit hit for address {key}: {detail}")
            raise RateLimitError(detail)
        limiter.record(key)

    def hit_submit(self, client_ip: Optional[str]) -> None:
        self._hit(self.submit, client_ip, "Too many signature submissions. Please try again later.")

    def hit_tenant_api(self, client_ip: Optional[str]) -> None:
        self._hit(self.tenant_api, client_ip, "Too many API requests. Please slow down.")

    def sweep(self) -> None:
        self.submit.sweep()
        self.tenant_api.sweep()

    def reset(self) -> None:
        self.submit.reset()
        self.tenant_api.reset()


_route_limits: Optional[RouteLimits] = None


def get_route_limits() -> RouteLimits:
    global _route_limits
    if _route_limits is None:
        _route_limits = RouteLimits()
    return _route_limits


def reset_route_limits(limits: Optional[RouteLimits] = None) -> None:
    """Replaces the process-wide route limits. Used by tests."""
    global _route_limits
    _route_limits = limits
