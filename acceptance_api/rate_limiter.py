"""
Sliding-window admission control.

Each (limiter name, client key) keeps the timestamps of its admitted requests
inside the trailing window. A request is admitted while fewer than ``max``
timestamps remain after trimming; otherwise it is rejected with
``retry_after = window - (now - oldest)``.

Two stores implement the same ``hit`` contract and one is chosen at startup:

- ``RedisRateLimitStore``: one Lua script per check (trim, count, conditional
  add, expire), so independent processes cannot race between steps.
- ``MemoryRateLimitStore``: dict of deques under a lock, swept by a
  background thread. Correct for a single instance only.

When the shared store is unreachable the limiter fails open onto a stricter
in-process fallback budget and marks the result as degraded.
"""

import logging
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from acceptance_api.config import Settings, get_settings


logger = logging.getLogger(__name__)

DEFAULT = "default"
SEARCH = "search"
SUBMISSION = "submission"
VOTE = "vote"


@dataclass(frozen=True)
class RateLimitProfile:
    name: str
    max_requests: int
    window_seconds: float
    message: str = "Too many requests, please try again later."


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float          # Unix seconds when the oldest counted request leaves the window
    retry_after: int         # Whole seconds, 0 when allowed
    degraded: bool = False

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.degraded:
            headers["X-RateLimit-Degraded"] = "true"
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def build_profiles(settings: Settings) -> Dict[str, RateLimitProfile]:
    """Pre-configured limiter profiles, keyed by name."""
    window = settings.rate_limit_window_seconds
    return {
        DEFAULT: RateLimitProfile(
            DEFAULT, settings.rate_limit_default_max, window,
            "Too many requests. Please try again in 1 hour.",
        ),
        SEARCH: RateLimitProfile(
            SEARCH, settings.rate_limit_search_max, window,
            "Too many search requests. Please try again in 1 hour.",
        ),
        SUBMISSION: RateLimitProfile(
            SUBMISSION, settings.rate_limit_submission_max, window,
            "You've submitted too many verifications. Please try again in 1 hour.",
        ),
        VOTE: RateLimitProfile(
            VOTE, settings.rate_limit_vote_max, window,
            "You've submitted too many votes. Please try again in 1 hour.",
        ),
    }


# =============================================================================
# Stores
# =============================================================================


class MemoryRateLimitStore:
    """In-process sliding-window store with a periodic stale-entry sweep."""

    def __init__(self, sweep_interval_seconds: float = 60.0):
        self.sweep_interval_seconds = sweep_interval_seconds
        self._windows: Dict[str, Tuple[float, Deque[float]]] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def hit(self, key: str, max_requests: int, window_seconds: float, now: float) -> Tuple[bool, int, float]:
        """
        Trim, count and conditionally record ``now`` for a key.

        Returns (allowed, count after this call, oldest timestamp in window).
        """
        with self._lock:
            entry = self._windows.get(key)
            timestamps = entry[1] if entry is not None else deque()
            cutoff = now - window_seconds
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()

            allowed = len(timestamps) < max_requests
            if allowed:
                timestamps.append(now)
            self._windows[key] = (window_seconds, timestamps)
            oldest = timestamps[0] if timestamps else now
            return allowed, len(timestamps), oldest

    def sweep(self, now: Optional[float] = None) -> int:
        """Drop keys whose newest timestamp has left the window."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                key for key, (window, timestamps) in self._windows.items()
                if not timestamps or timestamps[-1] <= now - window
            ]
            for key in stale:
                del self._windows[key]
        if stale:
            logger.debug(f"Rate limit sweep removed {len(stale)} stale keys")
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._sweep_loop, name="rate-limit-sweep", daemon=True
        )
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    def _sweep_loop(self):
        while not self._stop.wait(self.sweep_interval_seconds):
            self.sweep()


# Trim, count, add-if-under-limit and expire in one atomic round trip.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_requests = tonumber(ARGV[3])
local member = ARGV[4]
local expire_ms = tonumber(ARGV[5])

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < max_requests then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
redis.call('PEXPIRE', key, expire_ms)
if oldest[2] then
  return {allowed, count, oldest[2]}
end
return {allowed, count, tostring(now)}
"""


class RedisRateLimitStore:
    """Shared sliding-window store backed by Redis sorted sets."""

    def __init__(self, redis_client: Redis, expiry_grace_seconds: float = 60.0):
        self.redis = redis_client
        self.expiry_grace_seconds = expiry_grace_seconds
        self._script = redis_client.register_script(SLIDING_WINDOW_SCRIPT)

    def hit(self, key: str, max_requests: int, window_seconds: float, now: float) -> Tuple[bool, int, float]:
        now_ms = int(now * 1000)
        window_ms = int(window_seconds * 1000)
        expire_ms = int((window_seconds + self.expiry_grace_seconds) * 1000)
        member = f"{now_ms}-{uuid.uuid4().hex}"

        allowed, count, oldest_ms = self._script(
            keys=[key],
            args=[now_ms, window_ms, max_requests, member, expire_ms],
        )
        return bool(int(allowed)), int(count), float(oldest_ms) / 1000

    def start(self):
        pass

    def stop(self):
        pass


# =============================================================================
# Limiter
# =============================================================================


class RateLimiter:
    """
    Single ``allow`` interface over whichever store was configured.

    Owns its stores' lifecycle: ``start`` launches the in-process sweep and
    ``stop`` ends it.
    """

    def __init__(
        self,
        store,
        profiles: Dict[str, RateLimitProfile],
        fallback_store: Optional[MemoryRateLimitStore] = None,
        fallback_max_requests: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.profiles = profiles
        self.fallback_store = fallback_store or MemoryRateLimitStore()
        self.fallback_max_requests = fallback_max_requests
        self.clock = clock

    @property
    def backend(self) -> str:
        return "redis" if isinstance(self.store, RedisRateLimitStore) else "memory"

    def profile(self, limiter_name: str) -> RateLimitProfile:
        try:
            return self.profiles[limiter_name]
        except KeyError:
            raise ValueError(f"Unknown rate limiter: {limiter_name}") from None

    def allow(self, limiter_name: str, client_key: str) -> RateLimitResult:
        profile = self.profile(limiter_name)
        now = self.clock()
        key = f"ratelimit:{limiter_name}:{client_key}"

        try:
            allowed, count, oldest = self.store.hit(
                key, profile.max_requests, profile.window_seconds, now
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(
                f"Rate limit store unavailable for '{limiter_name}', "
                f"failing open with fallback budget: {e}"
            )
            return self._allow_fallback(limiter_name, client_key, profile, now)

        return self._result(allowed, profile.max_requests, count, oldest, profile.window_seconds, now)

    def _allow_fallback(
        self,
        limiter_name: str,
        client_key: str,
        profile: RateLimitProfile,
        now: float,
    ) -> RateLimitResult:
        limit = min(self.fallback_max_requests, profile.max_requests)
        allowed, count, oldest = self.fallback_store.hit(
            f"ratelimit-fallback:{limiter_name}:{client_key}", limit, profile.window_seconds, now
        )
        if not allowed:
            logger.warning(f"Fallback rate limit exceeded for '{limiter_name}' client {client_key}")
        return self._result(allowed, limit, count, oldest, profile.window_seconds, now, degraded=True)

    @staticmethod
    def _result(
        allowed: bool,
        limit: int,
        count: int,
        oldest: float,
        window_seconds: float,
        now: float,
        degraded: bool = False,
    ) -> RateLimitResult:
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil(window_seconds - (now - oldest)))
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=oldest + window_seconds,
            retry_after=retry_after,
            degraded=degraded,
        )

    def start(self):
        self.store.start()
        self.fallback_store.start()
        logger.info(f"Rate limiter started with {self.backend} backend")

    def stop(self):
        self.store.stop()
        self.fallback_store.stop()
        logger.info("Rate limiter stopped")


def build_rate_limiter(settings: Optional[Settings] = None, redis_client: Optional[Redis] = None) -> RateLimiter:
    """Pick the backend once, from configuration."""
    settings = settings or get_settings()
    sweep = settings.rate_limit_sweep_seconds

    if settings.rate_limit_backend == "redis":
        if redis_client is None:
            if not settings.redis_url:
                raise ValueError("rate_limit_backend=redis requires redis_url")
            redis_client = Redis.from_url(
                settings.redis_url,
                socket_timeout=settings.redis_socket_timeout,
                socket_connect_timeout=settings.redis_socket_timeout,
            )
        store = RedisRateLimitStore(redis_client, settings.rate_limit_expiry_grace_seconds)
    else:
        store = MemoryRateLimitStore(sweep)

    return RateLimiter(
        store,
        build_profiles(settings),
        fallback_store=MemoryRateLimitStore(sweep),
        fallback_max_requests=settings.rate_limit_fallback_max,
    )


# Global limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get or create the global rate limiter."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = build_rate_limiter()
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]):
    global _rate_limiter
    _rate_limiter = limiter
