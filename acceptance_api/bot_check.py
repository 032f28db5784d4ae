"""
Bot-likelihood check (Google reCAPTCHA v3) for mutating endpoints.

When the verification service cannot be reached (timeout or connection
error) the deployment chooses:

- fail open (default): allow the request, but only within a much stricter
  per-client fallback budget, and flag the response as degraded
- fail closed: reject with 503

A legitimate low score is never treated as an outage. The check is bypassed
entirely in test/development environments or when no secret is configured.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import httpx

from acceptance_api.config import Settings, get_settings
from acceptance_api.errors import AppError, ErrorCode
from acceptance_api.rate_limiter import MemoryRateLimitStore


logger = logging.getLogger(__name__)

FAIL_OPEN = "open"
FAIL_CLOSED = "closed"


@dataclass(frozen=True)
class BotCheckOutcome:
    bypassed: bool = False
    degraded: bool = False
    score: Optional[float] = None
    fallback_limit: int = 0
    fallback_remaining: int = 0
    fallback_reset: float = 0.0

    def headers(self) -> Dict[str, str]:
        if not self.degraded:
            return {}
        return {
            "X-Security-Degraded": "captcha-unavailable",
            "X-Fallback-RateLimit-Limit": str(self.fallback_limit),
            "X-Fallback-RateLimit-Remaining": str(self.fallback_remaining),
            "X-Fallback-RateLimit-Reset": str(math.ceil(self.fallback_reset)),
        }


class CaptchaVerifier:
    """Verifies reCAPTCHA tokens with a bounded timeout and a fail policy."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.Client] = None,
        fallback_store: Optional[MemoryRateLimitStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.fallback_store = fallback_store or MemoryRateLimitStore(self.settings.rate_limit_sweep_seconds)
        self.clock = clock

        if self.settings.captcha_fail_mode not in (FAIL_OPEN, FAIL_CLOSED):
            raise ValueError(f"Invalid captcha_fail_mode: {self.settings.captcha_fail_mode}")

    @property
    def fail_mode(self) -> str:
        return self.settings.captcha_fail_mode

    def verify(self, token: Optional[str], client_ip: str, endpoint: str = "") -> BotCheckOutcome:
        """
        Check a token, raising ``AppError`` when the request must be refused.

        Raises:
            AppError: 400 missing/invalid token, 403 low score, 503 service
                unavailable in fail-closed mode, 429 fallback budget exhausted
                in fail-open mode.
        """
        if self.settings.bot_check_bypassed:
            return BotCheckOutcome(bypassed=True)

        if not token:
            raise AppError.bad_request(
                "CAPTCHA token required for verification submissions",
                ErrorCode.CAPTCHA_REQUIRED,
            )

        try:
            data = self._siteverify(token, client_ip)
        except (httpx.TransportError, httpx.HTTPStatusError) as e:
            logger.error(
                f"CAPTCHA service unavailable (fail mode: {self.fail_mode}) "
                f"for {client_ip} on {endpoint}: {e!r}"
            )
            if self.fail_mode == FAIL_CLOSED:
                raise AppError.service_unavailable(
                    "Security verification temporarily unavailable. Please try again in a few minutes.",
                    ErrorCode.CAPTCHA_UNAVAILABLE,
                )
            return self._fail_open(client_ip, endpoint)

        if not data.get("success"):
            logger.warning(
                f"CAPTCHA verification failed for {client_ip} on {endpoint}: "
                f"{data.get('error-codes')}"
            )
            raise AppError.bad_request("CAPTCHA verification failed", ErrorCode.CAPTCHA_FAILED)

        score = data.get("score")
        if score is not None and score < self.settings.captcha_min_score:
            logger.warning(
                f"CAPTCHA low score {score} (threshold {self.settings.captcha_min_score}) "
                f"for {client_ip} on {endpoint}"
            )
            raise AppError.forbidden(
                "Request blocked due to suspicious activity",
                ErrorCode.CAPTCHA_LOW_SCORE,
            )

        return BotCheckOutcome(score=score)

    def _siteverify(self, token: str, client_ip: str) -> dict:
        payload = {
            "secret": self.settings.recaptcha_secret_key,
            "response": token,
            "remoteip": client_ip,
        }
        timeout = self.settings.captcha_timeout_seconds
        if self.http_client is not None:
            response = self.http_client.post(self.settings.recaptcha_verify_url, data=payload, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.post(self.settings.recaptcha_verify_url, data=payload)
        response.raise_for_status()
        return response.json()

    def _fail_open(self, client_ip: str, endpoint: str) -> BotCheckOutcome:
        limit = self.settings.rate_limit_fallback_max
        window = self.settings.rate_limit_window_seconds
        now = self.clock()
        allowed, count, oldest = self.fallback_store.hit(f"captcha-fallback:{client_ip}", limit, window, now)

        outcome = BotCheckOutcome(
            degraded=True,
            fallback_limit=limit,
            fallback_remaining=max(0, limit - count),
            fallback_reset=oldest + window,
        )
        if not allowed:
            logger.warning(f"CAPTCHA fail-open fallback limit exceeded for {client_ip} on {endpoint}")
            headers = outcome.headers()
            headers["Retry-After"] = str(max(1, math.ceil(window - (now - oldest))))
            raise AppError.too_many_requests(
                "Too many requests while security verification is unavailable. Please try again later.",
                headers=headers,
            )

        logger.warning(
            f"CAPTCHA fail-open: allowing {client_ip} on {endpoint} "
            f"({outcome.fallback_remaining}/{limit} fallback requests left)"
        )
        return outcome

    def start(self):
        self.fallback_store.start()

    def stop(self):
        self.fallback_store.stop()


# Global verifier instance
_verifier: Optional[CaptchaVerifier] = None


def get_captcha_verifier() -> CaptchaVerifier:
    """Get or create the global CAPTCHA verifier."""
    global _verifier
    if _verifier is None:
        _verifier = CaptchaVerifier()
    return _verifier


def set_captcha_verifier(verifier: Optional[CaptchaVerifier]):
    global _verifier
    _verifier = verifier
