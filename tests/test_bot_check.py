"""
Tests for the reCAPTCHA bot check and its fail-open/fail-closed policy.
"""

import httpx
import pytest

from acceptance_api.bot_check import CaptchaVerifier
from acceptance_api.config import Settings
from acceptance_api.errors import AppError, ErrorCode


def production_settings(**overrides) -> Settings:
    values = dict(
        environment="production",
        recaptcha_secret_key="secret",
        rate_limit_fallback_max=2,
    )
    values.update(overrides)
    return Settings(**values)


def verifier_with(handler, **overrides) -> CaptchaVerifier:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CaptchaVerifier(production_settings(**overrides), http_client=client, clock=lambda: 1_000.0)


def respond(payload):
    def handler(request):
        return httpx.Response(200, json=payload)
    return handler


def unreachable(request):
    raise httpx.ConnectTimeout("timed out", request=request)


class TestVerification:
    def test_good_score_passes(self):
        outcome = verifier_with(respond({"success": True, "score": 0.9})).verify("token", "10.0.0.1")

        assert outcome.score == 0.9
        assert outcome.degraded is False
        assert outcome.headers() == {}

    def test_sends_secret_token_and_address(self):
        seen = {}

        def handler(request):
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"success": True, "score": 0.7})

        verifier_with(handler).verify("tok123", "10.0.0.1")

        assert "secret=secret" in seen["body"]
        assert "response=tok123" in seen["body"]
        assert "remoteip=10.0.0.1" in seen["body"]

    def test_missing_token(self):
        with pytest.raises(AppError) as exc_info:
            verifier_with(respond({"success": True})).verify(None, "10.0.0.1")

        assert exc_info.value.status_code == 400
        assert exc_info.value.code == ErrorCode.CAPTCHA_REQUIRED

    def test_failed_verification(self):
        handler = respond({"success": False, "error-codes": ["invalid-input-response"]})

        with pytest.raises(AppError) as exc_info:
            verifier_with(handler).verify("token", "10.0.0.1")

        assert exc_info.value.status_code == 400
        assert exc_info.value.code == ErrorCode.CAPTCHA_FAILED

    def test_low_score_is_forbidden(self):
        with pytest.raises(AppError) as exc_info:
            verifier_with(respond({"success": True, "score": 0.2})).verify("token", "10.0.0.1")

        assert exc_info.value.status_code == 403
        assert exc_info.value.code == ErrorCode.CAPTCHA_LOW_SCORE

    def test_bypassed_in_test_environment(self):
        verifier = CaptchaVerifier(Settings(environment="test", recaptcha_secret_key="secret"))

        assert verifier.verify(None, "10.0.0.1").bypassed is True

    def test_bypassed_without_secret(self):
        verifier = CaptchaVerifier(Settings(environment="production", recaptcha_secret_key=None))

        assert verifier.verify(None, "10.0.0.1").bypassed is True

    def test_invalid_fail_mode(self):
        with pytest.raises(ValueError):
            CaptchaVerifier(production_settings(captcha_fail_mode="sideways"))


class TestServiceUnavailable:
    def test_fail_closed_rejects(self):
        verifier = verifier_with(unreachable, captcha_fail_mode="closed")

        with pytest.raises(AppError) as exc_info:
            verifier.verify("token", "10.0.0.1")

        assert exc_info.value.status_code == 503
        assert exc_info.value.code == ErrorCode.CAPTCHA_UNAVAILABLE

    def test_fail_open_allows_within_fallback_budget(self):
        verifier = verifier_with(unreachable, captcha_fail_mode="open")

        first = verifier.verify("token", "10.0.0.1")
        second = verifier.verify("token", "10.0.0.1")

        assert first.degraded is True
        assert first.headers()["X-Security-Degraded"] == "captcha-unavailable"
        assert first.headers()["X-Fallback-RateLimit-Remaining"] == "1"
        assert second.fallback_remaining == 0

    def test_fail_open_exhausted_budget_is_rate_limited(self):
        verifier = verifier_with(unreachable, captcha_fail_mode="open")
        verifier.verify("token", "10.0.0.1")
        verifier.verify("token", "10.0.0.1")

        with pytest.raises(AppError) as exc_info:
            verifier.verify("token", "10.0.0.1")

        assert exc_info.value.status_code == 429
        assert exc_info.value.headers["Retry-After"] == "3600"
        assert exc_info.value.headers["X-Security-Degraded"] == "captcha-unavailable"

    def test_http_error_status_counts_as_outage(self):
        verifier = verifier_with(lambda request: httpx.Response(502), captcha_fail_mode="open")

        assert verifier.verify("token", "10.0.0.1").degraded is True

    def test_low_score_is_never_treated_as_outage(self):
        verifier = verifier_with(respond({"success": True, "score": 0.1}), captcha_fail_mode="open")

        with pytest.raises(AppError) as exc_info:
            verifier.verify("token", "10.0.0.1")
        assert exc_info.value.status_code == 403
