"""
Tests for the HTTP surface: status codes, error bodies and headers.
"""

import httpx
import pytest

from acceptance_api.bot_check import CaptchaVerifier, set_captcha_verifier
from acceptance_api.config import Settings, get_settings
from acceptance_api.models import SubmitObservationRequest, VoteRequest
from acceptance_api.rate_limiter import (
    SEARCH, MemoryRateLimitStore, RateLimitProfile, RateLimiter, build_profiles, set_rate_limiter
)

from conftest import PLAN_A, PRIMARY_CARE_PROVIDER


def submission(**overrides):
    body = {
        "provider_id": PRIMARY_CARE_PROVIDER,
        "plan_id": PLAN_A,
        "accepts_insurance": True,
        "notes": "Front desk confirmed on the phone",
    }
    body.update(overrides)
    return body


def unreachable_captcha(fail_mode):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    settings = Settings(environment="production", recaptcha_secret_key="secret", captcha_fail_mode=fail_mode)
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CaptchaVerifier(settings, http_client=client)


@pytest.fixture
def admin_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "admin_secret", "s3cret")
    return "s3cret"


class TestSubmit:
    def test_submit_returns_created_with_rate_limit_headers(self, client):
        response = client.post("/api/v1/verify", json=submission())

        assert response.status_code == 201
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        assert "X-RateLimit-Reset" in response.headers
        data = response.json()
        assert data["acceptance"]["status"] == "PENDING"
        assert data["acceptance"]["score"] == 55
        assert data["acceptance"]["confidence"]["factors"]["verification_score"] == 10
        assert "source_ip" not in data["observation"]

    def test_duplicate_submission_conflict(self, client):
        client.post("/api/v1/verify", json=submission())

        response = client.post("/api/v1/verify", json=submission(accepts_insurance=False))

        assert response.status_code == 409
        assert response.json() == {
            "error": {
                "message": response.json()["error"]["message"],
                "code": "DUPLICATE_SUBMISSION",
                "statusCode": 409,
            }
        }

    def test_conflict_keeps_rate_limit_headers(self, client):
        client.post("/api/v1/verify", json=submission())

        response = client.post("/api/v1/verify", json=submission())

        assert response.status_code == 409
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "8"

    def test_invalid_provider_id(self, client):
        response = client.post("/api/v1/verify", json=submission(provider_id="12345"))

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["field"] == "provider_id"

    def test_unknown_provider(self, client):
        response = client.post("/api/v1/verify", json=submission(provider_id="0000000000"))

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_honeypot_fakes_success(self, client):
        response = client.post("/api/v1/verify", json=submission(website="http://spam.example"))

        assert response.status_code == 200
        assert response.json()["message"] == "Verification submitted successfully"
        assert response.headers["X-RateLimit-Remaining"] == "9"
        pair = client.get(f"/api/v1/verify/{PRIMARY_CARE_PROVIDER}/{PLAN_A}").json()
        assert pair["observations"] == []

    def test_captcha_fail_open_marks_degraded(self, client):
        set_captcha_verifier(unreachable_captcha("open"))

        response = client.post("/api/v1/verify", json=submission(captchaToken="token"))

        assert response.status_code == 201
        assert response.headers["X-Security-Degraded"] == "captcha-unavailable"

    def test_captcha_fail_closed_rejects(self, client):
        set_captcha_verifier(unreachable_captcha("closed"))

        response = client.post("/api/v1/verify", json=submission(captchaToken="token"))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "CAPTCHA_UNAVAILABLE"


class TestVote:
    def test_vote_flow(self, client):
        observation_id = client.post("/api/v1/verify", json=submission()).json()["observation"]["id"]
        url = f"/api/v1/verify/{observation_id}/vote"

        first = client.post(url, json={"vote": "up"})
        repeat = client.post(url, json={"vote": "up"})
        flipped = client.post(url, json={"vote": "down"})

        assert first.status_code == 200
        assert first.json()["upvotes"] == 1
        assert first.json()["vote_changed"] is False
        assert repeat.status_code == 409
        assert repeat.json()["error"]["code"] == "ALREADY_VOTED"
        assert flipped.json()["vote_changed"] is True
        assert flipped.json()["net_votes"] == -1

    def test_vote_on_missing_observation(self, client):
        response = client.post("/api/v1/verify/4242/vote", json={"vote": "up"})

        assert response.status_code == 404

    def test_invalid_vote_direction(self, client):
        response = client.post("/api/v1/verify/1/vote", json={"vote": "sideways"})

        assert response.status_code == 400


class TestReadEndpoints:
    def test_pair_lookup(self, client):
        client.post("/api/v1/verify", json=submission())

        response = client.get(f"/api/v1/verify/{PRIMARY_CARE_PROVIDER}/{PLAN_A}")

        assert response.status_code == 200
        data = response.json()
        assert data["acceptance"]["verification_count"] == 1
        assert data["acceptance"]["confidence"]["metadata"]["specialty_category"] == "PRIMARY_CARE"
        assert data["summary"]["total_observations"] == 1
        assert response.headers["X-RateLimit-Limit"] == "100"

    def test_pair_lookup_unknown_plan(self, client):
        response = client.get(f"/api/v1/verify/{PRIMARY_CARE_PROVIDER}/NOPE")

        assert response.status_code == 404

    def test_recent_and_stats(self, client):
        client.post("/api/v1/verify", json=submission())

        recent = client.get("/api/v1/verify/recent", params={"limit": 5})
        stats = client.get("/api/v1/verify/stats")

        assert recent.status_code == 200
        assert len(recent.json()) == 1
        assert stats.json()["total"] == 1

    def test_search_rate_limit(self, client, settings):
        profiles = build_profiles(settings)
        profiles[SEARCH] = RateLimitProfile(SEARCH, 2, 3600, "Too many search requests.")
        set_rate_limiter(RateLimiter(MemoryRateLimitStore(), profiles))
        url = f"/api/v1/verify/{PRIMARY_CARE_PROVIDER}/{PLAN_A}"

        responses = [client.get(url) for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 429]
        limited = responses[2]
        assert limited.json()["error"]["code"] == "RATE_LIMITED"
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert int(limited.headers["Retry-After"]) > 0


class TestAdmin:
    def test_not_configured(self, client):
        response = client.get("/api/v1/admin/expiration-stats")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "ADMIN_NOT_CONFIGURED"

    def test_wrong_secret(self, client, admin_secret):
        response = client.get("/api/v1/admin/expiration-stats", headers={"X-Admin-Secret": "guess"})

        assert response.status_code == 401

    def test_recalculate_confidence(self, client, admin_secret):
        client.post("/api/v1/verify", json=submission())

        response = client.post(
            "/api/v1/admin/recalculate-confidence",
            params={"dry_run": "true"},
            headers={"X-Admin-Secret": admin_secret},
        )

        assert response.status_code == 200
        assert response.json()["dry_run"] is True
        assert response.json()["processed"] == 1

    def test_decay_runs_listed(self, client, admin_secret):
        headers = {"X-Admin-Secret": admin_secret}
        client.post("/api/v1/admin/recalculate-confidence", headers=headers)

        response = client.get("/api/v1/admin/decay-runs", headers=headers)

        assert response.status_code == 200
        assert len(response.json()["recent_runs"]) == 1
        assert response.json()["recent_runs"][0]["trigger"] == "admin"

    def test_cleanup_and_expiration_stats(self, client, admin_secret):
        headers = {"X-Admin-Secret": admin_secret}
        client.post("/api/v1/verify", json=submission())

        cleanup = client.post("/api/v1/admin/cleanup-expired", params={"dry_run": "true"}, headers=headers)
        stats = client.get("/api/v1/admin/expiration-stats", headers=headers)

        assert cleanup.json()["expired_observations"] == 0
        assert stats.json()["observations"]["total"] == 1

    def test_cache_stats_and_clear(self, client, admin_secret):
        headers = {"X-Admin-Secret": admin_secret}
        url = f"/api/v1/verify/{PRIMARY_CARE_PROVIDER}/{PLAN_A}"
        client.get(url)
        client.get(url)

        stats = client.get("/api/v1/admin/cache/stats", headers=headers)
        cleared = client.post("/api/v1/admin/cache/clear", headers=headers)
        after = client.get("/api/v1/admin/cache/stats", headers=headers)

        assert stats.status_code == 200
        assert stats.json()["mode"] == "memory"
        assert stats.json()["hits"] == 1
        assert stats.json()["misses"] == 1
        assert stats.json()["size"] == 1
        assert stats.json()["hit_rate"] == 50.0
        assert cleared.json()["deleted_count"] == 1
        assert after.json()["size"] == 0

    def test_cache_endpoints_require_secret(self, client, admin_secret):
        response = client.post("/api/v1/admin/cache/clear")

        assert response.status_code == 401


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["database_connected"] is True
    assert response.json()["rate_limit_backend"] == "memory"


def test_cors_exposes_degraded_mode_headers(client):
    response = client.get("/health", headers={"Origin": "http://localhost:3000"})

    exposed = response.headers["access-control-expose-headers"]
    assert "X-RateLimit-Degraded" in exposed
    assert "X-Security-Degraded" in exposed
    assert "X-Fallback-RateLimit-Remaining" in exposed


def test_request_models_accept_alias_and_field_name():
    by_name = SubmitObservationRequest(
        provider_id=PRIMARY_CARE_PROVIDER, plan_id=PLAN_A, accepts_insurance=True, captcha_token="t1"
    )
    by_alias = VoteRequest.model_validate({"vote": "up", "captchaToken": "t2"})

    assert by_name.captcha_token == "t1"
    assert by_alias.captcha_token == "t2"
