"""
FastAPI dependencies shared by the route modules.
"""

import secrets
from typing import Optional

from fastapi import Depends, Header, Request, Response
from sqlalchemy.orm import Session

from acceptance_api.config import get_settings
from acceptance_api.database import get_db
from acceptance_api.decay_service import DecayService
from acceptance_api.errors import AppError, ErrorCode
from acceptance_api.rate_limiter import RateLimitResult, get_rate_limiter
from acceptance_api.verification_service import Fingerprint, VerificationLedger


def client_ip(request: Request) -> str:
    """Best-effort client address; proxies are expected to set the peer."""
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def fingerprint_for(request: Request, email: Optional[str] = None) -> Fingerprint:
    return Fingerprint(
        source_ip=client_ip(request),
        email=email,
        user_agent=request.headers.get("user-agent"),
    )


def rate_limit(limiter_name: str):
    """
    Build a dependency that charges one request against a named limiter.

    Sets the X-RateLimit-* headers on successful responses and raises a 429
    carrying the same headers plus Retry-After when the budget is spent. The
    headers are also kept on ``request.state`` so error responses raised
    later in the route still carry them.
    """

    def dependency(request: Request, response: Response) -> RateLimitResult:
        limiter = get_rate_limiter()
        result = limiter.allow(limiter_name, client_ip(request))
        if not result.allowed:
            raise AppError.too_many_requests(
                limiter.profile(limiter_name).message,
                headers=result.headers(),
            )
        request.state.rate_limit_headers = result.headers()
        response.headers.update(result.headers())
        return result

    return dependency


def get_ledger(db: Session = Depends(get_db)) -> VerificationLedger:
    return VerificationLedger(db)


def get_decay_service(db: Session = Depends(get_db)) -> DecayService:
    return DecayService(db)


def require_admin(x_admin_secret: Optional[str] = Header(default=None)):
    """Admin endpoints are disabled until a secret is configured."""
    settings = get_settings()
    if not settings.admin_secret:
        raise AppError.service_unavailable(
            "Admin endpoints are not configured",
            ErrorCode.ADMIN_NOT_CONFIGURED,
        )
    provided = (x_admin_secret or "").encode()
    if not secrets.compare_digest(provided, settings.admin_secret.encode()):
        raise AppError.unauthorized("Invalid or missing admin secret")
