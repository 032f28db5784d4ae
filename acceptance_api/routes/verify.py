"""
API routes for crowd verifications of provider/plan acceptance.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from acceptance_api.bot_check import get_captcha_verifier
from acceptance_api.dependencies import client_ip, fingerprint_for, get_ledger, rate_limit
from acceptance_api.models import (
    LedgerStatsResponse, ObservationResponse, PairResponse, SubmissionResponse,
    SubmitObservationRequest, VoteRequest, VoteResponse
)
from acceptance_api.rate_limiter import DEFAULT, SEARCH, SUBMISSION, VOTE, RateLimitResult
from acceptance_api.verification_service import VerificationLedger, acceptance_to_response


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/verify", tags=["Verifications"])


# =============================================================================
# Submit Verification
# =============================================================================


@router.post(
    "",
    response_model=SubmissionResponse,
    status_code=201,
)
def submit_verification(
    body: SubmitObservationRequest,
    request: Request,
    response: Response,
    limit: RateLimitResult = Depends(rate_limit(SUBMISSION)),
    ledger: VerificationLedger = Depends(get_ledger),
):
    """
    Submit a verification that a provider does or does not accept a plan.

    The pair's confidence score and status are recalculated immediately.
    One submission per pair per submitter is accepted inside the duplicate
    window.
    """
    ip = client_ip(request)

    if body.website:
        # Bots fill every field; answer like a success so they move on
        logger.warning(f"Honeypot triggered from {ip} on {request.url.path}")
        return JSONResponse(
            status_code=200,
            content={"message": "Verification submitted successfully"},
            headers=limit.headers(),
        )

    outcome = get_captcha_verifier().verify(body.captcha_token, ip, request.url.path)
    response.headers.update(outcome.headers())

    observation, record = ledger.submit_observation(body, fingerprint_for(request, body.submitted_by))

    return SubmissionResponse(
        observation=ObservationResponse.model_validate(observation),
        acceptance=acceptance_to_response(record, ledger.explain_record(record), ledger.clock()),
    )


# =============================================================================
# Vote on Verification
# =============================================================================


@router.post(
    "/{observation_id}/vote",
    response_model=VoteResponse,
    dependencies=[Depends(rate_limit(VOTE))],
)
def vote_on_verification(
    observation_id: int,
    body: VoteRequest,
    request: Request,
    response: Response,
    ledger: VerificationLedger = Depends(get_ledger),
):
    """
    Vote on whether a verification is accurate.

    Each address gets one vote per verification. Voting again in the other
    direction changes the existing vote.
    """
    outcome = get_captcha_verifier().verify(body.captcha_token, client_ip(request), request.url.path)
    response.headers.update(outcome.headers())

    observation, changed = ledger.vote(observation_id, body.vote, fingerprint_for(request))

    return VoteResponse(
        observation_id=observation.id,
        upvotes=observation.upvotes,
        downvotes=observation.downvotes,
        net_votes=observation.upvotes - observation.downvotes,
        vote_changed=changed,
        message="Vote changed successfully" if changed else "Vote recorded successfully",
    )


# =============================================================================
# Read Side
# =============================================================================


@router.get(
    "/recent",
    response_model=List[ObservationResponse],
    dependencies=[Depends(rate_limit(DEFAULT))],
)
def get_recent_verifications(
    limit: int = Query(default=20, ge=1, le=100),
    provider_id: Optional[str] = Query(default=None, pattern=r"^\d{10}$"),
    plan_id: Optional[str] = Query(default=None, max_length=50),
    ledger: VerificationLedger = Depends(get_ledger),
) -> List[ObservationResponse]:
    """Most recent non-expired verifications, optionally for one provider or plan."""
    observations = ledger.get_recent_observations(limit=limit, provider_id=provider_id, plan_id=plan_id)
    return [ObservationResponse.model_validate(o) for o in observations]


@router.get(
    "/stats",
    response_model=LedgerStatsResponse,
    dependencies=[Depends(rate_limit(DEFAULT))],
)
def get_verification_stats(ledger: VerificationLedger = Depends(get_ledger)):
    return LedgerStatsResponse(**ledger.get_stats())


@router.get(
    "/{provider_id}/{plan_id}",
    response_model=PairResponse,
    dependencies=[Depends(rate_limit(SEARCH))],
)
def get_pair_verifications(
    provider_id: str,
    plan_id: str,
    ledger: VerificationLedger = Depends(get_ledger),
):
    """Acceptance record, confidence breakdown and recent verifications for a pair."""
    return ledger.get_pair_summary(provider_id, plan_id)
