"""
Pydantic models for Provider Acceptance Verification API requests and responses.

Submitter PII (source address, email, user agent) never appears in a
response model.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Enums
# =============================================================================


class AcceptanceStatus(str, Enum):
    """Aggregated acceptance status for a provider/plan pair."""
    ACCEPTED = "ACCEPTED"
    NOT_ACCEPTED = "NOT_ACCEPTED"
    PENDING = "PENDING"
    UNKNOWN = "UNKNOWN"


class DataSource(str, Enum):
    """Where an observation (or a seeded record) came from."""
    AUTHORITATIVE_REGISTRY = "authoritative_registry"  # Official registry data
    CARRIER_REPORTED = "carrier_reported"              # Insurance carrier feed
    PROVIDER_SELF_REPORTED = "provider_self_reported"  # Provider portal
    CROWD_REPORTED = "crowd_reported"                  # Community submission
    PHONE_VERIFIED = "phone_verified"                  # Community phone check
    AUTOMATED_INFERENCE = "automated_inference"        # Automated checks


class VoteDirection(str, Enum):
    """Direction of a vote on an observation."""
    UP = "up"
    DOWN = "down"


class ConfidenceLevel(str, Enum):
    """Human-facing confidence band."""
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"


class SpecialtyCategory(str, Enum):
    """Specialty groups with distinct network churn rates."""
    MENTAL_HEALTH = "MENTAL_HEALTH"
    PRIMARY_CARE = "PRIMARY_CARE"
    SPECIALIST = "SPECIALIST"
    HOSPITAL_BASED = "HOSPITAL_BASED"


# =============================================================================
# Request Models
# =============================================================================


class SubmitObservationRequest(BaseModel):
    """Crowd submission claiming whether a provider accepts a plan."""

    provider_id: str = Field(
        ...,
        min_length=10,
        max_length=10,
        pattern=r"^\d{10}$",
        description="10-digit provider identifier (NPI)"
    )
    plan_id: str = Field(..., min_length=1, max_length=50)

    accepts_insurance: bool = Field(..., description="Does the provider accept this plan?")
    accepts_new_patients: Optional[bool] = Field(
        default=None,
        description="Optional secondary claim"
    )

    notes: Optional[str] = Field(default=None, max_length=1000)
    evidence_url: Optional[str] = Field(default=None, max_length=500)
    submitted_by: Optional[str] = Field(
        default=None,
        max_length=200,
        description="Optional submitter email, used only for duplicate detection"
    )

    captcha_token: Optional[str] = Field(default=None, alias="captchaToken")
    website: Optional[str] = Field(default=None, description="Honeypot field, must stay empty")

    class Config:
        populate_by_name = True

    @field_validator("evidence_url")
    @classmethod
    def validate_evidence_url(cls, v):
        """Ensure evidence is a web URL."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: {v}")
        return v

    @field_validator("submitted_by")
    @classmethod
    def validate_email(cls, v):
        """Loose email shape check; the address is never contacted."""
        if v is None:
            return v
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v.strip().lower()


class VoteRequest(BaseModel):
    """Up or down vote on an existing observation."""

    vote: VoteDirection
    captcha_token: Optional[str] = Field(default=None, alias="captchaToken")

    class Config:
        populate_by_name = True


# =============================================================================
# Response Models
# =============================================================================


class ConfidenceFactorsResponse(BaseModel):
    data_source_score: int
    recency_score: int
    verification_score: int
    agreement_score: int


class ConfidenceMetadataResponse(BaseModel):
    days_until_stale: int
    is_stale: bool
    recommend_reverification: bool
    days_since_verification: Optional[int] = None
    freshness_threshold: int
    specialty_category: SpecialtyCategory
    explanation: str


class ConfidenceResponse(BaseModel):
    """Score breakdown for one provider/plan pair."""

    score: int
    level: ConfidenceLevel
    description: str
    factors: ConfidenceFactorsResponse
    metadata: ConfidenceMetadataResponse


class AcceptanceResponse(BaseModel):
    """Current aggregated state of a provider/plan pair."""

    id: int
    provider_id: str
    plan_id: str
    status: AcceptanceStatus
    score: int
    level: ConfidenceLevel
    verification_count: int
    last_verified: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    confidence: Optional[ConfidenceResponse] = None

    created_at: datetime
    updated_at: datetime


class ObservationResponse(BaseModel):
    """A single observation, stripped of submitter PII."""

    id: int
    provider_id: str
    plan_id: str
    accepts_insurance: bool
    accepts_new_patients: Optional[bool] = None
    data_source: DataSource
    notes: Optional[str] = None
    evidence_url: Optional[str] = None
    previous_value: Optional[Dict] = None
    is_approved: Optional[bool] = None

    upvotes: int = 0
    downvotes: int = 0

    created_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class SubmissionResponse(BaseModel):
    observation: ObservationResponse
    acceptance: AcceptanceResponse
    message: str = "Verification submitted successfully"


class VoteResponse(BaseModel):
    observation_id: int
    upvotes: int
    downvotes: int
    net_votes: int
    vote_changed: bool
    message: str


class PairSummary(BaseModel):
    total_observations: int
    total_upvotes: int
    total_downvotes: int


class PairResponse(BaseModel):
    """Everything the directory shows for one provider/plan pair."""

    provider_id: str
    plan_id: str
    acceptance: Optional[AcceptanceResponse] = None
    observations: List[ObservationResponse]
    summary: PairSummary


class LedgerStatsResponse(BaseModel):
    total: int
    approved: int
    pending: int
    recent_count: int


class DecayRunResponse(BaseModel):
    """Result of a confidence decay recalculation."""

    dry_run: bool
    processed: int
    updated: int
    unchanged: int
    errors: int
    duration_seconds: float


class CleanupResponse(BaseModel):
    dry_run: bool
    expired_observations: int
    expired_acceptances: int
    deleted_observations: int
    deleted_acceptances: int


class ExpirationBucket(BaseModel):
    total: int
    with_ttl: int
    expired: int
    expiring_within_7_days: int
    expiring_within_30_days: int


class ExpirationStatsResponse(BaseModel):
    observations: ExpirationBucket
    acceptances: ExpirationBucket


class CacheStatsResponse(BaseModel):
    """Read cache counters."""

    mode: str
    hits: int
    misses: int
    size: Optional[int] = None
    hit_rate: float
    ttl_seconds: int


class CacheClearResponse(BaseModel):
    message: str
    deleted_count: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    database_connected: bool
    rate_limit_backend: str
    last_decay_run: Optional[datetime] = None
