"""
Confidence scoring for provider/plan acceptance records.

Converts four bounded sub-scores into a 0-100 trust score:

- Data source quality (0-25): the most authoritative contributing source
- Recency (0-30): decay scaled by a specialty-specific freshness threshold
- Verification volume (0-25): step function, 3 observations reach expert accuracy
- Community agreement (0-20): upvote ratio

Every ladder is a lookup table so thresholds can be tuned without touching
the control flow. ``calculate_confidence`` is pure: the caller supplies the
current time, so identical inputs always produce identical output.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from acceptance_api.models import ConfidenceLevel, DataSource, SpecialtyCategory


# =============================================================================
# Tables
# =============================================================================

# Source quality (max 25)
DATA_SOURCE_SCORES: Dict[str, int] = {
    DataSource.AUTHORITATIVE_REGISTRY.value: 25,
    DataSource.CARRIER_REPORTED.value: 20,
    DataSource.PROVIDER_SELF_REPORTED.value: 20,
    DataSource.CROWD_REPORTED.value: 15,
    DataSource.PHONE_VERIFIED.value: 15,
    DataSource.AUTOMATED_INFERENCE.value: 10,
}
UNKNOWN_SOURCE_SCORE = 10

# Freshness threshold in days per specialty category
FRESHNESS_THRESHOLDS: Dict[SpecialtyCategory, int] = {
    SpecialtyCategory.MENTAL_HEALTH: 30,
    SpecialtyCategory.PRIMARY_CARE: 60,
    SpecialtyCategory.SPECIALIST: 60,
    SpecialtyCategory.HOSPITAL_BASED: 90,
}

# First match wins; anything unmatched is a specialist
SPECIALTY_KEYWORDS: List[Tuple[SpecialtyCategory, Tuple[str, ...]]] = [
    (SpecialtyCategory.MENTAL_HEALTH, (
        "psychiatr", "psycholog", "mental health", "behavioral health",
        "counselor", "therapist",
    )),
    (SpecialtyCategory.PRIMARY_CARE, (
        "family medicine", "family practice", "internal medicine",
        "general practice", "primary care",
    )),
    (SpecialtyCategory.HOSPITAL_BASED, (
        "hospital", "radiology", "anesthesiology", "pathology", "emergency medicine",
    )),
]
DEFAULT_SPECIALTY = SpecialtyCategory.SPECIALIST

# Recency tiers as (fraction of freshness threshold, points)
RECENCY_TIERS: List[Tuple[float, int]] = [
    (0.5, 30),
    (1.0, 20),
    (1.5, 10),
]
# Absolute tail after the relative tiers: (max days, points)
RECENCY_ABSOLUTE_TIERS: List[Tuple[int, int]] = [
    (180, 5),
]

# Observation count -> points. The 15 -> 25 jump at three observations is the
# expert-accuracy threshold and is deliberately not interpolated.
VERIFICATION_SCORES: Dict[int, int] = {0: 0, 1: 10, 2: 15}
VERIFICATION_SCORE_AT_THRESHOLD = 25
MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE = 3

# Upvote ratio floors -> points, checked in order
AGREEMENT_TIERS: List[Tuple[float, int]] = [
    (1.0, 20),
    (0.8, 15),
    (0.6, 10),
    (0.4, 5),
]

# Minimum score for each level, checked in order
LEVEL_FLOORS: List[Tuple[int, ConfidenceLevel]] = [
    (91, ConfidenceLevel.VERY_HIGH),
    (76, ConfidenceLevel.HIGH),
    (51, ConfidenceLevel.MEDIUM),
    (26, ConfidenceLevel.LOW),
    (0, ConfidenceLevel.VERY_LOW),
]
CAPPED_LEVEL = ConfidenceLevel.MEDIUM
_LEVEL_ORDER = [level for _, level in reversed(LEVEL_FLOORS)]

LEVEL_DESCRIPTIONS: Dict[ConfidenceLevel, str] = {
    ConfidenceLevel.VERY_HIGH: "Verified through multiple authoritative sources with expert-level accuracy.",
    ConfidenceLevel.HIGH: "Verified through authoritative sources or multiple community verifications.",
    ConfidenceLevel.MEDIUM: "Some verification exists, but may need confirmation.",
    ConfidenceLevel.LOW: "Limited verification data. Call provider to confirm before visiting.",
    ConfidenceLevel.VERY_LOW: "Unverified or potentially inaccurate. Always call to confirm.",
}

REVERIFY_FRACTION = 0.8
SECONDS_PER_DAY = 24 * 60 * 60

_SOURCE_PHRASES: List[Tuple[int, str]] = [
    (25, "verified through official registry data"),
    (20, "verified through insurance carrier or provider data"),
    (15, "verified through community submissions"),
    (0, "limited authoritative data"),
]
_AGREEMENT_PHRASES: Dict[int, str] = {
    20: "complete community consensus",
    15: "strong community consensus",
    10: "moderate community consensus",
    5: "weak community consensus",
}
_SPECIALTY_LABELS: Dict[SpecialtyCategory, str] = {
    SpecialtyCategory.MENTAL_HEALTH: "mental health providers (high network turnover)",
    SpecialtyCategory.PRIMARY_CARE: "primary care providers",
    SpecialtyCategory.HOSPITAL_BASED: "hospital-based providers (stable participation)",
    SpecialtyCategory.SPECIALIST: "specialists",
}


# =============================================================================
# Data structures
# =============================================================================


@dataclass(frozen=True)
class ConfidenceInput:
    """Everything the scoring function looks at for one pair."""

    data_sources: Sequence[Optional[str]] = ()
    last_verified_at: Optional[datetime] = None
    verification_count: int = 0
    upvotes: int = 0
    downvotes: int = 0
    specialty: Optional[str] = None
    taxonomy_description: Optional[str] = None


@dataclass(frozen=True)
class ConfidenceFactors:
    data_source_score: int
    recency_score: int
    verification_score: int
    agreement_score: int

    @property
    def total(self) -> int:
        return (
            self.data_source_score
            + self.recency_score
            + self.verification_score
            + self.agreement_score
        )


@dataclass(frozen=True)
class ConfidenceMetadata:
    days_until_stale: int
    is_stale: bool
    recommend_reverification: bool
    days_since_verification: Optional[int]
    freshness_threshold: int
    specialty_category: SpecialtyCategory
    explanation: str


@dataclass(frozen=True)
class ConfidenceResult:
    score: int
    level: ConfidenceLevel
    description: str
    factors: ConfidenceFactors
    metadata: ConfidenceMetadata

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "level": self.level.value,
            "description": self.description,
            "factors": {
                "data_source_score": self.factors.data_source_score,
                "recency_score": self.factors.recency_score,
                "verification_score": self.factors.verification_score,
                "agreement_score": self.factors.agreement_score,
            },
            "metadata": {
                "days_until_stale": self.metadata.days_until_stale,
                "is_stale": self.metadata.is_stale,
                "recommend_reverification": self.metadata.recommend_reverification,
                "days_since_verification": self.metadata.days_since_verification,
                "freshness_threshold": self.metadata.freshness_threshold,
                "specialty_category": self.metadata.specialty_category.value,
                "explanation": self.metadata.explanation,
            },
        }


# =============================================================================
# Sub-scores
# =============================================================================


def classify_specialty(
    specialty: Optional[str],
    taxonomy_description: Optional[str] = None,
) -> SpecialtyCategory:
    """Map free-text specialty into a freshness category by keyword match."""
    text = f"{specialty or ''} {taxonomy_description or ''}".lower()
    for category, keywords in SPECIALTY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_SPECIALTY


def calculate_data_source_score(sources: Iterable[Optional[str]]) -> int:
    """Score of the most authoritative contributing source."""
    scores = [DATA_SOURCE_SCORES.get(_source_key(s), UNKNOWN_SOURCE_SCORE) for s in sources if s]
    return max(scores, default=UNKNOWN_SOURCE_SCORE)


def calculate_recency_score(days_since_verification: Optional[int], freshness_threshold: int) -> int:
    if days_since_verification is None:
        return 0
    for fraction, points in RECENCY_TIERS:
        if days_since_verification <= freshness_threshold * fraction:
            return points
    for max_days, points in RECENCY_ABSOLUTE_TIERS:
        if days_since_verification <= max_days:
            return points
    return 0


def calculate_verification_score(verification_count: int) -> int:
    if verification_count >= MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        return VERIFICATION_SCORE_AT_THRESHOLD
    return VERIFICATION_SCORES.get(max(0, verification_count), 0)


def calculate_agreement_score(upvotes: int, downvotes: int) -> int:
    total_votes = upvotes + downvotes
    if total_votes <= 0:
        return 0
    ratio = upvotes / total_votes
    for floor, points in AGREEMENT_TIERS:
        if ratio >= floor:
            return points
    return 0


def get_confidence_level(score: int, verification_count: int) -> ConfidenceLevel:
    """
    Level band for a score, capped at MEDIUM below three observations.

    One enthusiastic observation on top of old authoritative data must not
    read as highly trustworthy.
    """
    level = next(level for floor, level in LEVEL_FLOORS if score >= floor)
    if verification_count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        if _LEVEL_ORDER.index(level) > _LEVEL_ORDER.index(CAPPED_LEVEL):
            return CAPPED_LEVEL
    return level


def get_confidence_level_description(level: ConfidenceLevel, verification_count: int) -> str:
    description = LEVEL_DESCRIPTIONS[level]
    if verification_count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        description += " Three independent verifications are needed for expert-level accuracy."
    return description


def days_between(earlier: Optional[datetime], later: datetime) -> Optional[int]:
    """Whole days elapsed from ``earlier`` to ``later``; None if never verified."""
    if earlier is None:
        return None
    delta = _as_naive_utc(later) - _as_naive_utc(earlier)
    return math.floor(delta.total_seconds() / SECONDS_PER_DAY)


# =============================================================================
# Public entry point
# =============================================================================


def calculate_confidence(inputs: ConfidenceInput, now: datetime) -> ConfidenceResult:
    """Score one provider/plan pair."""
    category = classify_specialty(inputs.specialty, inputs.taxonomy_description)
    threshold = FRESHNESS_THRESHOLDS[category]
    days_since = days_between(inputs.last_verified_at, now)

    factors = ConfidenceFactors(
        data_source_score=calculate_data_source_score(inputs.data_sources),
        recency_score=calculate_recency_score(days_since, threshold),
        verification_score=calculate_verification_score(inputs.verification_count),
        agreement_score=calculate_agreement_score(inputs.upvotes, inputs.downvotes),
    )
    score = max(0, min(100, factors.total))
    level = get_confidence_level(score, inputs.verification_count)

    is_stale = days_since is not None and days_since > threshold
    if days_since is None:
        days_until_stale = threshold
    else:
        days_until_stale = max(0, threshold - days_since)
    recommend = (
        is_stale
        or days_since is None
        or days_since > threshold * REVERIFY_FRACTION
    )

    metadata = ConfidenceMetadata(
        days_until_stale=days_until_stale,
        is_stale=is_stale,
        recommend_reverification=recommend,
        days_since_verification=days_since,
        freshness_threshold=threshold,
        specialty_category=category,
        explanation=build_explanation(score, factors, inputs.verification_count, days_since, category),
    )

    return ConfidenceResult(
        score=score,
        level=level,
        description=get_confidence_level_description(level, inputs.verification_count),
        factors=factors,
        metadata=metadata,
    )


def build_explanation(
    score: int,
    factors: ConfidenceFactors,
    verification_count: int,
    days_since_verification: Optional[int],
    category: SpecialtyCategory,
) -> str:
    """One readable sentence naming what drove each of the four sub-scores."""
    parts = [next(p for floor, p in _SOURCE_PHRASES if factors.data_source_score >= floor)]

    threshold = FRESHNESS_THRESHOLDS[category]
    if days_since_verification is None:
        parts.append("never verified")
    elif factors.recency_score == 30:
        parts.append(f"very recent verification ({days_since_verification} days ago)")
    elif factors.recency_score == 20:
        parts.append(f"recent verification ({days_since_verification} days ago)")
    elif factors.recency_score == 10:
        parts.append(f"aging data ({days_since_verification} days old)")
    elif factors.recency_score == 5:
        parts.append(f"stale data ({days_since_verification} days old)")
    else:
        parts.append(f"very stale data ({days_since_verification} days old) that needs re-verification")
    parts[-1] += f" against a {threshold}-day freshness window for {_SPECIALTY_LABELS[category]}"

    if verification_count == 0:
        parts.append("no community verifications yet")
    elif verification_count < MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE:
        needed = MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE - verification_count
        parts.append(f"{verification_count} of {MIN_VERIFICATIONS_FOR_HIGH_CONFIDENCE} verifications ({needed} more needed)")
    else:
        parts.append(f"{verification_count} verifications (expert-level threshold reached)")

    if factors.agreement_score in _AGREEMENT_PHRASES:
        parts.append(_AGREEMENT_PHRASES[factors.agreement_score])
    elif verification_count > 0:
        parts.append("no clear community agreement")

    return f"This {score}% confidence score is based on: {'; '.join(parts)}."


def _source_key(source) -> str:
    return source.value if isinstance(source, DataSource) else str(source)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
