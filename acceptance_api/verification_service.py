"""
Verification ledger: system of record for observations and votes.

Every write (submission or vote) runs as one transaction that locks the
affected rows, mutates counters with SQL-side arithmetic, recomputes the
pair's aggregates and rescoring, and commits once. A unique-constraint race
on first record creation or first vote rolls back and retries the whole unit.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, case, delete, exists, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from acceptance_api.cache import ReadCache, get_read_cache
from acceptance_api.confidence import (
    ConfidenceInput, ConfidenceResult, calculate_confidence, get_confidence_level
)
from acceptance_api.config import Settings, get_settings
from acceptance_api.database import AcceptanceRecord, Observation, Vote, utcnow
from acceptance_api.errors import AppError, ErrorCode
from acceptance_api.models import (
    AcceptanceResponse, AcceptanceStatus, ConfidenceResponse, DataSource,
    ObservationResponse, PairResponse, PairSummary, SubmitObservationRequest,
    VoteDirection
)
from acceptance_api.reference import ReferenceData


logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


@dataclass(frozen=True)
class Fingerprint:
    """Opaque submitter identity: source address, optionally an email."""

    source_ip: str
    email: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class PairAggregates:
    """Non-expired totals for one provider/plan pair."""

    observation_count: int = 0
    upvotes: int = 0
    downvotes: int = 0
    accepted_count: int = 0
    not_accepted_count: int = 0
    data_sources: Tuple[str, ...] = ()


def not_expired(now: datetime):
    return Observation.expires_at > now


def pair_aggregates(db: Session, provider_id: str, plan_id: str, now: datetime) -> PairAggregates:
    """Count non-expired observations, votes and claims for a pair."""
    pair_filter = and_(
        Observation.provider_id == provider_id,
        Observation.plan_id == plan_id,
        not_expired(now),
    )
    row = db.execute(
        select(
            func.count(Observation.id),
            func.coalesce(func.sum(Observation.upvotes), 0),
            func.coalesce(func.sum(Observation.downvotes), 0),
            func.coalesce(func.sum(case((Observation.accepts_insurance.is_(True), 1), else_=0)), 0),
            func.coalesce(func.sum(case((Observation.accepts_insurance.is_(False), 1), else_=0)), 0),
        ).where(pair_filter)
    ).one()
    sources = db.execute(
        select(Observation.data_source).where(pair_filter).distinct()
    ).scalars().all()

    return PairAggregates(
        observation_count=int(row[0]),
        upvotes=int(row[1]),
        downvotes=int(row[2]),
        accepted_count=int(row[3]),
        not_accepted_count=int(row[4]),
        data_sources=tuple(sources),
    )


def score_record(
    record: AcceptanceRecord,
    aggregates: PairAggregates,
    specialty: Optional[str],
    taxonomy_description: Optional[str],
    now: datetime,
) -> ConfidenceResult:
    """Run the scoring engine over a record and its aggregates."""
    return calculate_confidence(
        ConfidenceInput(
            data_sources=(record.data_source, *aggregates.data_sources),
            last_verified_at=record.last_verified,
            verification_count=aggregates.observation_count,
            upvotes=aggregates.upvotes,
            downvotes=aggregates.downvotes,
            specialty=specialty,
            taxonomy_description=taxonomy_description,
        ),
        now=now,
    )


def determine_status(
    current_status: Optional[str],
    verification_count: int,
    score: int,
    accepted_count: int,
    not_accepted_count: int,
    settings: Settings,
) -> str:
    """
    Derive the acceptance status from the claims.

    The status flips only with enough verifications, enough confidence, and a
    clear (more than 2:1) majority. Otherwise the existing status stands, and
    a pair that was UNKNOWN becomes PENDING.
    """
    has_clear_majority = (
        accepted_count > not_accepted_count * 2
        or not_accepted_count > accepted_count * 2
    )
    if (
        verification_count >= settings.min_verifications_for_consensus
        and score >= settings.min_confidence_for_status_change
        and has_clear_majority
    ):
        if accepted_count > not_accepted_count:
            return AcceptanceStatus.ACCEPTED.value
        return AcceptanceStatus.NOT_ACCEPTED.value

    if current_status in (None, AcceptanceStatus.UNKNOWN.value):
        return AcceptanceStatus.PENDING.value
    return current_status


def acceptance_to_response(
    record: AcceptanceRecord,
    confidence: Optional[ConfidenceResult],
    now: datetime,
) -> AcceptanceResponse:
    """Convert an AcceptanceRecord, plus its breakdown if known, to a response model."""
    level = confidence.level if confidence else get_confidence_level(record.score, record.verification_count)
    return AcceptanceResponse(
        id=record.id,
        provider_id=record.provider_id,
        plan_id=record.plan_id,
        status=record.status,
        score=record.score,
        level=level,
        verification_count=record.verification_count,
        last_verified=record.last_verified,
        expires_at=record.expires_at,
        is_expired=record.expires_at is not None and record.expires_at <= now,
        confidence=ConfidenceResponse(**confidence.to_dict()) if confidence else None,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class VerificationLedger:
    """
    Service for recording observations and votes on provider/plan pairs.

    Both write paths finish by rescoring the affected pair inside the same
    transaction and invalidating its cached summary.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        reference: Optional[ReferenceData] = None,
        cache: Optional[ReadCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.reference = reference or ReferenceData(db)
        self.cache = cache or get_read_cache()
        self.clock = clock

    # =========================================================================
    # Submission
    # =========================================================================

    def submit_observation(
        self,
        request: SubmitObservationRequest,
        fingerprint: Fingerprint,
    ) -> Tuple[Observation, AcceptanceRecord]:
        """
        Record a new observation and rescore its pair.

        Raises:
            AppError: 404 for unknown provider/plan, 409 DUPLICATE_SUBMISSION
                when the fingerprint already has a live observation for the
                pair inside the duplicate window.
        """
        if not self.reference.provider_exists(request.provider_id):
            raise AppError.not_found(f"Provider {request.provider_id} not found")
        if not self.reference.plan_exists(request.plan_id):
            raise AppError.not_found(f"Plan {request.plan_id} not found")

        result = self._with_retry(lambda: self._submit_once(request, fingerprint))
        self.cache.invalidate_pair(request.provider_id, request.plan_id)
        return result

    def _submit_once(
        self,
        request: SubmitObservationRequest,
        fingerprint: Fingerprint,
    ) -> Tuple[Observation, AcceptanceRecord]:
        now = self.clock()
        record = self._lock_or_create_record(request.provider_id, request.plan_id, now)

        self._check_duplicate(request.provider_id, request.plan_id, fingerprint, now)

        previous_value = None
        if record.verification_count > 0:
            previous_value = {"status": record.status, "score": record.score}

        observation = Observation(
            provider_id=request.provider_id,
            plan_id=request.plan_id,
            acceptance_id=record.id,
            accepts_insurance=request.accepts_insurance,
            accepts_new_patients=request.accepts_new_patients,
            data_source=DataSource.CROWD_REPORTED.value,
            notes=request.notes,
            evidence_url=request.evidence_url,
            previous_value=previous_value,
            source_ip=fingerprint.source_ip,
            submitter_email=fingerprint.email,
            user_agent=fingerprint.user_agent,
            upvotes=0,
            downvotes=0,
            created_at=now,
            expires_at=now + timedelta(days=self.settings.observation_ttl_days),
        )
        self.db.add(observation)
        self.db.flush()

        record.last_verified = now
        record.expires_at = now + timedelta(days=self.settings.observation_ttl_days)
        self._rescore(record, now)

        self.db.commit()
        self.db.refresh(observation)
        self.db.refresh(record)

        logger.info(
            f"Observation {observation.id} recorded for {record.provider_id}/{record.plan_id}: "
            f"score={record.score} status={record.status} count={record.verification_count}"
        )
        return observation, record

    def _check_duplicate(
        self,
        provider_id: str,
        plan_id: str,
        fingerprint: Fingerprint,
        now: datetime,
    ):
        cutoff = now - timedelta(days=self.settings.duplicate_window_days)
        matches = [Observation.source_ip == fingerprint.source_ip]
        if fingerprint.email:
            matches.append(Observation.submitter_email == fingerprint.email)

        duplicate = self.db.execute(
            select(Observation.id).where(
                Observation.provider_id == provider_id,
                Observation.plan_id == plan_id,
                Observation.created_at >= cutoff,
                not_expired(now),
                or_(*matches),
            ).limit(1)
        ).first()

        if duplicate is not None:
            raise AppError.conflict(
                "You have already submitted a verification for this provider-plan pair "
                f"within the last {self.settings.duplicate_window_days} days.",
                ErrorCode.DUPLICATE_SUBMISSION,
            )

    # =========================================================================
    # Voting
    # =========================================================================

    def vote(
        self,
        observation_id: int,
        direction: VoteDirection,
        fingerprint: Fingerprint,
    ) -> Tuple[Observation, bool]:
        """
        Record or flip a vote, then rescore the observation's pair.

        Returns the updated observation and whether an existing vote changed
        direction.

        Raises:
            AppError: 404 for unknown or expired observations, 409
                ALREADY_VOTED for a repeated vote in the same direction.
        """
        observation, changed = self._with_retry(
            lambda: self._vote_once(observation_id, direction, fingerprint)
        )
        self.cache.invalidate_pair(observation.provider_id, observation.plan_id)
        return observation, changed

    def _vote_once(
        self,
        observation_id: int,
        direction: VoteDirection,
        fingerprint: Fingerprint,
    ) -> Tuple[Observation, bool]:
        now = self.clock()
        observation = self.db.execute(
            select(Observation).where(Observation.id == observation_id).with_for_update()
        ).scalar_one_or_none()
        if observation is None or observation.expires_at <= now:
            raise AppError.not_found("Verification not found")

        existing = self.db.execute(
            select(Vote).where(
                Vote.observation_id == observation_id,
                Vote.source_ip == fingerprint.source_ip,
            )
        ).scalar_one_or_none()

        delta_up, delta_down = (1, 0) if direction == VoteDirection.UP else (0, 1)
        changed = False

        if existing is not None:
            if existing.direction == direction.value:
                raise AppError.conflict(
                    "You have already voted on this verification",
                    ErrorCode.ALREADY_VOTED,
                )
            # Move one vote from the old counter to the new one in a single UPDATE
            delta_up, delta_down = (1, -1) if direction == VoteDirection.UP else (-1, 1)
            existing.direction = direction.value
            existing.updated_at = now
            changed = True
        else:
            self.db.add(Vote(
                observation_id=observation_id,
                source_ip=fingerprint.source_ip,
                direction=direction.value,
                created_at=now,
                updated_at=now,
            ))
        self.db.flush()

        self.db.execute(
            update(Observation)
            .where(Observation.id == observation_id)
            .values(
                upvotes=Observation.upvotes + delta_up,
                downvotes=Observation.downvotes + delta_down,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(observation)

        record = self._lock_or_create_record(observation.provider_id, observation.plan_id, now)
        self._rescore(record, now)

        self.db.commit()
        self.db.refresh(observation)

        logger.info(
            f"Vote {direction.value} on observation {observation_id} "
            f"({'changed' if changed else 'new'}): +{observation.upvotes}/-{observation.downvotes}"
        )
        return observation, changed

    # =========================================================================
    # Shared write helpers
    # =========================================================================

    def _with_retry(self, operation):
        """Run a write unit, retrying on unique-constraint races."""
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            try:
                return operation()
            except IntegrityError:
                self.db.rollback()
                if attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.warning(f"Write conflict, retrying (attempt {attempt})")
            except Exception:
                self.db.rollback()
                raise

    def _lock_or_create_record(self, provider_id: str, plan_id: str, now: datetime) -> AcceptanceRecord:
        record = self.db.execute(
            select(AcceptanceRecord)
            .where(
                AcceptanceRecord.provider_id == provider_id,
                AcceptanceRecord.plan_id == plan_id,
            )
            .with_for_update()
        ).scalar_one_or_none()
        if record is not None:
            return record

        record = AcceptanceRecord(
            provider_id=provider_id,
            plan_id=plan_id,
            status=AcceptanceStatus.UNKNOWN.value,
            score=0,
            verification_count=0,
            created_at=now,
            updated_at=now,
        )
        self.db.add(record)
        self.db.flush()  # IntegrityError here means another writer created it first
        return record

    def _rescore(self, record: AcceptanceRecord, now: datetime) -> ConfidenceResult:
        aggregates = pair_aggregates(self.db, record.provider_id, record.plan_id, now)
        specialty, taxonomy = self.reference.get_specialty(record.provider_id)
        result = score_record(record, aggregates, specialty, taxonomy, now)

        record.verification_count = aggregates.observation_count
        record.score = result.score
        record.status = determine_status(
            record.status,
            aggregates.observation_count,
            result.score,
            aggregates.accepted_count,
            aggregates.not_accepted_count,
            self.settings,
        )
        record.updated_at = now
        return result

    # =========================================================================
    # Read side
    # =========================================================================

    def get_record(self, provider_id: str, plan_id: str) -> Optional[AcceptanceRecord]:
        return self.db.execute(
            select(AcceptanceRecord).where(
                AcceptanceRecord.provider_id == provider_id,
                AcceptanceRecord.plan_id == plan_id,
            )
        ).scalar_one_or_none()

    def explain_record(self, record: AcceptanceRecord) -> ConfidenceResult:
        """Current confidence breakdown for a record, decayed to now."""
        now = self.clock()
        aggregates = pair_aggregates(self.db, record.provider_id, record.plan_id, now)
        specialty, taxonomy = self.reference.get_specialty(record.provider_id)
        return score_record(record, aggregates, specialty, taxonomy, now)

    def get_pair_summary(self, provider_id: str, plan_id: str) -> dict:
        """
        Record, confidence breakdown and recent observations for one pair.

        Served from the read cache when possible; writes to the pair
        invalidate the entry.

        Raises:
            AppError: 404 for unknown provider/plan.
        """
        key = self.cache.pair_key(provider_id, plan_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if not self.reference.provider_exists(provider_id):
            raise AppError.not_found(f"Provider {provider_id} not found")
        if not self.reference.plan_exists(plan_id):
            raise AppError.not_found(f"Plan {plan_id} not found")

        record = self.get_record(provider_id, plan_id)
        acceptance = None
        if record is not None:
            acceptance = acceptance_to_response(record, self.explain_record(record), self.clock())

        observations = self.get_pair_observations(provider_id, plan_id)
        summary = PairResponse(
            provider_id=provider_id,
            plan_id=plan_id,
            acceptance=acceptance,
            observations=[ObservationResponse.model_validate(o) for o in observations],
            summary=PairSummary(
                total_observations=len(observations),
                total_upvotes=sum(o.upvotes for o in observations),
                total_downvotes=sum(o.downvotes for o in observations),
            ),
        ).model_dump(mode="json")

        self.cache.set(key, summary)
        return summary

    def get_pair_observations(
        self,
        provider_id: str,
        plan_id: str,
        include_expired: bool = False,
    ) -> List[Observation]:
        query = select(Observation).where(
            Observation.provider_id == provider_id,
            Observation.plan_id == plan_id,
        )
        if not include_expired:
            query = query.where(not_expired(self.clock()))
        query = query.order_by(Observation.created_at.desc(), Observation.id.desc())
        return list(self.db.execute(query.limit(self.settings.pair_observations_limit)).scalars())

    def get_recent_observations(
        self,
        limit: int = 20,
        provider_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        include_expired: bool = False,
    ) -> List[Observation]:
        query = select(Observation)
        if not include_expired:
            query = query.where(not_expired(self.clock()))
        if provider_id:
            query = query.where(Observation.provider_id == provider_id)
        if plan_id:
            query = query.where(Observation.plan_id == plan_id)
        query = query.order_by(Observation.created_at.desc(), Observation.id.desc())
        limit = min(limit, self.settings.recent_observations_limit)
        return list(self.db.execute(query.limit(limit)).scalars())

    def get_stats(self) -> Dict[str, int]:
        last_24_hours = self.clock() - timedelta(hours=24)
        count = func.count(Observation.id)
        return {
            "total": self.db.scalar(select(count)) or 0,
            "approved": self.db.scalar(select(count).where(Observation.is_approved.is_(True))) or 0,
            "pending": self.db.scalar(select(count).where(Observation.is_approved.is_(None))) or 0,
            "recent_count": self.db.scalar(
                select(count).where(Observation.created_at >= last_24_hours)
            ) or 0,
        }

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup_expired(self, dry_run: bool = False, batch_size: int = 1000) -> Dict:
        """
        Delete observations past their TTL, then acceptance records past
        theirs that no longer have live observations.

        Deletes in bounded batches, committing after each.
        """
        now = self.clock()
        expired_observation = Observation.expires_at < now
        expired_record = and_(
            AcceptanceRecord.expires_at.is_not(None),
            AcceptanceRecord.expires_at < now,
            ~exists().where(
                Observation.provider_id == AcceptanceRecord.provider_id,
                Observation.plan_id == AcceptanceRecord.plan_id,
                Observation.expires_at >= now,
            ),
        )

        result = {
            "dry_run": dry_run,
            "expired_observations": self.db.scalar(
                select(func.count(Observation.id)).where(expired_observation)
            ) or 0,
            "expired_acceptances": self.db.scalar(
                select(func.count(AcceptanceRecord.id)).where(expired_record)
            ) or 0,
            "deleted_observations": 0,
            "deleted_acceptances": 0,
        }
        if dry_run:
            return result

        touched_pairs = set()
        while True:
            rows = self.db.execute(
                select(Observation.id, Observation.provider_id, Observation.plan_id)
                .where(expired_observation)
                .limit(batch_size)
            ).all()
            if not rows:
                break
            ids = [row.id for row in rows]
            touched_pairs.update((row.provider_id, row.plan_id) for row in rows)
            self.db.execute(delete(Vote).where(Vote.observation_id.in_(ids)))
            self.db.execute(delete(Observation).where(Observation.id.in_(ids)))
            self.db.commit()
            result["deleted_observations"] += len(ids)
            if len(ids) < batch_size:
                break

        while True:
            rows = self.db.execute(
                select(AcceptanceRecord.id, AcceptanceRecord.provider_id, AcceptanceRecord.plan_id)
                .where(expired_record)
                .limit(batch_size)
            ).all()
            if not rows:
                break
            ids = [row.id for row in rows]
            touched_pairs.update((row.provider_id, row.plan_id) for row in rows)
            self.db.execute(delete(AcceptanceRecord).where(AcceptanceRecord.id.in_(ids)))
            self.db.commit()
            result["deleted_acceptances"] += len(ids)
            if len(ids) < batch_size:
                break

        for provider_id, plan_id in touched_pairs:
            self.cache.invalidate_pair(provider_id, plan_id)

        logger.info(
            f"Expired cleanup: {result['deleted_observations']} observations, "
            f"{result['deleted_acceptances']} acceptance records deleted"
        )
        return result

    def get_expiration_stats(self) -> Dict[str, Dict[str, int]]:
        now = self.clock()
        in_7_days = now + timedelta(days=7)
        in_30_days = now + timedelta(days=30)

        def bucket(model) -> Dict[str, int]:
            count = func.count(model.id)
            return {
                "total": self.db.scalar(select(count)) or 0,
                "with_ttl": self.db.scalar(select(count).where(model.expires_at.is_not(None))) or 0,
                "expired": self.db.scalar(select(count).where(model.expires_at < now)) or 0,
                "expiring_within_7_days": self.db.scalar(
                    select(count).where(model.expires_at >= now, model.expires_at < in_7_days)
                ) or 0,
                "expiring_within_30_days": self.db.scalar(
                    select(count).where(model.expires_at >= now, model.expires_at < in_30_days)
                ) or 0,
            }

        return {"observations": bucket(Observation), "acceptances": bucket(AcceptanceRecord)}
