"""
Batch confidence decay for provider/plan acceptance records.

Scores lose their recency component purely as time passes, so records that
receive no new submissions still need periodic rescoring. This service walks
every record with at least one verification in id order, one bounded page at
a time, and rewrites only the rows whose score changed.
"""

import logging
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from acceptance_api.config import Settings, get_settings
from acceptance_api.database import AcceptanceRecord, DecayRun, Provider, utcnow
from acceptance_api.verification_service import pair_aggregates, score_record


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class DecayService:
    """
    Service for recalculating confidence scores as verifications age.

    Each changed record commits on its own, so a crash mid-run leaves the
    processed rows updated and the rest untouched; rerunning is safe.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def recalculate_all_scores(
        self,
        dry_run: bool = False,
        limit: Optional[int] = None,
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        trigger: str = "manual",
    ) -> Dict:
        """
        Recalculate scores for all records with at least one verification.

        Args:
            dry_run: Count what would change without writing
            limit: Stop after this many records (None = all)
            batch_size: Records fetched per page
            on_progress: Called with (processed, updated) after each page
            trigger: Label stored on the run log ("manual", "scheduled", ...)

        Returns:
            Dictionary with processed/updated/unchanged/errors/duration_seconds
        """
        batch_size = batch_size or self.settings.decay_batch_size
        start_time = time.time()
        stats = {"processed": 0, "updated": 0, "unchanged": 0, "errors": 0}

        decay_run = DecayRun(started_at=utcnow(), trigger=trigger, dry_run=dry_run)
        self.db.add(decay_run)
        self.db.commit()

        logger.info(
            f"Starting confidence recalculation (dry_run={dry_run}, "
            f"limit={limit}, batch_size={batch_size})"
        )

        try:
            cursor = 0
            while limit is None or stats["processed"] < limit:
                take = batch_size if limit is None else min(batch_size, limit - stats["processed"])
                # Plain tuples: rows may be deleted or rewritten by other writers mid-page
                page = self.db.execute(
                    select(AcceptanceRecord.id, Provider.primary_specialty, Provider.taxonomy_description)
                    .outerjoin(Provider, Provider.id == AcceptanceRecord.provider_id)
                    .where(
                        AcceptanceRecord.verification_count >= 1,
                        AcceptanceRecord.id > cursor,
                    )
                    .order_by(AcceptanceRecord.id)
                    .limit(take)
                ).all()
                if not page:
                    break

                for record_id, specialty, taxonomy in page:
                    cursor = record_id
                    try:
                        if self._recalculate_record(record_id, specialty, taxonomy, dry_run):
                            stats["updated"] += 1
                        else:
                            stats["unchanged"] += 1
                    except Exception:
                        self.db.rollback()
                        stats["errors"] += 1
                        logger.exception(f"Error recalculating confidence for record {cursor}")
                    stats["processed"] += 1

                if on_progress:
                    on_progress(stats["processed"], stats["updated"])

                # Pages hold no state across iterations
                self.db.expunge_all()

            return self._finalize_run(decay_run, stats, start_time, dry_run)

        except Exception as e:
            logger.exception("Confidence recalculation aborted")
            self.db.rollback()
            decay_run = self.db.merge(decay_run)
            decay_run.success = False
            decay_run.error_message = str(e)
            decay_run.completed_at = utcnow()
            self.db.commit()
            raise

    def _recalculate_record(
        self,
        record_id: int,
        specialty: Optional[str],
        taxonomy: Optional[str],
        dry_run: bool,
    ) -> bool:
        """
        Rescore one record under its row lock.

        Returns True when its stored values changed. A record deleted since the
        page was read, or rewritten by another writer before ours lands, counts
        as unchanged.
        """
        now = self.clock()
        record = self.db.execute(
            select(AcceptanceRecord)
            .where(AcceptanceRecord.id == record_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None:
            self.db.rollback()
            logger.debug(f"Record {record_id} was deleted before recalculation")
            return False

        seen_score, seen_count, seen_verified = record.score, record.verification_count, record.last_verified
        aggregates = pair_aggregates(self.db, record.provider_id, record.plan_id, now)
        result = score_record(record, aggregates, specialty, taxonomy, now)

        if result.score == record.score and aggregates.observation_count == record.verification_count:
            self.db.rollback()
            return False

        if dry_run:
            self.db.rollback()
            return True

        # Only overwrite the row as it was read; a newer write already rescored it
        written = self.db.execute(
            update(AcceptanceRecord)
            .where(
                AcceptanceRecord.id == record_id,
                AcceptanceRecord.score == seen_score,
                AcceptanceRecord.verification_count == seen_count,
                AcceptanceRecord.last_verified.is_not_distinct_from(seen_verified),
            )
            .values(
                score=result.score,
                verification_count=aggregates.observation_count,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        self.db.commit()

        if not written:
            logger.info(f"Record {record_id} changed during recalculation, keeping the newer write")
            return False
        return True

    def _finalize_run(self, decay_run: DecayRun, stats: Dict, start_time: float, dry_run: bool) -> Dict:
        """Finalize and log the recalculation run."""
        duration = time.time() - start_time

        decay_run = self.db.merge(decay_run)
        decay_run.completed_at = utcnow()
        decay_run.processed = stats["processed"]
        decay_run.updated = stats["updated"]
        decay_run.unchanged = stats["unchanged"]
        decay_run.errors = stats["errors"]
        decay_run.duration_seconds = duration
        decay_run.success = stats["errors"] == 0
        self.db.commit()

        logger.info(
            f"Confidence recalculation complete: {stats['processed']} processed, "
            f"{stats['updated']} updated, {stats['unchanged']} unchanged, "
            f"{stats['errors']} errors in {duration:.2f}s"
        )

        return {
            "dry_run": dry_run,
            **stats,
            "duration_seconds": duration,
        }
