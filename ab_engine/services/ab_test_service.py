# services/ab_test_service.py
import logging
import random
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ab_engine.models.orm.ab_test import ABTestORM, ABTestStatus
from ab_engine.models.schemas.ab_test import (
    ABTestAnalytics,
    ABTestCreateModel,
    ABTestCriteria,
    ABTestModel,
    ABTestPerformance,
    ABTestResults,
    ABTestStatistics,
    CleanupSummary,
    VariantModel,
    VariantResultSnapshot,
)
from ab_engine.models.schemas.event import EventType
from ab_engine.repositories.ab_test_repo import ABTestRepository
from ab_engine.repositories.assignment_repo import AssignmentRepository
from ab_engine.repositories.event_repo import EventRepository, EventTally
from ab_engine.services.allocator import VariantAllocator, validate_weights
from ab_engine.services.analyzer import WINNER_SIGNIFICANCE, StatisticalAnalyzer
from ab_engine.services.event_service import EventService

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 60 * 60
MAX_STATISTICAL_POWER = 80


def _hour_index(timestamp: datetime, start: datetime) -> int:
    return int((timestamp - start).total_seconds() // SECONDS_PER_HOUR)


def _cumulative(counts: Dict[int, int], hours: int) -> List[int]:
    series, running = [], 0
    for hour in range(hours):
        running += counts.get(hour, 0)
        series.append(running)
    return series


def statistical_power(sample_sizes: List[int]) -> int:
    """
    Rough power estimate (0-80) from the average participants per populated
    variant; 0 below two populated variants or 100 participants.
    """
    populated = [n for n in sample_sizes if n > 0]
    total = sum(populated)
    if len(populated) < 2 or total < 100:
        return 0

    per_variant = total / len(populated)
    return round(min(MAX_STATISTICAL_POWER, (per_variant / 100) * MAX_STATISTICAL_POWER))


class ABTestService:
    """
    Lifecycle of A/B tests: creation, assignment, event recording, analysis,
    conclusion and retention cleanup.

    A test is ``active`` until concluded; ``concluded`` is terminal. Unknown
    test ids are answered with None/False instead of exceptions.
    """

    def __init__(self, db: Session, rng: Optional[random.Random] = None):
        self.db = db
        self.test_repo = ABTestRepository(db)
        self.assignment_repo = AssignmentRepository(db)
        self.event_repo = EventRepository(db)
        self.allocator = VariantAllocator(db, rng=rng)
        self.event_service = EventService(db)
        self.analyzer = StatisticalAnalyzer(db)

    @staticmethod
    def _to_model(db_test: ABTestORM) -> ABTestModel:
        return ABTestModel(
            test_id=db_test.test_id,
            name=db_test.name,
            description=db_test.description,
            template_id=db_test.template_id,
            category=db_test.category,
            channel=db_test.channel,
            status=db_test.status.value,
            variants=[VariantModel.model_validate(v) for v in db_test.variants],
            criteria=ABTestCriteria(**(db_test.criteria or {})),
            results=ABTestResults.model_validate(db_test.results) if db_test.results else None,
            created_at=db_test.created_at,
            updated_at=db_test.updated_at,
            concluded_at=db_test.concluded_at,
        )

    def create_test(self, test_data: ABTestCreateModel) -> ABTestModel:
        """
        Validates the variant set and stores a new active test.

        Raises:
            InvalidTestConfiguration: empty variant list, a negative or
                non-finite weight, or weights adding up to zero.
        """
        validate_weights([v.weight for v in test_data.variants])

        db_test = self.test_repo.create_test(test_data)
        logger.info(
            "Created test %s for template %s with %d variants",
            db_test.test_id,
            db_test.template_id,
            len(db_test.variants),
        )
        return self._to_model(db_test)

    def get_test(self, test_id: str) -> Optional[ABTestModel]:
        db_test = self.test_repo.get_test_with_variants(test_id)
        return self._to_model(db_test) if db_test else None

    def list_tests(
        self, status: Optional[Union[ABTestStatus, str]] = None, template_id: Optional[str] = None
    ) -> List[ABTestModel]:
        status = ABTestStatus(status) if status is not None else None
        return [self._to_model(t) for t in self.test_repo.list_tests(status=status, template_id=template_id)]

    def assign(self, test_id: str, participant_id: str) -> Optional[str]:
        """
        Returns the participant's variant id, assigning one on first request.

        None for an unknown test. A concluded test keeps answering for
        participants it already assigned but takes no new ones (None).
        """
        db_test = self.test_repo.get_test_with_variants(test_id, lock_for_share=True)
        if db_test is None:
            return None

        if db_test.status == ABTestStatus.CONCLUDED:
            existing = self.assignment_repo.get_assignment(test_id, participant_id)
            if existing is not None:
                return existing.variant_id
            logger.warning("Test %s is concluded; not assigning new participant %s", test_id, participant_id)
            return None

        return self.allocator.assign(test_id, participant_id, db_test.variants)

    def record(
        self,
        test_id: str,
        participant_id: str,
        event_type: Union[EventType, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self.event_service.record_event(test_id, participant_id, event_type, metadata)

    def get_analytics(self, test_id: str) -> Optional[ABTestAnalytics]:
        """Current analytics; None for unknown tests and tests without participants."""
        return self.analyzer.analyze(test_id)

    @staticmethod
    def _build_results(analytics: ABTestAnalytics, tallies: Dict[str, Dict[str, EventTally]]) -> ABTestResults:
        variants = []
        for result in analytics.variants:
            by_type = tallies.get(result.variant_id, {})
            sent = result.sample_size

            def total(event_type: EventType) -> int:
                tally = by_type.get(event_type.value)
                return tally.total if tally else 0

            def rate(event_type: EventType) -> float:
                tally = by_type.get(event_type.value)
                return tally.participants / sent if tally and sent else 0.0

            variants.append(
                VariantResultSnapshot(
                    variant_id=result.variant_id,
                    sent=sent,
                    opens=total(EventType.OPEN),
                    clicks=total(EventType.CLICK),
                    replies=total(EventType.REPLY),
                    conversions=result.conversions,
                    open_rate=rate(EventType.OPEN),
                    click_rate=rate(EventType.CLICK),
                    reply_rate=rate(EventType.REPLY),
                    conversion_rate=result.conversion_rate,
                )
            )

        improvement = next(
            (r.relative_improvement for r in analytics.variants if r.variant_id == analytics.winner),
            0.0,
        )

        return ABTestResults(
            test_id=analytics.test_id,
            total_sent=analytics.total_participants,
            variants=variants,
            winner=analytics.winner,
            confidence=analytics.confidence_level,
            improvement=improvement,
            completed_at=datetime.utcnow(),
            # Never forced: a test concluded early reports what the data says
            is_significant=analytics.confidence_level >= WINNER_SIGNIFICANCE,
        )

    def conclude(self, test_id: str) -> Optional[ABTestResults]:
        """
        Freezes the final results and moves the test to ``concluded``.

        Concluding is allowed whatever the recommendation. A test that is
        already concluded returns its frozen results unchanged.
        """
        db_test = self.test_repo.get_test_with_variants(test_id)
        if db_test is None:
            return None

        if db_test.status == ABTestStatus.CONCLUDED:
            return ABTestResults.model_validate(db_test.results)

        analytics, tallies = self.analyzer.analyze_test(db_test)
        results = self._build_results(analytics, tallies)

        if not self.test_repo.mark_concluded(test_id, results.model_dump(mode="json")):
            self.db.refresh(db_test)
            logger.info("Test %s was concluded by another request; returning its frozen results", test_id)
            return ABTestResults.model_validate(db_test.results)

        logger.info(
            "Concluded test %s: winner=%s confidence=%.1f recommendation=%s",
            test_id,
            results.winner,
            results.confidence,
            analytics.recommendation,
        )
        return results

    def get_performance(self, test_id: str) -> Optional[ABTestPerformance]:
        """Hourly participant growth, hourly conversion trends and a power estimate."""
        db_test = self.test_repo.get_test_with_variants(test_id)
        if db_test is None:
            return None

        assignment_times = self.assignment_repo.get_assignment_times(test_id)
        conversion_times = self.event_repo.get_event_times(test_id, EventType.CONVERSION.value)
        variant_ids = [v.variant_id for v in db_test.variants]

        if not assignment_times:
            return ABTestPerformance(
                participant_growth=[],
                conversion_trends={variant_id: [] for variant_id in variant_ids},
                statistical_power=0,
            )

        start = assignment_times[0]

        hourly_participants = Counter(_hour_index(t, start) for t in assignment_times)
        participant_growth = _cumulative(hourly_participants, max(hourly_participants) + 1)

        hourly_conversions = {variant_id: Counter() for variant_id in variant_ids}
        for variant_id, timestamp in conversion_times:
            hourly_conversions.setdefault(variant_id, Counter())[_hour_index(timestamp, start)] += 1

        hours = max((max(c) + 1 for c in hourly_conversions.values() if c), default=0)
        conversion_trends = {
            variant_id: _cumulative(counts, hours) for variant_id, counts in hourly_conversions.items()
        }

        sample_sizes = self.assignment_repo.count_by_variant(test_id)
        return ABTestPerformance(
            participant_growth=participant_growth,
            conversion_trends=conversion_trends,
            statistical_power=statistical_power(list(sample_sizes.values())),
        )

    def get_statistics(self) -> ABTestStatistics:
        """Totals across every test that currently has participants."""
        tests, participants = self.assignment_repo.count_participants()
        conversions = self.event_repo.count_participants_with(EventType.CONVERSION.value)

        return ABTestStatistics(
            active_tests=tests,
            total_participants=participants,
            total_conversions=conversions,
            average_conversion_rate=conversions / participants if participants else 0.0,
        )

    def cleanup(self, max_age_days: int = 90) -> CleanupSummary:
        """
        Drops the assignments and events of every test whose most recent
        assignment is older than ``max_age_days``. Test definitions and frozen
        results are kept.
        """
        if max_age_days < 0:
            raise ValueError(f"max_age_days must be >= 0. Got: {max_age_days}")

        cutoff = datetime.utcnow() - timedelta(days=max_age_days)
        summary = CleanupSummary()

        try:
            for test_id in self.assignment_repo.get_stale_test_ids(cutoff):
                summary.events_removed += self.event_repo.delete_for_test(test_id)
                summary.assignments_removed += self.assignment_repo.delete_for_test(test_id)
                summary.tests_cleaned += 1
            self.db.commit()

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during cleanup: {e}") from e

        logger.info(
            "Cleanup (max age %d days): %d tests, %d assignments, %d events removed",
            max_age_days,
            summary.tests_cleaned,
            summary.assignments_removed,
            summary.events_removed,
        )
        return summary
