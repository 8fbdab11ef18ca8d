"""
Variant comparison for fixed-allocation A/B tests.

The significance score is an approximation, ``(1 - exp(-z^2 / 2)) * 100``
capped at 99.9, and not a p-value. The decision thresholds below were
calibrated against it, so neither the formula nor the thresholds should be
swapped for textbook statistics.
"""

import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ab_engine.models.orm.ab_test import ABTestORM
from ab_engine.models.schemas.ab_test import ABTestAnalytics, StatisticalResult
from ab_engine.models.schemas.event import EventType
from ab_engine.repositories.ab_test_repo import ABTestRepository
from ab_engine.repositories.assignment_repo import AssignmentRepository
from ab_engine.repositories.event_repo import EventRepository, EventTally

logger = logging.getLogger(__name__)

Z_95 = 1.96
SIGNIFICANCE_CAP = 99.9

# Business rules
WINNER_SIGNIFICANCE = 95.0
MIN_PARTICIPANTS = 100
CONCLUDE_PARTICIPANTS = 1000


def conversion_rate(conversions: int, sample_size: int) -> float:
    return conversions / sample_size if sample_size > 0 else 0.0


def confidence_interval(rate: float, sample_size: int) -> Tuple[float, float]:
    """Wald 95% interval around a rate, clamped to [0, 1]."""
    if sample_size <= 0:
        return 0.0, 0.0

    margin = Z_95 * math.sqrt(rate * (1 - rate) / sample_size)
    return max(0.0, rate - margin), min(1.0, rate + margin)


def significance(control_rate: float, control_size: int, rate: float, sample_size: int) -> float:
    """
    Confidence score (0-99.9) that ``rate`` differs from the control rate.

    Uses the unpooled standard error of the difference. Returns 0 when the
    standard error vanishes or either arm is empty.
    """
    if control_size <= 0 or sample_size <= 0:
        return 0.0

    se = math.sqrt(
        control_rate * (1 - control_rate) / control_size
        + rate * (1 - rate) / sample_size
    )
    if se == 0:
        return 0.0

    z = abs(rate - control_rate) / se
    return min(SIGNIFICANCE_CAP, (1 - math.exp(-z * z / 2)) * 100)


def relative_lift(control_rate: float, rate: float) -> float:
    """Percentage change of ``rate`` over the control rate; 0 without a control baseline."""
    if control_rate <= 0:
        return 0.0
    return (rate - control_rate) / control_rate * 100


def determine_winner(results: Sequence[StatisticalResult]) -> Optional[str]:
    """The highest-converting variant among those at or above the significance threshold."""
    significant = [r for r in results if r.statistical_significance >= WINNER_SIGNIFICANCE]
    if not significant:
        return None

    # max() keeps the first of equal rates, i.e. the earliest variant
    return max(significant, key=lambda r: r.conversion_rate).variant_id


def recommend(total_participants: int, confidence_level: float) -> str:
    if total_participants < MIN_PARTICIPANTS:
        return "insufficient_data"
    if confidence_level >= WINNER_SIGNIFICANCE and total_participants >= CONCLUDE_PARTICIPANTS:
        return "conclude"
    return "continue"


def compare_variants(
    variant_ids: Sequence[str],
    sample_sizes: Dict[str, int],
    conversions: Dict[str, int],
    event_counts: Optional[Dict[str, Dict[str, int]]] = None,
) -> List[StatisticalResult]:
    """
    Per-variant statistics, in the order given. The first variant is the control.
    """
    event_counts = event_counts or {}
    results: List[StatisticalResult] = []
    control_rate, control_size = 0.0, 0

    for index, variant_id in enumerate(variant_ids):
        sample_size = sample_sizes.get(variant_id, 0)
        converted = conversions.get(variant_id, 0)
        rate = conversion_rate(converted, sample_size)

        if index == 0:
            control_rate, control_size = rate, sample_size
            score, lift = 0.0, 0.0
        else:
            score = significance(control_rate, control_size, rate, sample_size)
            lift = relative_lift(control_rate, rate)

        results.append(
            StatisticalResult(
                variant_id=variant_id,
                sample_size=sample_size,
                conversions=converted,
                conversion_rate=rate,
                confidence_interval=list(confidence_interval(rate, sample_size)),
                statistical_significance=score,
                relative_improvement=lift,
                event_counts=dict(event_counts.get(variant_id, {})),
            )
        )

    return results


def summarize(test_id: str, results: List[StatisticalResult], duration_seconds: float = 0.0) -> ABTestAnalytics:
    total_participants = sum(r.sample_size for r in results)
    confidence_level = max((r.statistical_significance for r in results), default=0.0)

    return ABTestAnalytics(
        test_id=test_id,
        duration_seconds=duration_seconds,
        total_participants=total_participants,
        variants=results,
        winner=determine_winner(results),
        confidence_level=confidence_level,
        recommendation=recommend(total_participants, confidence_level),
    )


class StatisticalAnalyzer:
    """Read-only aggregation over the assignment store and event log."""

    def __init__(self, db: Session):
        self.test_repo = ABTestRepository(db)
        self.assignment_repo = AssignmentRepository(db)
        self.event_repo = EventRepository(db)

    def analyze(self, test_id: str) -> Optional[ABTestAnalytics]:
        """Analytics for a test, or None if it is unknown or nobody was assigned yet."""
        db_test = self.test_repo.get_test_with_variants(test_id)
        if db_test is None:
            return None

        analytics, _ = self.analyze_test(db_test)
        if analytics.total_participants == 0:
            return None
        return analytics

    def analyze_test(self, db_test: ABTestORM) -> Tuple[ABTestAnalytics, Dict[str, Dict[str, EventTally]]]:
        """
        Analytics for a loaded test, including one without participants, plus
        the raw event tallies they were computed from.
        """
        test_id = db_test.test_id
        sample_sizes = self.assignment_repo.count_by_variant(test_id)
        tallies = self.event_repo.tally_by_variant(test_id)

        conversions = {}
        event_counts = {}
        for variant_id, by_type in tallies.items():
            conversion = by_type.get(EventType.CONVERSION.value)
            # Participants, not events: converting twice still counts once
            conversions[variant_id] = conversion.participants if conversion else 0
            event_counts[variant_id] = {event_type: tally.total for event_type, tally in by_type.items()}

        first_assigned_at = self.assignment_repo.first_assigned_at(test_id)
        duration_seconds = (
            (datetime.utcnow() - first_assigned_at).total_seconds() if first_assigned_at else 0.0
        )

        results = compare_variants(
            [v.variant_id for v in db_test.variants],
            sample_sizes,
            conversions,
            event_counts,
        )
        return summarize(test_id, results, duration_seconds), tallies
