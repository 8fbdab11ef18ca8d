# services/allocator.py
import logging
import math
import random
from bisect import bisect_left
from itertools import accumulate
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from ab_engine.core.exceptions import InvalidTestConfiguration
from ab_engine.models.orm.ab_test import VariantORM
from ab_engine.repositories.assignment_repo import AssignmentRepository

logger = logging.getLogger(__name__)


def validate_weights(weights: Sequence[float]) -> None:
    """Raises InvalidTestConfiguration unless the weights can drive an allocation."""
    if not weights:
        raise InvalidTestConfiguration("A test needs at least one variant.")

    for weight in weights:
        if weight is None or not math.isfinite(weight) or weight < 0:
            raise InvalidTestConfiguration(f"Variant weights must be finite and >= 0. Got: {weight}")

    if sum(weights) <= 0:
        raise InvalidTestConfiguration("Variant weights must add up to more than 0.")


class WeightedVariantTable:
    """
    Cumulative weights over the assignable variants of one test.

    Zero-weight variants are left out, so they never receive new
    participants. Selection draws ``u`` in ``[0, total)`` and takes the
    first variant whose cumulative weight reaches ``u``, which is the same
    as subtracting weights in order until the remainder is ``<= 0``.
    """

    def __init__(self, variant_ids: Sequence[str], weights: Sequence[Optional[float]]):
        # Unspecified weights count as 1
        weights = [1.0 if w is None else float(w) for w in weights]
        validate_weights(weights)

        pairs = [(variant_id, w) for variant_id, w in zip(variant_ids, weights) if w > 0]
        self.variant_ids: List[str] = [variant_id for variant_id, _ in pairs]
        self.cumulative: List[float] = list(accumulate(w for _, w in pairs))
        self.total: float = self.cumulative[-1]

    @classmethod
    def from_variants(cls, variants: Sequence[VariantORM]) -> "WeightedVariantTable":
        ordered = sorted(variants, key=lambda v: v.position)
        return cls([v.variant_id for v in ordered], [v.weight for v in ordered])

    def pick(self, rng: random.Random) -> str:
        u = rng.random() * self.total
        # Float rounding can put the last cumulative weight a hair under total
        index = min(bisect_left(self.cumulative, u), len(self.variant_ids) - 1)
        return self.variant_ids[index]


class VariantAllocator:
    def __init__(self, db: Session, rng: Optional[random.Random] = None):
        self.assignment_repo = AssignmentRepository(db)
        self.rng = rng or random.Random()

    def assign(self, test_id: str, participant_id: str, variants: Sequence[VariantORM]) -> str:
        """
        Gets a participant's variant, ensuring idempotency.

        1. Return the existing assignment if there is one.
        2. Otherwise pick a variant by weight.
        3. Persist it with an insert-if-absent; if another request won the
           race, its variant is returned instead.

        Raises:
            InvalidTestConfiguration: no variants, or all weights are zero.
        """
        existing_assignment = self.assignment_repo.get_assignment(test_id, participant_id)
        if existing_assignment:
            return existing_assignment.variant_id

        table = WeightedVariantTable.from_variants(variants)
        variant_id = table.pick(self.rng)

        assignment, created = self.assignment_repo.insert_if_absent(
            test_id=test_id,
            participant_id=participant_id,
            variant_id=variant_id,
        )
        if created:
            logger.debug("Assigned participant %s to variant %s in test %s", participant_id, variant_id, test_id)

        return assignment.variant_id
