# repositories/assignment_repo.py
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ab_engine.models.orm.assignment import AssignmentORM

logger = logging.getLogger(__name__)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, test_id: str, participant_id: str) -> Optional[AssignmentORM]:
        """Retrieves the persistent assignment of a participant in a specific test."""
        stmt = select(AssignmentORM).where(
            AssignmentORM.test_id == test_id,
            AssignmentORM.participant_id == participant_id,
        )
        return self.db.scalars(stmt).one_or_none()

    def insert_if_absent(
        self,
        test_id: str,
        participant_id: str,
        variant_id: str,
        assigned_at: Optional[datetime] = None,
    ) -> Tuple[AssignmentORM, bool]:
        """
        Creates an assignment unless one already exists for the pair.

        The (test_id, participant_id) primary key makes the insert atomic: when
        two requests race, the loser's commit fails with an IntegrityError and
        it returns the row the winner wrote instead.

        Returns:
            (assignment, created)
        """
        db_assignment = AssignmentORM(
            test_id=test_id,
            participant_id=participant_id,
            variant_id=variant_id,
            assigned_at=assigned_at or datetime.utcnow(),
        )
        try:
            self.db.add(db_assignment)
            self.db.commit()
            return db_assignment, True

        except IntegrityError:
            self.db.rollback()
            existing = self.get_assignment(test_id, participant_id)
            if existing is None:
                # The conflict was not on our key (e.g. unknown variant id)
                raise
            logger.debug(
                "Participant %s was assigned concurrently in test %s; keeping %s",
                participant_id,
                test_id,
                existing.variant_id,
            )
            return existing, False

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Rolled back assignment of %s in test %s: %s", participant_id, test_id, e)
            raise RuntimeError("Exception occurred during assignment creation") from e

    def count_by_variant(self, test_id: str) -> Dict[str, int]:
        """Number of assigned participants per variant id."""
        stmt = (
            select(AssignmentORM.variant_id, func.count())
            .where(AssignmentORM.test_id == test_id)
            .group_by(AssignmentORM.variant_id)
        )
        return {variant_id: count for variant_id, count in self.db.execute(stmt)}

    def get_assignment_times(self, test_id: str) -> List[datetime]:
        """Assignment timestamps for a test, oldest first."""
        stmt = (
            select(AssignmentORM.assigned_at)
            .where(AssignmentORM.test_id == test_id)
            .order_by(AssignmentORM.assigned_at)
        )
        return list(self.db.scalars(stmt))

    def first_assigned_at(self, test_id: str) -> Optional[datetime]:
        stmt = select(func.min(AssignmentORM.assigned_at)).where(AssignmentORM.test_id == test_id)
        return self.db.scalar(stmt)

    def count_participants(self) -> Tuple[int, int]:
        """(tests with at least one participant, participants across all tests)"""
        stmt = select(
            func.count(func.distinct(AssignmentORM.test_id)),
            func.count(),
        ).select_from(AssignmentORM)
        tests, participants = self.db.execute(stmt).one()
        return tests, participants

    def get_stale_test_ids(self, cutoff: datetime) -> List[str]:
        """Tests whose most recent assignment happened before the cutoff."""
        stmt = (
            select(AssignmentORM.test_id)
            .group_by(AssignmentORM.test_id)
            .having(func.max(AssignmentORM.assigned_at) < cutoff)
        )
        return list(self.db.scalars(stmt))

    def delete_for_test(self, test_id: str) -> int:
        """Deletes every assignment of a test. The caller commits."""
        result = self.db.execute(delete(AssignmentORM).where(AssignmentORM.test_id == test_id))
        return result.rowcount
