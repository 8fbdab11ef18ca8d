import logging
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, delete, distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ab_engine.models.orm.assignment import AssignmentORM
from ab_engine.models.orm.event import EventORM

logger = logging.getLogger(__name__)


class EventTally:
    """Events of one type within one variant."""

    __slots__ = ("total", "participants")

    def __init__(self, total: int = 0, participants: int = 0):
        self.total = total
        self.participants = participants


class EventRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_event(
        self,
        test_id: str,
        participant_id: str,
        event_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EventORM:
        """
        Appends an event to the log.

        Args:
            test_id: The test the participant is assigned in (checked by the service).
            participant_id: The participant the event belongs to.
            event_type: One of the EventType values.
            metadata: Opaque key/value data stored as given.

        Returns:
            The created EventORM object.
        """
        db_event = EventORM(
            event_id=str(uuid.uuid4()),
            test_id=test_id,
            participant_id=participant_id,
            type=event_type,
            timestamp=datetime.utcnow(),
            event_metadata=metadata,
        )
        try:
            self.db.add(db_event)
            self.db.commit()

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Rolled back %s event for %s in test %s: %s", event_type, participant_id, test_id, e)
            raise RuntimeError("An unexpected database error occurred during event creation.") from e

        return db_event

    def _attributed(self, stmt):
        # Resolve each event's variant through the participant's assignment
        return stmt.select_from(EventORM).join(
            AssignmentORM,
            and_(
                AssignmentORM.test_id == EventORM.test_id,
                AssignmentORM.participant_id == EventORM.participant_id,
            ),
        )

    def tally_by_variant(self, test_id: str) -> Dict[str, Dict[str, EventTally]]:
        """
        Retrieves event totals and distinct participant counts for a test,
        grouped by variant id and then by event type.
        """
        stmt = self._attributed(
            select(
                AssignmentORM.variant_id,
                EventORM.type,
                func.count(EventORM.event_id),
                func.count(distinct(EventORM.participant_id)),
            )
        )
        stmt = stmt.where(EventORM.test_id == test_id).group_by(AssignmentORM.variant_id, EventORM.type)

        tallies: Dict[str, Dict[str, EventTally]] = defaultdict(dict)
        for variant_id, event_type, total, participants in self.db.execute(stmt):
            tallies[variant_id][event_type] = EventTally(total, participants)
        return dict(tallies)

    def get_event_times(self, test_id: str, event_type: str) -> List[Tuple[str, datetime]]:
        """(variant_id, timestamp) of every event of a type in a test, oldest first."""
        stmt = self._attributed(select(AssignmentORM.variant_id, EventORM.timestamp))
        stmt = stmt.where(EventORM.test_id == test_id, EventORM.type == event_type).order_by(EventORM.timestamp)
        return [(variant_id, timestamp) for variant_id, timestamp in self.db.execute(stmt)]

    def count_participants_with(self, event_type: str) -> int:
        """Distinct (test, participant) pairs with at least one event of the type, across all tests."""
        pairs = (
            select(EventORM.test_id, EventORM.participant_id)
            .where(EventORM.type == event_type)
            .distinct()
            .subquery()
        )
        return self.db.scalar(select(func.count()).select_from(pairs))

    def delete_for_test(self, test_id: str) -> int:
        """Deletes every event of a test. The caller commits."""
        result = self.db.execute(delete(EventORM).where(EventORM.test_id == test_id))
        return result.rowcount
