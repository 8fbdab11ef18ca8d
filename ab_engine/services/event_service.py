# services/event_service.py
import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy.orm import Session

from ab_engine.models.schemas.event import EventType
from ab_engine.repositories.assignment_repo import AssignmentRepository
from ab_engine.repositories.event_repo import EventRepository

logger = logging.getLogger(__name__)


class EventService:
    def __init__(self, db: Session):
        """Initializes the service with repositories it needs."""
        self.event_repo = EventRepository(db)
        # Events are attributed through the participant's assignment
        self.assignment_repo = AssignmentRepository(db)

    def record_event(
        self,
        test_id: str,
        participant_id: str,
        event_type: Union[EventType, str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Appends an event for an assigned participant.

        Returns False without writing anything when the participant has no
        assignment in the test (which includes unknown tests). Repeated events
        are all kept.

        Raises:
            ValueError: ``event_type`` is not an EventType value.
        """
        event_type = EventType(event_type)

        assignment = self.assignment_repo.get_assignment(test_id, participant_id)
        if assignment is None:
            logger.debug("Ignoring %s event for unassigned participant %s in test %s", event_type.value, participant_id, test_id)
            return False

        self.event_repo.create_event(
            test_id=test_id,
            participant_id=participant_id,
            event_type=event_type.value,
            metadata=metadata,
        )
        return True
