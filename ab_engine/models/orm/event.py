from sqlalchemy import (
    Column,
    String,
    DateTime,
    ForeignKeyConstraint,
    Index,
)
from datetime import datetime

from .base import Base, JSON_TYPE


class EventORM(Base):
    __tablename__ = "ab_test_events"

    event_id = Column(String, primary_key=True)

    test_id = Column(String, nullable=False)
    participant_id = Column(String, nullable=False)

    type = Column(String, nullable=False, index=True)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON_TYPE, nullable=True)

    __table_args__ = (
        # Events are attributable only through an assignment
        ForeignKeyConstraint(
            ["test_id", "participant_id"],
            ["ab_test_assignments.test_id", "ab_test_assignments.participant_id"],
        ),
        Index("ix_ab_test_events_test_participant", "test_id", "participant_id"),
    )
