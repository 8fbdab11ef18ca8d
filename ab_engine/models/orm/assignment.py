from sqlalchemy import (
    Column,
    String,
    ForeignKey,
    DateTime,
    PrimaryKeyConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import Base


class AssignmentORM(Base):
    __tablename__ = "ab_test_assignments"

    test_id = Column(String, ForeignKey("ab_tests.test_id"), nullable=False, index=True)
    participant_id = Column(String, nullable=False)
    variant_id = Column(String, ForeignKey("ab_test_variants.variant_id"), nullable=False, index=True)

    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # The key is what makes concurrent assignment safe: one row per participant
    __table_args__ = (
        PrimaryKeyConstraint("test_id", "participant_id", name="ab_test_assignment_pk"),
    )

    variant = relationship("VariantORM")
