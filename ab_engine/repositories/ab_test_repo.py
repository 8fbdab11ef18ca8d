import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ab_engine.models.orm.ab_test import ABTestORM, ABTestStatus, VariantORM
from ab_engine.models.schemas.ab_test import ABTestCreateModel

logger = logging.getLogger(__name__)


class ABTestRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_test(self, test_data: ABTestCreateModel) -> ABTestORM:
        """
        Creates a test record together with its variants.

        Variants keep the order they were given in; ``position`` 0 is the
        control. Weight validation is the service's job.

        Returns:
            The created ABTestORM object with variants loaded.
        """
        test_id = str(uuid.uuid4())
        now = datetime.utcnow()

        db_test = ABTestORM(
            test_id=test_id,
            name=test_data.name or f"A/B Test for {test_data.template_id}",
            description=test_data.description,
            template_id=test_data.template_id,
            category=test_data.category,
            channel=test_data.channel,
            status=ABTestStatus.ACTIVE,
            criteria=test_data.criteria.model_dump(),
            created_at=now,
            updated_at=now,
        )

        for position, variant_data in enumerate(test_data.variants):
            db_test.variants.append(
                VariantORM(
                    variant_id=str(uuid.uuid4()),
                    test_id=test_id,
                    name=variant_data.name,
                    position=position,
                    weight=float(variant_data.weight),
                    configuration_json=variant_data.configuration_json,
                    created_at=now,
                )
            )

        try:
            self.db.add(db_test)
            self.db.commit()
            self.db.refresh(db_test)
            return db_test

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during test creation: {e}") from e

    def get_test_with_variants(self, test_id: str, lock_for_share: bool = False) -> Optional[ABTestORM]:
        """
        Fetches a single test by test_id and eagerly loads its variants.

        The status is always re-read from the database, even when the session
        already holds the row. With ``lock_for_share`` the row stays share-locked
        until the session commits, so a concurrent conclusion waits for it
        (PostgreSQL; the SQLite dialect emits no row lock).
        """
        stmt = (
            select(ABTestORM)
            .where(ABTestORM.test_id == test_id)
            .options(selectinload(ABTestORM.variants))
            .execution_options(populate_existing=True)
        )
        if lock_for_share:
            stmt = stmt.with_for_update(read=True)
        return self.db.scalars(stmt).one_or_none()

    def list_tests(
        self, status: Optional[ABTestStatus] = None, template_id: Optional[str] = None
    ) -> List[ABTestORM]:
        """Tests matching the optional filters, newest first."""
        stmt = select(ABTestORM).options(selectinload(ABTestORM.variants))

        if status is not None:
            stmt = stmt.where(ABTestORM.status == status)

        if template_id:
            stmt = stmt.where(ABTestORM.template_id == template_id)

        stmt = stmt.order_by(ABTestORM.created_at.desc())
        return list(self.db.scalars(stmt))

    def mark_concluded(self, test_id: str, results: Dict[str, Any]) -> bool:
        """
        Freezes the results and moves the test to the concluded state, but
        only if it is still active.

        Returns:
            False when the test was not active any more (another request
            concluded it first); nothing is written in that case.
        """
        now = datetime.utcnow()
        stmt = (
            update(ABTestORM)
            .where(ABTestORM.test_id == test_id, ABTestORM.status == ABTestStatus.ACTIVE)
            .values(
                status=ABTestStatus.CONCLUDED,
                results=results,
                concluded_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
            return result.rowcount == 1

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred while concluding test {test_id}: {e}") from e
