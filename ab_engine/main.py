import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Path, Query
from sqlalchemy.orm import Session
from starlette import status

from ab_engine.core.auth import require_auth_token
from ab_engine.core.db import Database, get_db
from ab_engine.core.exceptions import InvalidTestConfiguration
from ab_engine.core.settings import Settings, config_settings
from ab_engine.models.orm.ab_test import ABTestStatus
from ab_engine.models.schemas.ab_test import (
    ABTestAnalytics,
    ABTestCreateModel,
    ABTestModel,
    ABTestPerformance,
    ABTestResults,
    ABTestStatistics,
    CleanupSummary,
)
from ab_engine.models.schemas.assignment import AssignmentModel
from ab_engine.models.schemas.event import EventCreateModel, EventResponseModel
from ab_engine.services.ab_test_service import ABTestService

logger = logging.getLogger(__name__)


def _not_found(test_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Test {test_id} not found.",
    )


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """
    Builds the HTTP application.

    Logging is configured and the database handle opened when the app
    starts; the handle is disposed when it stops. Pass ``database`` to
    share an existing one (tests do).
    """
    settings = settings or config_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        owns_database = database is None
        app.state.database = database or Database.from_settings(settings)
        app.state.database.create_all()
        logger.info("Experiment engine started")
        try:
            yield
        finally:
            if owns_database:
                app.state.database.dispose()

    app = FastAPI(
        title="A/B test evaluation engine",
        description="Assigns participants to variants, records events and compares variants.",
        version="0.1.0",
        dependencies=[Depends(require_auth_token)],
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.post(
        "/tests",
        response_model=ABTestModel,
        status_code=status.HTTP_201_CREATED,
        summary="Create a test",
    )
    def post_tests(test_data: ABTestCreateModel, db: Session = Depends(get_db)):
        try:
            return ABTestService(db).create_test(test_data)
        except InvalidTestConfiguration as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    @app.get("/tests", response_model=List[ABTestModel], summary="List tests")
    def get_tests(
        test_status: Optional[ABTestStatus] = Query(None, alias="status"),
        template_id: Optional[str] = Query(None),
        db: Session = Depends(get_db),
    ):
        return ABTestService(db).list_tests(status=test_status, template_id=template_id)

    @app.get("/tests/{test_id}", response_model=ABTestModel, summary="Get a test")
    def get_test(test_id: str, db: Session = Depends(get_db)):
        test = ABTestService(db).get_test(test_id)
        if test is None:
            raise _not_found(test_id)
        return test

    @app.get(
        "/tests/{test_id}/assignment/{participant_id}",
        response_model=AssignmentModel,
        summary="Get participant assignment",
    )
    def get_assignment(
        test_id: str = Path(..., description="The ID of the test."),
        participant_id: str = Path(..., description="The ID of the participant."),
        db: Session = Depends(get_db),
    ):
        """
        Retrieves a participant's variant. If none exists yet, a new, persistent
        assignment is made from the variant weights.
        """
        service = ABTestService(db)
        variant_id = service.assign(test_id, participant_id)

        if variant_id is None:
            if service.get_test(test_id) is None:
                raise _not_found(test_id)
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Test {test_id} is concluded and takes no new participants.",
            )

        return AssignmentModel.model_validate(service.assignment_repo.get_assignment(test_id, participant_id))

    @app.post(
        "/tests/{test_id}/events",
        response_model=EventResponseModel,
        status_code=status.HTTP_201_CREATED,
        summary="Record a participant event",
    )
    def post_events(test_id: str, event_data: EventCreateModel, db: Session = Depends(get_db)):
        recorded = ABTestService(db).record(
            test_id,
            event_data.participant_id,
            event_data.type,
            event_data.metadata,
        )
        return EventResponseModel(recorded=recorded)

    @app.get("/tests/{test_id}/analytics", response_model=ABTestAnalytics, summary="Analyze a test")
    def get_analytics(test_id: str, db: Session = Depends(get_db)):
        analytics = ABTestService(db).get_analytics(test_id)
        if analytics is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No analytics for test {test_id}.",
            )
        return analytics

    @app.post("/tests/{test_id}/conclude", response_model=ABTestResults, summary="Conclude a test")
    def post_conclude(test_id: str, db: Session = Depends(get_db)):
        results = ABTestService(db).conclude(test_id)
        if results is None:
            raise _not_found(test_id)
        return results

    @app.get("/tests/{test_id}/performance", response_model=ABTestPerformance, summary="Test performance over time")
    def get_performance(test_id: str, db: Session = Depends(get_db)):
        performance = ABTestService(db).get_performance(test_id)
        if performance is None:
            raise _not_found(test_id)
        return performance

    @app.get("/statistics", response_model=ABTestStatistics, summary="Totals across tests")
    def get_statistics(db: Session = Depends(get_db)):
        return ABTestService(db).get_statistics()

    @app.post("/maintenance/cleanup", response_model=CleanupSummary, summary="Drop stale test data")
    def post_cleanup(
        max_age_days: Optional[int] = Query(None, ge=0),
        db: Session = Depends(get_db),
    ):
        if max_age_days is None:
            max_age_days = settings.DEFAULT_RETENTION_DAYS
        return ABTestService(db).cleanup(max_age_days)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("ab_engine.main:app", host="0.0.0.0", port=8000, reload=True)
