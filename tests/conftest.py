import random

import pytest
from fastapi.testclient import TestClient

from ab_engine.core.db import Database
from ab_engine.core.settings import Settings
from ab_engine.main import create_app
from ab_engine.models.schemas.ab_test import ABTestCreateModel, VariantDefinition
from ab_engine.repositories.assignment_repo import AssignmentRepository
from ab_engine.services.ab_test_service import ABTestService

TOKEN = "test-token"


@pytest.fixture
def database():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def db(database):
    session = database.session()
    yield session
    session.close()


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def service(db, rng):
    return ABTestService(db, rng=rng)


def build_test_data(weights=(1.0, 1.0), template_id="tmpl-1", **kwargs):
    return ABTestCreateModel(
        template_id=template_id,
        variants=[VariantDefinition(name=f"variant-{i}", weight=w) for i, w in enumerate(weights)],
        **kwargs,
    )


@pytest.fixture
def create_test(service):
    def _create(weights=(1.0, 1.0), **kwargs):
        return service.create_test(build_test_data(weights, **kwargs))

    return _create


@pytest.fixture
def populate(db, service):
    """
    Assigns ``sizes[i]`` participants to the i-th variant of a test and records
    one conversion for the first ``conversions[i]`` of them.
    """

    def _populate(test, sizes, conversions):
        repo = AssignmentRepository(db)
        for variant, size, converted in zip(test.variants, sizes, conversions):
            for n in range(size):
                participant_id = f"{variant.name}-p{n}"
                repo.insert_if_absent(test.test_id, participant_id, variant.variant_id)
                if n < converted:
                    service.record(test.test_id, participant_id, "conversion")

    return _populate


@pytest.fixture
def client(database):
    settings = Settings(DATABASE_URL="sqlite://", TOKENS=[TOKEN], LOG_LEVEL="DEBUG")
    app = create_app(settings, database=database)
    with TestClient(app, headers={"Authorization": f"Bearer {TOKEN}"}) as client:
        yield client
