from typing import Iterator, Optional

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ab_engine.models.orm.base import Base
from ab_engine.models.orm import ab_test, assignment, event  # noqa: F401  (registers tables)
from .settings import Settings, config_settings


class Database:
    """
    Owns the SQLAlchemy engine and session factory for one store.

    Created explicitly (app lifespan, test fixture) and disposed with
    ``dispose()``; nothing connects at import time.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url

        engine_kwargs = {"echo": echo}
        if database_url.startswith("sqlite"):
            # Sessions are handed to concurrent request handlers
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # Every session must see the same in-memory database
                engine_kwargs["poolclass"] = StaticPool

        self.engine: Engine = create_engine(database_url, **engine_kwargs)

        # Each request gets its own session (a unit of work)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        settings = settings or config_settings
        return cls(settings.DATABASE_URL, echo=settings.SQL_ECHO)

    def create_all(self) -> None:
        """Creates any missing tables."""
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Iterator[Session]:
    """
    Dependency that yields a database session for a single request,
    and ensures the session is closed afterward.
    """
    db = request.app.state.database.session()
    try:
        yield db
    finally:
        db.close()
