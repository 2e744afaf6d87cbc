from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ..config import Base, Settings, build_engine

logger = logging.getLogger(__name__)


class Database:
    """Process-wide storage handle.

    Created once at startup, handed by reference to whoever needs a session,
    and disposed explicitly at shutdown.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(build_engine(settings.database_url, echo=settings.database_echo))

    def create_all(self) -> None:
        # Alembic owns real schema evolution; this keeps dev and test databases usable.
        import votecredit.models.models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    def dispose(self) -> None:
        logger.info("Disposing database engine %s", self.engine.url.render_as_string(hide_password=True))
        self.engine.dispose()
