import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings

logger = logging.getLogger(__name__)


def build_engine(settings: Settings) -> Engine:
    kwargs = {"echo": settings.db_echo, "pool_pre_ping": True}
    # SQLite only knows SERIALIZABLE / READ UNCOMMITTED
    if not settings.database_url.startswith("sqlite"):
        kwargs["isolation_level"] = settings.db_isolation_level
    return create_engine(settings.database_url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session) -> Iterator[Session]:
    """Unit-of-work boundary: commit when the block succeeds, roll back otherwise.

    Functions that take ``db`` and do not open a ``transaction`` themselves
    participate in whichever one their caller opened.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
