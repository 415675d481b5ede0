import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import StaticPool

from .settings import settings

logger = logging.getLogger(__name__)

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    kwargs = {}
    # in-memory sqlite must share one connection across sessions
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, future=True, echo=False, connect_args=connect_args, **kwargs)

def init_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    _engine = make_engine(settings.COLORRUN_DB_URL)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)
    logger.info("Database ready at %s", settings.COLORRUN_DB_URL.split("@")[-1])

def session_factory() -> sessionmaker:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal

def get_session() -> Session:
    db = session_factory()()
    try:
        yield db
    finally:
        db.close()
