from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase
from sqlalchemy.pool import StaticPool

from .settings import settings

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def make_engine(url: str):
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    kwargs = {}
    # in-memory sqlite must share one connection or every session sees an empty db
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, future=True, echo=False, connect_args=connect_args, **kwargs)

def make_sessionmaker(engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)

def init_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        return
    _engine = make_engine(settings.RACE_DB_URL)
    _SessionLocal = make_sessionmaker(_engine)
    from . import models  # noqa
    Base.metadata.create_all(bind=_engine)

def open_session() -> Session:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal()

def get_session() -> Session:
    db = open_session()
    try:
        yield db
    finally:
        db.close()
