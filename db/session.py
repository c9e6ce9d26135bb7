from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from common.config import POSTGRES_DSN


class Base(DeclarativeBase):
    pass


def make_session_factory(dsn: str = POSTGRES_DSN, **engine_kwargs):
    engine = create_engine(dsn, pool_pre_ping=True, **engine_kwargs)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


_session_factory = None


def get_session_factory():
    # Engine is built on first use so importing the models needs no database.
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory()
    return _session_factory
