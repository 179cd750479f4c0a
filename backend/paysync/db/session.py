"""Database engine and session management"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from paysync.models.base import Base


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create the engine once at process start"""
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        return create_engine(database_url, **kwargs)
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_recycle=3600,
        **kwargs
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine):
    """Initialize database (create all tables)"""
    import paysync.models  # noqa: F401  registers every model with Base.metadata
    Base.metadata.create_all(bind=engine)
