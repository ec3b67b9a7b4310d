from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, scoped_session, declarative_base

from config import settings

Base = declarative_base()

engine = None
SessionLocal = None


def make_session_factory(database_url: str, echo: bool = False):
    """Build an engine and a scoped session factory bound to it."""
    db_engine = create_engine(
        database_url,
        pool_pre_ping=True,
        future=True,
        echo=echo,
    )
    factory = scoped_session(
        sessionmaker(
            bind=db_engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
    )
    return db_engine, factory


if settings.database_url:
    engine, SessionLocal = make_session_factory(settings.database_url, echo=settings.sql_echo)


def init_db(db_engine=None) -> None:
    target = db_engine or engine
    if target:
        Base.metadata.create_all(bind=target)
