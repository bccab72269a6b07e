from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


class Base(DeclarativeBase):
    pass


def create_db_engine(database_url: str, **kwargs) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Allow multi-threaded access and wait for locks instead of failing immediately.
        connect_args = {"check_same_thread": False, "timeout": 30}
    db_engine = create_engine(database_url, future=True, connect_args=connect_args, **kwargs)

    if database_url.startswith("sqlite"):

        @event.listens_for(db_engine, "connect")
        def set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA busy_timeout=30000;")
            cursor.close()

    return db_engine


engine = create_db_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db(db_engine: Engine | None = None) -> None:
    from . import models  # noqa: F401  registers the tables

    Base.metadata.create_all(bind=db_engine or engine)


def get_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
