"""
db.py
=====
Handles database engine creation and session management for the SQL store.
"""

import os

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker


def sqlite_url(db_path: str) -> str:
    """SQLAlchemy URL for a SQLite file, creating its directory if missing."""
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)
    return f"sqlite:///{db_path}"


def create_db_engine(database_url: str, timeout: float = 5.0) -> Engine:
    """
    Create the engine for a database URL.

    ``timeout`` bounds how long a unit of work waits for a competing writer
    (SQLite busy timeout) or for a pooled connection (other backends).
    """
    if database_url.startswith("sqlite"):
        # For SQLite, we must disable thread check
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": timeout},
        )
        _begin_immediate(engine)
        return engine
    return create_engine(database_url, pool_timeout=timeout, pool_pre_ping=True)


def _begin_immediate(engine: Engine):
    """
    Make every SQLite transaction take the write lock up front so that reads
    and the commit that depends on them are serialized against other writers.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # stop pysqlite from emitting its own BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(Base, engine: Engine):
    """
    Initializes the database: creates tables if missing.
    Called once on application startup.
    """
    Base.metadata.create_all(bind=engine)
