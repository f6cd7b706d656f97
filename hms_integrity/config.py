"""
config.py
=========
Runtime settings read from the environment, plus logging setup.

Variables:
 - HMS_STORE             "sql" (default) or "memory"
 - HMS_DB                SQLite file path (default data/hms.db)
 - HMS_DATABASE_URL      full SQLAlchemy URL, overrides HMS_DB
 - HMS_CONFLICT_RETRIES  times an operation is re-run after a write conflict
 - HMS_LOCK_TIMEOUT      seconds a unit of work may wait on the store
 - HMS_LOG_LEVEL         logging level name (default INFO)
"""

import logging
import os
from dataclasses import dataclass

from .db import sqlite_url

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass(frozen=True)
class Settings:
    store: str = "sql"
    database_url: str = "sqlite:///data/hms.db"
    conflict_retries: int = 0
    lock_timeout: float = 5.0
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read settings at call time so tests can change the environment first."""
    store = os.getenv("HMS_STORE", "sql").lower()
    if store not in ("sql", "memory"):
        raise ValueError(f"HMS_STORE must be 'sql' or 'memory', not {store!r}")

    database_url = os.getenv("HMS_DATABASE_URL")
    if not database_url and store == "sql":
        database_url = sqlite_url(os.getenv("HMS_DB", "data/hms.db"))

    return Settings(
        store=store,
        database_url=database_url or "",
        conflict_retries=int(os.getenv("HMS_CONFLICT_RETRIES", "0")),
        lock_timeout=float(os.getenv("HMS_LOCK_TIMEOUT", "5")),
        log_level=os.getenv("HMS_LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO"):
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("hms_integrity").setLevel(level)
