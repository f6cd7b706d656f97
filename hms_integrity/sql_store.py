"""
sql_store.py
============
Storage adapter over SQLAlchemy sessions.

A unit of work is one Session. Rows read through ``read_snapshot`` stay
referenced by the handle so the version counter SQLAlchemy loaded with them
is the one checked when ``write_all`` updates or deletes them.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from .catalog import EntityKind
from .errors import StorageTimeout, StorageUnavailable, WriteConflict
from .models import MODELS_BY_KIND
from .store import CommitResult, StorageAdapter

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors():
    """Map driver and ORM failures onto the adapter contract."""
    try:
        yield
    except StaleDataError as exc:
        raise WriteConflict(str(exc)) from exc
    except IntegrityError as exc:
        # the engine validated against its snapshot, so a constraint hit here
        # means another writer got in first
        raise WriteConflict(str(exc.orig)) from exc
    except OperationalError as exc:
        if "locked" in str(exc.orig).lower():
            raise StorageTimeout("database is locked by another unit of work", exc) from exc
        raise StorageUnavailable(f"database error: {exc.orig}", exc) from exc
    except PoolTimeoutError as exc:
        raise StorageTimeout("no database connection available", exc) from exc
    except DBAPIError as exc:
        raise StorageUnavailable(f"database error: {exc.orig}", exc) from exc


def _as_row(obj) -> dict:
    return {
        column.key: getattr(obj, column.key)
        for column in obj.__table__.columns
        if column.key != "version"
    }


@dataclass
class SqlUnitOfWork:
    session: Session
    loaded: Dict[Tuple[EntityKind, int], object] = field(default_factory=dict)
    closed: bool = False


class SqlStore(StorageAdapter):

    def __init__(self, session_factory: sessionmaker, models=None):
        self._session_factory = session_factory
        self._models = models or MODELS_BY_KIND

    def _model(self, kind):
        return self._models[EntityKind(kind)]

    def begin_unit_of_work(self) -> SqlUnitOfWork:
        return SqlUnitOfWork(session=self._session_factory())

    def read_snapshot(self, handle: SqlUnitOfWork, kind, filter=None) -> List[dict]:
        model = self._model(kind)
        stmt = select(model).filter_by(**(filter or {})).order_by(model.id)
        with _translate_errors():
            objs = handle.session.scalars(stmt).all()
        rows = []
        for obj in objs:
            handle.loaded[(EntityKind(kind), obj.id)] = obj
            rows.append(_as_row(obj))
        return rows

    def write_all(self, handle: SqlUnitOfWork, inserts=(), updates=(), deletes=()) -> CommitResult:
        session = handle.session
        result = CommitResult()
        try:
            with _translate_errors():
                for change in updates:
                    obj = self._loaded(handle, change.kind, change.id)
                    for name, value in change.row.items():
                        setattr(obj, name, value)
                session.flush()

                # deepest rows first so enforced foreign keys never dangle
                for change in reversed(list(deletes)):
                    session.delete(self._loaded(handle, change.kind, change.id))
                    session.flush()

                added = []
                for change in inserts:
                    values = {k: v for k, v in change.row.items() if k != "id"}
                    obj = self._model(change.kind)(**values)
                    session.add(obj)
                    added.append(obj)
                session.flush()
                result.inserted_ids = [obj.id for obj in added]

                session.commit()
        except BaseException:
            self.rollback(handle)
            raise

        handle.closed = True
        session.close()
        logger.debug(
            "sql commit: %d inserts, %d updates, %d deletes",
            len(inserts), len(updates), len(deletes),
        )
        return result

    def rollback(self, handle: SqlUnitOfWork) -> None:
        if handle.closed:
            return
        handle.closed = True
        handle.loaded.clear()
        try:
            handle.session.rollback()
        finally:
            handle.session.close()

    def _loaded(self, handle: SqlUnitOfWork, kind, row_id):
        obj = handle.loaded.get((EntityKind(kind), row_id))
        if obj is None:
            obj = handle.session.get(self._model(kind), row_id)
        if obj is None:
            raise WriteConflict(f"{kind} {row_id} vanished before commit")
        return obj
