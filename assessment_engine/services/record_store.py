"""Generic CRUD + change-feed access to the remote data store.

The attempt manager only talks to a `RecordStore`; `SqlRecordStore` is the
SQLAlchemy-backed implementation used by the API and the tests.
"""

import inspect
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Type, Union

from sqlalchemy import select
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import SQLAlchemyError

from assessment_engine.core.exceptions import ConfigurationError, PersistenceError, TransientFetchError
from assessment_engine.core.logging_config import get_logger
from assessment_engine.db.deps import AsyncSessionLocal, Base
from assessment_engine.models import Assessment, AssignedAssessment, AssessmentAnswer, AssessmentTake
from assessment_engine.utils.datetime_utils import ensure_utc
from assessment_engine.utils.enums import ChangeEvent


logger = get_logger("record_store")

Record = Dict[str, Any]
Filters = Mapping[str, Any]
ChangeCallback = Callable[[Record], Union[Awaitable[Any], Any]]
Unsubscribe = Callable[[], None]

ASSESSMENTS = "assessments"
ASSIGNED_ASSESSMENTS = "assigned_assessments"
ATTEMPTS = "student_assessments_take"
ANSWERS = "student_assessments_answer"

COLLECTIONS: Dict[str, Type[Base]] = {
    ASSESSMENTS: Assessment,
    ASSIGNED_ASSESSMENTS: AssignedAssessment,
    ATTEMPTS: AssessmentTake,
    ANSWERS: AssessmentAnswer,
}


class RecordStore(Protocol):
    async def fetch_one(self, collection: str, filters: Filters) -> Optional[Record]: ...

    async def fetch_many(
        self, collection: str, filters: Filters, order: Optional[str] = None
    ) -> List[Record]: ...

    async def insert(self, collection: str, record: Record) -> Record: ...

    async def insert_many(self, collection: str, records: Sequence[Record]) -> List[Record]: ...

    async def update(self, collection: str, filters: Filters, patch: Record) -> Record: ...

    def subscribe(self, collection: str, filters: Filters, on_change: ChangeCallback) -> Unsubscribe: ...


def _matches(filters: Filters, record: Record) -> bool:
    for column, value in filters.items():
        if isinstance(value, (list, tuple, set)):
            if record.get(column) not in value:
                return False
        elif record.get(column) != value:
            return False
    return True


class _Listener:
    def __init__(self, filters: Filters, callback: ChangeCallback):
        self.filters = dict(filters)
        self.callback = callback


class SqlRecordStore:
    """RecordStore over SQLAlchemy async sessions.

    Reads raise TransientFetchError and writes raise PersistenceError when the
    database fails. Each write is its own transaction, so `insert_many` either
    stores the whole batch or nothing. Subscribers are notified in-process
    after a write commits.
    """

    def __init__(self, session_factory=AsyncSessionLocal, collections: Optional[Dict[str, Type[Base]]] = None):
        self._session_factory = session_factory
        self._collections = collections or COLLECTIONS
        self._listeners: Dict[str, List[_Listener]] = defaultdict(list)

    # Helpers

    def _model(self, collection: str) -> Type[Base]:
        try:
            return self._collections[collection]
        except KeyError:
            raise ConfigurationError(f"Unknown collection: {collection}")

    @staticmethod
    def _column(model: Type[Base], name: str):
        column = getattr(model, name, None)
        if column is None:
            raise ConfigurationError(f"Unknown column {name!r} on {model.__tablename__}")
        return column

    def _where(self, model: Type[Base], filters: Optional[Filters]) -> list:
        clauses = []
        for name, value in (filters or {}).items():
            column = self._column(model, name)
            if isinstance(value, (list, tuple, set)):
                clauses.append(column.in_(list(value)))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
        return clauses

    def _order_by(self, model: Type[Base], order: Optional[str]):
        if not order:
            return self._column(model, "id").asc()
        if order.startswith("-"):
            return self._column(model, order[1:]).desc()
        return self._column(model, order).asc()

    @staticmethod
    def _to_dict(row: Base) -> Record:
        # SQLite hands back naive datetimes
        return SqlRecordStore._coerce(
            {attr.key: getattr(row, attr.key) for attr in sa_inspect(row).mapper.column_attrs}
        )

    @staticmethod
    def _coerce(record: Mapping[str, Any]) -> Record:
        return {k: ensure_utc(v) if isinstance(v, datetime) else v for k, v in record.items()}

    # Reads

    async def fetch_one(self, collection: str, filters: Filters) -> Optional[Record]:
        model = self._model(collection)
        stmt = select(model).where(*self._where(model, filters)).order_by(self._order_by(model, None)).limit(1)
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                row = result.scalars().first()
                return self._to_dict(row) if row is not None else None
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"fetch_one failed collection={collection} filters={dict(filters)}: {e}")
            raise TransientFetchError() from e

    async def fetch_many(
        self, collection: str, filters: Filters, order: Optional[str] = None
    ) -> List[Record]:
        model = self._model(collection)
        stmt = select(model).where(*self._where(model, filters)).order_by(self._order_by(model, order))
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                return [self._to_dict(row) for row in result.scalars().all()]
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"fetch_many failed collection={collection} filters={dict(filters)}: {e}")
            raise TransientFetchError() from e

    # Writes

    async def insert(self, collection: str, record: Record) -> Record:
        created = await self.insert_many(collection, [record])
        return created[0]

    async def insert_many(self, collection: str, records: Sequence[Record]) -> List[Record]:
        model = self._model(collection)
        if not records:
            return []
        try:
            async with self._session_factory() as db:
                rows = [model(**self._coerce(record)) for record in records]
                db.add_all(rows)
                await db.commit()
                for row in rows:
                    await db.refresh(row)
                created = [self._to_dict(row) for row in rows]
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"insert failed collection={collection} rows={len(records)}: {e}")
            raise PersistenceError() from e

        await self._notify(collection, ChangeEvent.insert, created)
        return created

    async def update(self, collection: str, filters: Filters, patch: Record) -> Record:
        model = self._model(collection)
        stmt = select(model).where(*self._where(model, filters)).order_by(self._order_by(model, None))
        values = self._coerce(patch)
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                rows = result.scalars().all()
                if not rows:
                    raise PersistenceError(f"No {collection} record matches {dict(filters)}")
                for row in rows:
                    for name, value in values.items():
                        self._column(model, name)
                        setattr(row, name, value)
                await db.commit()
                for row in rows:
                    await db.refresh(row)
                updated = [self._to_dict(row) for row in rows]
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"update failed collection={collection} filters={dict(filters)}: {e}")
            raise PersistenceError() from e

        await self._notify(collection, ChangeEvent.update, updated)
        return updated[0]

    # Change feed

    def subscribe(self, collection: str, filters: Filters, on_change: ChangeCallback) -> Unsubscribe:
        self._model(collection)
        listener = _Listener(filters or {}, on_change)
        self._listeners[collection].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[collection]:
                self._listeners[collection].remove(listener)

        return unsubscribe

    async def _notify(self, collection: str, event: ChangeEvent, records: List[Record]) -> None:
        for listener in list(self._listeners.get(collection, [])):
            for record in records:
                if not _matches(listener.filters, record):
                    continue
                try:
                    result = listener.callback({"event": event.value, "collection": collection, "record": record})
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    # The write is already committed; a failing subscriber must not undo it.
                    logger.exception(f"Change subscriber failed for {collection}: {e}")
