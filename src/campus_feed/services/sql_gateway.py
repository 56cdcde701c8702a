"""Gateway over a local SQLAlchemy database.

Serves the same contract as ``RestGateway`` for development and tests. After
each committed write the corresponding change events are published into the
gateway's ``RealtimeHub``, in commit order, the way the hosted database's
change notification would deliver them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from campus_feed.core.errors import GatewayError, UniqueViolationError
from campus_feed.db.time import as_utc, utcnow
from campus_feed.models import Post, PostComment, PostLike, User
from campus_feed.services.gateway import (
    POST_COMMENTS,
    POST_LIKES,
    POSTS,
    UNIQUE_VIOLATION,
    USERS,
    Filter,
    Query,
    Row,
)
from campus_feed.services.realtime import (
    ALL_KINDS,
    ChangeEvent,
    ChangeKind,
    RealtimeHub,
    RowFilter,
    Subscription,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODELS: dict[str, type[Any]] = {
    USERS: User,
    POSTS: Post,
    POST_LIKES: PostLike,
    POST_COMMENTS: PostComment,
}


def _model_for(collection: str) -> type[Any]:
    try:
        return MODELS[collection]
    except KeyError:
        raise GatewayError(f"Unknown collection: {collection}") from None


def to_row(obj: Any) -> Row:
    """Serialize an ORM instance the way the table API would return it."""
    row: Row = {}
    for column in obj.__table__.columns:
        value = getattr(obj, column.key)
        if isinstance(value, datetime):
            value = as_utc(value).isoformat()
        row[column.key] = value
    return row


def _coerce(model: type[Any], values: Mapping[str, Any]) -> dict[str, Any]:
    columns = {column.key: column for column in model.__table__.columns}
    coerced: dict[str, Any] = {}
    for key, value in values.items():
        if key not in columns:
            raise GatewayError(f"Unknown column {model.__tablename__}.{key}")
        if isinstance(value, str) and key == "created_at":
            value = datetime.fromisoformat(value)
        coerced[key] = value
    return coerced


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNIQUE_VIOLATION:
        return True
    return "UNIQUE" in str(orig).upper()


def _apply_filters(stmt: Any, model: type[Any], filters: Iterable[Filter]) -> Any:
    for flt in filters:
        column = getattr(model, flt.column, None)
        if column is None:
            raise GatewayError(f"Unknown column {model.__tablename__}.{flt.column}")
        if flt.op == "eq":
            stmt = stmt.where(column == flt.value)
        elif flt.op == "neq":
            stmt = stmt.where(column != flt.value)
        elif flt.op == "in":
            stmt = stmt.where(column.in_(list(flt.value)))
        elif flt.op == "is":
            stmt = stmt.where(column.is_(flt.value))
        else:
            raise GatewayError(f"Unsupported filter operator: {flt.op}")
    return stmt


class SqlGateway:
    """Gateway backed by a SQLAlchemy session factory."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        hub: RealtimeHub | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub or RealtimeHub()
        # Serializes database work; SQLite connections are shared across threads.
        self._lock = asyncio.Lock()

    async def _run(self, work: Callable[[Session], T]) -> T:
        async with self._lock:
            return await asyncio.to_thread(self._run_sync, work)

    def _run_sync(self, work: Callable[[Session], T]) -> T:
        with self.session_factory() as db:
            try:
                result = work(db)
                db.commit()
                return result
            except IntegrityError as exc:
                db.rollback()
                if _is_unique_violation(exc):
                    raise UniqueViolationError(
                        "duplicate key value violates unique constraint",
                        code=UNIQUE_VIOLATION,
                    ) from exc
                raise GatewayError(f"Integrity error: {exc.orig}") from exc
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("Database operation failed: %s", exc, exc_info=True)
                raise GatewayError(f"Database operation failed: {exc}") from exc

    def _publish(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.hub.publish(event)

    async def select(self, collection: str, query: Query | None = None) -> list[Row]:
        model = _model_for(collection)
        query = query or Query()

        def work(db: Session) -> list[Row]:
            stmt = _apply_filters(select(model), model, query.filters)
            for order in query.order:
                column = getattr(model, order.column)
                stmt = stmt.order_by(column.desc() if order.descending else column.asc())
            if query.offset:
                stmt = stmt.offset(query.offset)
            if query.limit is not None:
                stmt = stmt.limit(query.limit)
            rows = [to_row(obj) for obj in db.execute(stmt).scalars()]
            if query.columns.strip() != "*":
                wanted = [name.strip() for name in query.columns.split(",")]
                rows = [{name: row[name] for name in wanted} for row in rows]
            return rows

        return await self._run(work)

    async def insert(self, collection: str, row: Mapping[str, Any]) -> Row:
        model = _model_for(collection)

        def work(db: Session) -> Row:
            obj = model(**_coerce(model, row))
            db.add(obj)
            db.flush()
            return to_row(obj)

        created = await self._run(work)
        self._publish(
            [ChangeEvent(ChangeKind.INSERT, collection, new=created, commit_timestamp=utcnow())]
        )
        return created

    async def upsert(self, collection: str, row: Mapping[str, Any]) -> Row:
        model = _model_for(collection)
        values = _coerce(model, row)

        def work(db: Session) -> tuple[Row | None, Row]:
            key = values.get("id")
            existing = db.get(model, key) if key is not None else None
            old = to_row(existing) if existing is not None else None
            obj = db.merge(model(**values))
            db.flush()
            return old, to_row(obj)

        old, new = await self._run(work)
        kind = ChangeKind.INSERT if old is None else ChangeKind.UPDATE
        self._publish(
            [ChangeEvent(kind, collection, new=new, old=old, commit_timestamp=utcnow())]
        )
        return new

    async def update(
        self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]
    ) -> list[Row]:
        model = _model_for(collection)
        values = _coerce(model, patch)

        def work(db: Session) -> list[tuple[Row, Row]]:
            stmt = _apply_filters(select(model), model, filters)
            changed: list[tuple[Row, Row]] = []
            for obj in db.execute(stmt).scalars().all():
                old = to_row(obj)
                for key, value in values.items():
                    setattr(obj, key, value)
                db.flush()
                changed.append((old, to_row(obj)))
            return changed

        changed = await self._run(work)
        now = utcnow()
        self._publish(
            ChangeEvent(ChangeKind.UPDATE, collection, new=new, old=old, commit_timestamp=now)
            for old, new in changed
        )
        return [new for _, new in changed]

    async def delete(self, collection: str, filters: Sequence[Filter]) -> list[Row]:
        if not filters:
            raise GatewayError("Refusing to delete without filters")
        model = _model_for(collection)

        def work(db: Session) -> list[Row]:
            stmt = _apply_filters(select(model), model, filters)
            removed: list[Row] = []
            for obj in db.execute(stmt).scalars().all():
                removed.append(to_row(obj))
                db.delete(obj)
            db.flush()
            return removed

        removed = await self._run(work)
        now = utcnow()
        self._publish(
            ChangeEvent(ChangeKind.DELETE, collection, old=old, commit_timestamp=now)
            for old in removed
        )
        return removed

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        model = _model_for(collection)

        def work(db: Session) -> int:
            stmt = _apply_filters(select(func.count()).select_from(model), model, filters)
            return int(db.execute(stmt).scalar_one())

        return await self._run(work)

    def subscribe(
        self,
        collection: str,
        kinds: Iterable[ChangeKind] = ALL_KINDS,
        parent_filter: RowFilter | None = None,
    ) -> Subscription:
        return self.hub.subscribe(collection, kinds, parent_filter)

    async def close(self) -> None:
        """Nothing to release; sessions are closed per operation."""
