"""Remote Data Gateway.

Reads and writes the four collections the client depends on and issues
realtime subscriptions filtered by collection and parent key. Two backends
implement the ``Gateway`` protocol:

- RestGateway (this module): the hosted project's PostgREST-style table API
- SqlGateway (``campus_feed.services.sql_gateway``): a local SQLAlchemy database
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol

import httpx

from campus_feed.core.errors import GatewayError, UniqueViolationError
from campus_feed.core.settings import settings
from campus_feed.services.auth import SessionContext
from campus_feed.services.http import HTTP_BAD_REQUEST, HttpService, RequestParams
from campus_feed.services.realtime import (
    ALL_KINDS,
    ChangeKind,
    RealtimeHub,
    RowFilter,
    Subscription,
)

logger = logging.getLogger(__name__)

# Collection names
USERS = "users"
POSTS = "posts"
POST_LIKES = "post_likes"
POST_COMMENTS = "post_comments"

COLLECTIONS = (USERS, POSTS, POST_LIKES, POST_COMMENTS)

# Postgres SQLSTATE for unique_violation.
UNIQUE_VIOLATION = "23505"

Row = dict[str, Any]


@dataclass(frozen=True)
class Filter:
    """Column predicate. ``op`` is one of ``eq``, ``neq``, ``in`` or ``is``."""

    column: str
    op: str
    value: Any


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def is_null(column: str) -> Filter:
    return Filter(column, "is", None)


@dataclass(frozen=True)
class Query:
    """Select query: filters, ordering and a range window."""

    filters: tuple[Filter, ...] = ()
    order: tuple[Order, ...] = ()
    limit: int | None = None
    offset: int = 0
    columns: str = "*"

    def where(self, column: str, op: str, value: Any) -> Query:
        """Return a copy with one more column predicate.

        Args:
            column: Column name in the target collection.
            op: One of ``eq``, ``neq``, ``in`` or ``is``.
            value: Operand; an iterable for ``in``.

        Returns:
            A new Query; the receiver is left unchanged.
        """
        if op == "in":
            value = tuple(value)
        return replace(self, filters=self.filters + (Filter(column, op, value),))

    def order_by(self, column: str, *, descending: bool = False) -> Query:
        """Append a sort key; earlier keys take precedence."""
        return replace(self, order=self.order + (Order(column, descending),))

    def range(self, start: int, end: int) -> Query:
        """Restrict to rows ``start``..``end`` inclusive."""
        return replace(self, offset=start, limit=max(0, end - start + 1))

    def select(self, columns: str) -> Query:
        """Restrict the returned columns, e.g. ``"id, email"``."""
        return replace(self, columns=columns)


class Gateway(Protocol):
    """Operations the reconcilers and services need from a backend."""

    hub: RealtimeHub

    async def select(self, collection: str, query: Query | None = None) -> list[Row]: ...

    async def insert(self, collection: str, row: Mapping[str, Any]) -> Row: ...

    async def upsert(self, collection: str, row: Mapping[str, Any]) -> Row: ...

    async def update(
        self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]
    ) -> list[Row]: ...

    async def delete(self, collection: str, filters: Sequence[Filter]) -> list[Row]: ...

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int: ...

    def subscribe(
        self,
        collection: str,
        kinds: Iterable[ChangeKind] = ALL_KINDS,
        parent_filter: RowFilter | None = None,
    ) -> Subscription: ...

    async def close(self) -> None: ...


def _encode_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value)
    if any(ch in text for ch in ',()"'):
        escaped = text.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_filter(flt: Filter) -> tuple[str, str]:
    """Encode a filter as a PostgREST query parameter."""
    if flt.op == "in":
        values = ",".join(_encode_scalar(v) for v in flt.value)
        return flt.column, f"in.({values})"
    if flt.op == "is":
        return flt.column, f"is.{_encode_scalar(flt.value)}"
    if flt.op in ("eq", "neq"):
        return flt.column, f"{flt.op}.{_encode_scalar(flt.value)}"
    raise ValueError(f"Unsupported filter operator: {flt.op}")


def encode_query(query: Query) -> list[tuple[str, str]]:
    params: list[tuple[str, str]] = [("select", query.columns)]
    params.extend(encode_filter(flt) for flt in query.filters)
    if query.order:
        params.append(
            (
                "order",
                ",".join(
                    f"{o.column}.{'desc' if o.descending else 'asc'}" for o in query.order
                ),
            )
        )
    if query.limit is not None:
        params.append(("limit", str(query.limit)))
    if query.offset:
        params.append(("offset", str(query.offset)))
    return params


def parse_content_range(header: str | None) -> int:
    """Return the total from a ``Content-Range: 0-9/42`` header."""
    if not header or "/" not in header:
        raise GatewayError("Count response did not include a total")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise GatewayError("Count response did not include a total")
    return int(total)


class RestGateway(HttpService):
    """Gateway over the hosted project's table API.

    Row-level security is enforced server-side using the bearer token of the
    session context. Realtime events come from a ``ChangeStreamWorker``
    publishing into ``hub``.
    """

    def __init__(
        self,
        session: SessionContext,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        hub: RealtimeHub | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.rest_url,
            api_key=api_key,
            session=session,
            transport=transport,
        )
        self.hub = hub or RealtimeHub()

    def _raise(self, response: httpx.Response, action: str) -> None:
        error = self._error_from_response(response, action)
        if isinstance(error, GatewayError) and error.code == UNIQUE_VIOLATION:
            raise UniqueViolationError(
                str(error), code=error.code, status_code=error.status_code
            )
        raise error

    async def select(self, collection: str, query: Query | None = None) -> list[Row]:
        """Fetch rows from a collection.

        Args:
            collection: Table name, e.g. ``posts``.
            query: Filters, ordering, window and columns. Defaults to every row.

        Returns:
            The matching rows as dictionaries.

        Raises:
            GatewayError: If the request fails or the server rejects it.
        """
        query = query or Query()
        response = await self._request(
            RequestParams(method="GET", path=f"/{collection}", params=encode_query(query))
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Select from {collection}")
        return list(response.json())

    async def insert(self, collection: str, row: Mapping[str, Any]) -> Row:
        """Insert one row and return the stored representation.

        Raises:
            UniqueViolationError: If the row collides with a unique constraint.
            GatewayError: For any other failure.
        """
        response = await self._request(
            RequestParams(
                method="POST",
                path=f"/{collection}",
                json_data=dict(row),
                headers={"Prefer": "return=representation"},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Insert into {collection}")
        return self._first_row(response, collection)

    async def upsert(self, collection: str, row: Mapping[str, Any]) -> Row:
        response = await self._request(
            RequestParams(
                method="POST",
                path=f"/{collection}",
                json_data=dict(row),
                headers={"Prefer": "return=representation,resolution=merge-duplicates"},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Upsert into {collection}")
        return self._first_row(response, collection)

    async def update(
        self, collection: str, filters: Sequence[Filter], patch: Mapping[str, Any]
    ) -> list[Row]:
        response = await self._request(
            RequestParams(
                method="PATCH",
                path=f"/{collection}",
                params=[encode_filter(flt) for flt in filters],
                json_data=dict(patch),
                headers={"Prefer": "return=representation"},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Update of {collection}")
        return list(response.json())

    async def delete(self, collection: str, filters: Sequence[Filter]) -> list[Row]:
        """Delete the rows matching every filter.

        Args:
            collection: Table name.
            filters: At least one predicate; an unfiltered delete is refused.

        Returns:
            The deleted rows. An empty list means nothing matched.
        """
        if not filters:
            raise GatewayError("Refusing to delete without filters")
        response = await self._request(
            RequestParams(
                method="DELETE",
                path=f"/{collection}",
                params=[encode_filter(flt) for flt in filters],
                headers={"Prefer": "return=representation"},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Delete from {collection}")
        return list(response.json())

    async def count(self, collection: str, filters: Sequence[Filter] = ()) -> int:
        """Exact row count read from the ``Content-Range`` header."""
        params = [("select", "*")] + [encode_filter(flt) for flt in filters]
        response = await self._request(
            RequestParams(
                method="HEAD",
                path=f"/{collection}",
                params=params,
                headers={"Prefer": "count=exact"},
            )
        )
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, f"Count of {collection}")
        return parse_content_range(response.headers.get("content-range"))

    def subscribe(
        self,
        collection: str,
        kinds: Iterable[ChangeKind] = ALL_KINDS,
        parent_filter: RowFilter | None = None,
    ) -> Subscription:
        return self.hub.subscribe(collection, kinds, parent_filter)

    async def pull_changes(
        self, cursor: str | None = None
    ) -> tuple[str | None, list[Mapping[str, Any]]]:
        """Pull one batch of committed changes from the change feed."""
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor

        url = settings.supabase_url.rstrip("/") + settings.realtime_changes_path
        response = await self._request(RequestParams(method="GET", path=url, params=params))
        if response.status_code >= HTTP_BAD_REQUEST:
            self._raise(response, "Pulling changes")

        payload = response.json()
        events = [
            item for item in payload.get("events", []) or []
            if item.get("table") in COLLECTIONS
        ]
        return payload.get("cursor"), events

    @staticmethod
    def _first_row(response: httpx.Response, collection: str) -> Row:
        rows = response.json()
        if isinstance(rows, list):
            if not rows:
                raise GatewayError(f"Write to {collection} returned no row")
            return dict(rows[0])
        return dict(rows)
