"""Generic document store access.

The credential and identity layers only need three operations over a named
collection of JSON documents:

- ``list_where(collection, filters)`` — equality match on every filter key
- ``insert(collection, record)`` — create a document with a fresh opaque id
- ``patch(collection, id, fields)`` — shallow-merge *fields* into a document

Documents come back as plain dicts with the store id under ``"id"``.

Two backends implement the ``DocumentStore`` protocol:

``HttpDocumentStore``
    An Appwrite-compatible REST database API (project id + API key headers,
    JSON ``equal`` queries).  A ``409`` answer is a uniqueness conflict.

``PostgresDocumentStore``
    A single JSONB ``documents`` table on an asyncpg pool.  Uniqueness over
    document fields is enforced with partial expression indexes created by
    ``ensure_unique()``.

Neither backend retries.  Failures raise ``DocumentStoreError``; uniqueness
violations raise the ``DocumentConflictError`` subclass.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Protocol

import asyncpg
import httpx

from tokensync.config import DocumentStoreConfig

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


class DocumentStoreError(Exception):
    """Raised when a document store operation fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DocumentConflictError(DocumentStoreError):
    """Raised when a write violates a uniqueness constraint."""


class DocumentStore(Protocol):
    """Minimal CRUD surface over JSON document collections."""

    async def list_where(
        self, collection: str, filters: Mapping[str, Any]
    ) -> list[dict[str, Any]]: ...

    async def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]: ...

    async def patch(
        self, collection: str, record_id: str, fields: Mapping[str, Any]
    ) -> dict[str, Any]: ...


def new_document_id() -> str:
    """Return a fresh opaque document id (32 hex chars, valid for both backends)."""
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# REST backend
# ---------------------------------------------------------------------------


def _equal_query(attribute: str, value: Any) -> str:
    return json.dumps({"method": "equal", "attribute": attribute, "values": [value]})


def _order_query(attribute: str) -> str:
    return json.dumps({"method": "orderAsc", "attribute": attribute})


def _from_rest_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Strip ``$``-prefixed system attributes, keeping the id as ``"id"``."""
    record = {key: value for key, value in document.items() if not key.startswith("$")}
    record["id"] = document.get("$id")
    return record


class HttpDocumentStore:
    """Document store backed by an Appwrite-compatible REST database API.

    Parameters
    ----------
    config:
        Endpoint, project id, API key, database id and timeout.  All four
        connection fields must be set.
    transport:
        Optional httpx transport, used by tests to stub the server.
    """

    def __init__(
        self,
        config: DocumentStoreConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        missing = [
            name
            for name in ("endpoint", "project_id", "api_key", "database_id")
            if not getattr(config, name)
        ]
        if missing:
            raise ValueError(f"HttpDocumentStore requires {', '.join(missing)}")
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=str(self.config.endpoint),
            timeout=self.config.timeout,
            transport=self._transport,
            headers={
                "X-Appwrite-Project": str(self.config.project_id),
                "X-Appwrite-Key": str(self.config.api_key),
            },
        )

    def _documents_path(self, collection: str) -> str:
        return f"/databases/{self.config.database_id}/collections/{collection}/documents"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.RequestError as exc:
            raise DocumentStoreError(f"Document store unreachable: {exc}") from exc

        if response.status_code == 409:
            raise DocumentConflictError(
                "Document store rejected the write: a document with the same unique "
                "attributes already exists",
                status_code=409,
            )
        if not response.is_success:
            message = None
            try:
                body = response.json()
                if isinstance(body, dict):
                    message = body.get("message")
            except (json.JSONDecodeError, ValueError):
                pass
            raise DocumentStoreError(
                f"Document store returned HTTP {response.status_code}"
                + (f": {message}" if message else ""),
                status_code=response.status_code,
            )

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise DocumentStoreError(
                "Document store returned a non-JSON response",
                status_code=response.status_code,
            ) from exc

    async def list_where(
        self, collection: str, filters: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        queries = [_equal_query(key, value) for key, value in filters.items()]
        queries.append(_order_query("$createdAt"))
        body = await self._request(
            "GET",
            self._documents_path(collection),
            params=[("queries[]", query) for query in queries],
        )
        documents = body.get("documents", []) if isinstance(body, dict) else []
        return [_from_rest_document(doc) for doc in documents]

    async def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        body = await self._request(
            "POST",
            self._documents_path(collection),
            json={"documentId": new_document_id(), "data": dict(record)},
        )
        return _from_rest_document(body)

    async def patch(
        self, collection: str, record_id: str, fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        body = await self._request(
            "PATCH",
            f"{self._documents_path(collection)}/{record_id}",
            json={"data": dict(fields)},
        )
        return _from_rest_document(body)


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------

_TABLE = "documents"
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

_DOCUMENTS_TABLE_DDL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    collection  TEXT NOT NULL,
    id          TEXT NOT NULL,
    data        JSONB NOT NULL,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (collection, id)
)
"""


def _check_identifier(kind: str, value: str) -> str:
    if not _IDENTIFIER_PATTERN.match(value):
        raise ValueError(f"Invalid {kind} {value!r}")
    return value


def _unique_index_ddl(collection: str, fields: Sequence[str]) -> str:
    _check_identifier("collection", collection)
    for name in fields:
        _check_identifier("field", name)
    slug = re.sub(r"[^a-z0-9]+", "_", f"{collection}_{'_'.join(fields)}".lower())
    index_name = f"ux_{_TABLE}_{slug}"[:63]
    expressions = ", ".join(f"(data->>'{name}')" for name in fields)
    return (
        f'CREATE UNIQUE INDEX IF NOT EXISTS "{index_name}" '
        f"ON {_TABLE} ({expressions}) WHERE collection = '{collection}'"
    )


def _from_row(row: Any) -> dict[str, Any]:
    data = row["data"]
    # asyncpg returns JSONB as text unless a codec is registered on the pool.
    if isinstance(data, str):
        data = json.loads(data)
    record = dict(data)
    record["id"] = row["id"]
    return record


class PostgresDocumentStore:
    """Document store backed by a JSONB table on an asyncpg pool.

    Parameters
    ----------
    pool:
        An asyncpg connection pool.  Each operation acquires a connection for
        the duration of the call.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        """Create the documents table if it does not exist yet."""
        async with self.pool.acquire() as conn:
            await conn.execute(_DOCUMENTS_TABLE_DDL)

    async def ensure_unique(self, collection: str, fields: Sequence[str]) -> None:
        """Enforce uniqueness of *fields* among documents of *collection*."""
        ddl = _unique_index_ddl(collection, fields)
        async with self.pool.acquire() as conn:
            await conn.execute(ddl)
        logger.info("Unique constraint ensured on %s(%s)", collection, ", ".join(fields))

    async def list_where(
        self, collection: str, filters: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT id, data FROM {_TABLE}
                    WHERE collection = $1 AND data @> $2::jsonb
                    ORDER BY created_at, id
                    """,
                    collection,
                    json.dumps(dict(filters)),
                )
        except (asyncpg.PostgresError, OSError) as exc:
            raise DocumentStoreError(f"Document lookup failed: {exc}") from exc
        return [_from_row(row) for row in rows]

    async def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {_TABLE} (collection, id, data)
                    VALUES ($1, $2, $3::jsonb)
                    RETURNING id, data
                    """,
                    collection,
                    new_document_id(),
                    json.dumps(dict(record)),
                )
        except asyncpg.UniqueViolationError as exc:
            raise DocumentConflictError(
                f"Document violates a unique constraint in {collection!r}"
            ) from exc
        except (asyncpg.PostgresError, OSError) as exc:
            raise DocumentStoreError(f"Document insert failed: {exc}") from exc
        return _from_row(row)

    async def patch(
        self, collection: str, record_id: str, fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {_TABLE}
                    SET data = data || $3::jsonb, updated_at = now()
                    WHERE collection = $1 AND id = $2
                    RETURNING id, data
                    """,
                    collection,
                    record_id,
                    json.dumps(dict(fields)),
                )
        except asyncpg.UniqueViolationError as exc:
            raise DocumentConflictError(
                f"Document patch violates a unique constraint in {collection!r}"
            ) from exc
        except (asyncpg.PostgresError, OSError) as exc:
            raise DocumentStoreError(f"Document patch failed: {exc}") from exc
        if row is None:
            raise DocumentStoreError(
                f"Document {record_id!r} not found in {collection!r}", status_code=404
            )
        return _from_row(row)
