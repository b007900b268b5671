"""Tests for tokensync.docstore backends.

- HttpDocumentStore: served by ``httpx.MockTransport``
- PostgresDocumentStore: asyncpg pool mocked, no real database required
"""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import httpx
import pytest

from tokensync.config import DocumentStoreConfig
from tokensync.docstore import (
    DocumentConflictError,
    DocumentStoreError,
    HttpDocumentStore,
    PostgresDocumentStore,
    _unique_index_ddl,
    new_document_id,
)

pytestmark = pytest.mark.unit

HTTP_CONFIG = DocumentStoreConfig(
    backend="http",
    tokens_collection_id="tokens",
    endpoint="https://cloud.example.com/v1",
    project_id="proj-1",
    api_key="api-key",
    database_id="main",
)

DOCS_PATH = "/v1/databases/main/collections/tokens/documents"


def _http_store(handler: Callable[[httpx.Request], httpx.Response]) -> HttpDocumentStore:
    return HttpDocumentStore(HTTP_CONFIG, transport=httpx.MockTransport(handler))


def _make_pool(*, fetchrow_return=None, fetch_return=None) -> MagicMock:
    """Build a minimal asyncpg pool mock."""
    conn = AsyncMock()
    conn.fetchrow.return_value = fetchrow_return
    conn.fetch.return_value = fetch_return or []
    conn.execute.return_value = "CREATE INDEX"

    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=conn)
    cm.__aexit__ = AsyncMock(return_value=False)

    pool = MagicMock()
    pool.acquire.return_value = cm
    pool._conn = conn
    return pool


def _make_row(**kwargs) -> MagicMock:
    """Build a mock asyncpg Record-like object."""
    row = MagicMock()
    row.__getitem__ = lambda self, key: kwargs[key]
    return row


def test_new_document_id_is_opaque_hex():
    first, second = new_document_id(), new_document_id()
    assert first != second
    assert len(first) == 32
    int(first, 16)


# ---------------------------------------------------------------------------
# REST backend
# ---------------------------------------------------------------------------


class TestHttpDocumentStore:
    def test_requires_connection_settings(self):
        config = DocumentStoreConfig(backend="http", tokens_collection_id="tokens")
        with pytest.raises(ValueError, match="endpoint"):
            HttpDocumentStore(config)

    async def test_list_where_sends_equal_queries(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(
                200,
                json={
                    "total": 1,
                    "documents": [
                        {
                            "$id": "doc1",
                            "$createdAt": "2026-01-01T00:00:00.000+00:00",
                            "$collectionId": "tokens",
                            "userId": "u1",
                            "provider": "google",
                        }
                    ],
                },
            )

        documents = await _http_store(handler).list_where(
            "tokens", {"userId": "u1", "provider": "google"}
        )

        assert documents == [{"userId": "u1", "provider": "google", "id": "doc1"}]
        request = requests[0]
        assert request.method == "GET"
        assert request.url.path == DOCS_PATH
        assert request.headers["X-Appwrite-Project"] == "proj-1"
        assert request.headers["X-Appwrite-Key"] == "api-key"
        queries = [json.loads(q) for q in request.url.params.get_list("queries[]")]
        assert {"method": "equal", "attribute": "userId", "values": ["u1"]} in queries
        assert {"method": "equal", "attribute": "provider", "values": ["google"]} in queries
        assert {"method": "orderAsc", "attribute": "$createdAt"} in queries

    async def test_insert_posts_document(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = json.loads(request.content)
            return httpx.Response(201, json={"$id": body["documentId"], **body["data"]})

        created = await _http_store(handler).insert("tokens", {"userId": "u1"})

        body = json.loads(requests[0].content)
        assert requests[0].method == "POST"
        assert body["data"] == {"userId": "u1"}
        assert created == {"userId": "u1", "id": body["documentId"]}

    async def test_insert_conflict(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(409, json={"message": "Document already exists"})

        with pytest.raises(DocumentConflictError) as exc_info:
            await _http_store(handler).insert("tokens", {"userId": "u1"})
        assert exc_info.value.status_code == 409

    async def test_patch_targets_document(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"$id": "doc1", "accessToken": "new"})

        patched = await _http_store(handler).patch("tokens", "doc1", {"accessToken": "new"})

        assert requests[0].method == "PATCH"
        assert requests[0].url.path == f"{DOCS_PATH}/doc1"
        assert json.loads(requests[0].content) == {"data": {"accessToken": "new"}}
        assert patched == {"accessToken": "new", "id": "doc1"}

    async def test_server_error_carries_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "Server Error"})

        with pytest.raises(DocumentStoreError, match="Server Error") as exc_info:
            await _http_store(handler).list_where("tokens", {"userId": "u1"})
        assert exc_info.value.status_code == 500
        assert not isinstance(exc_info.value, DocumentConflictError)

    @pytest.mark.parametrize(
        "error_type", [httpx.ConnectTimeout, httpx.TooManyRedirects, httpx.DecodingError]
    )
    async def test_unreachable(self, error_type):
        def handler(request: httpx.Request) -> httpx.Response:
            raise error_type("request failed", request=request)

        with pytest.raises(DocumentStoreError, match="unreachable"):
            await _http_store(handler).list_where("tokens", {"userId": "u1"})

    async def test_non_json_success_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="ok")

        with pytest.raises(DocumentStoreError, match="non-JSON"):
            await _http_store(handler).insert("tokens", {"userId": "u1"})


# ---------------------------------------------------------------------------
# PostgreSQL backend
# ---------------------------------------------------------------------------


class TestPostgresDocumentStore:
    async def test_ensure_schema_creates_table(self):
        pool = _make_pool()
        await PostgresDocumentStore(pool).ensure_schema()
        sql = pool._conn.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS documents" in sql
        assert "JSONB" in sql

    async def test_ensure_unique_creates_partial_index(self):
        pool = _make_pool()
        await PostgresDocumentStore(pool).ensure_unique("tokens", ["userId", "provider"])
        sql = pool._conn.execute.call_args[0][0]
        assert "CREATE UNIQUE INDEX IF NOT EXISTS" in sql
        assert "(data->>'userId'), (data->>'provider')" in sql
        assert "WHERE collection = 'tokens'" in sql

    @pytest.mark.parametrize(
        ("collection", "fields"),
        [("tokens'; DROP TABLE documents; --", ["userId"]), ("tokens", ["user'Id"])],
    )
    def test_unique_index_rejects_unsafe_identifiers(self, collection, fields):
        with pytest.raises(ValueError):
            _unique_index_ddl(collection, fields)

    async def test_list_where_uses_containment(self):
        pool = _make_pool(
            fetch_return=[
                _make_row(id="a", data='{"userId": "u1", "provider": "google"}'),
                _make_row(id="b", data={"userId": "u1", "provider": "google"}),
            ]
        )
        documents = await PostgresDocumentStore(pool).list_where(
            "tokens", {"userId": "u1", "provider": "google"}
        )

        assert documents == [
            {"userId": "u1", "provider": "google", "id": "a"},
            {"userId": "u1", "provider": "google", "id": "b"},
        ]
        sql, *args = pool._conn.fetch.call_args[0]
        assert "data @> $2::jsonb" in sql
        assert "ORDER BY created_at" in sql
        assert args[0] == "tokens"
        assert json.loads(args[1]) == {"userId": "u1", "provider": "google"}

    async def test_insert_returns_document_with_id(self):
        pool = _make_pool(fetchrow_return=_make_row(id="new-id", data={"userId": "u1"}))
        created = await PostgresDocumentStore(pool).insert("tokens", {"userId": "u1"})

        assert created == {"userId": "u1", "id": "new-id"}
        sql, *args = pool._conn.fetchrow.call_args[0]
        assert "INSERT INTO documents" in sql
        assert args[0] == "tokens"
        assert len(args[1]) == 32
        assert json.loads(args[2]) == {"userId": "u1"}

    async def test_insert_unique_violation_is_conflict(self):
        pool = _make_pool()
        pool._conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key")
        with pytest.raises(DocumentConflictError):
            await PostgresDocumentStore(pool).insert("tokens", {"userId": "u1"})

    async def test_insert_other_database_error(self):
        pool = _make_pool()
        pool._conn.fetchrow.side_effect = asyncpg.PostgresError("boom")
        with pytest.raises(DocumentStoreError) as exc_info:
            await PostgresDocumentStore(pool).insert("tokens", {"userId": "u1"})
        assert not isinstance(exc_info.value, DocumentConflictError)

    async def test_list_where_connection_error(self):
        pool = _make_pool()
        pool._conn.fetch.side_effect = OSError("connection reset")
        with pytest.raises(DocumentStoreError, match="lookup failed"):
            await PostgresDocumentStore(pool).list_where("tokens", {"userId": "u1"})

    async def test_patch_merges_fields(self):
        pool = _make_pool(
            fetchrow_return=_make_row(id="a", data={"userId": "u1", "accessToken": "new"})
        )
        patched = await PostgresDocumentStore(pool).patch("tokens", "a", {"accessToken": "new"})

        assert patched == {"userId": "u1", "accessToken": "new", "id": "a"}
        sql, *args = pool._conn.fetchrow.call_args[0]
        assert "data = data || $3::jsonb" in sql
        assert args[:2] == ["tokens", "a"]
        assert json.loads(args[2]) == {"accessToken": "new"}

    async def test_patch_missing_document(self):
        pool = _make_pool(fetchrow_return=None)
        with pytest.raises(DocumentStoreError) as exc_info:
            await PostgresDocumentStore(pool).patch("tokens", "gone", {"accessToken": "x"})
        assert exc_info.value.status_code == 404
