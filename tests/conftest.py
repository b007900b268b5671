"""Shared fixtures for tokensync tests.

Provides an in-memory ``DocumentStore`` that behaves like the real backends
where the credential and identity layers care:

- documents come back as plain dicts with the store id under ``"id"``
- ``list_where`` returns matches in insertion order (oldest first)
- per-collection unique field tuples are enforced on insert and patch,
  raising ``DocumentConflictError``
- a failure can be injected for the next call of any operation
"""

from __future__ import annotations

import copy
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import pytest

from tokensync.credential_store import CredentialStoreAdapter
from tokensync.docstore import DocumentConflictError, DocumentStoreError, new_document_id
from tokensync.identity import DocumentIdentityDirectory, IdentityResolver
from tokensync.reconcile import TokenReconciliationEngine

TOKENS = "tokens"
IDENTITIES = "identities"

FIXED_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


def fixed_clock() -> datetime:
    return FIXED_NOW


class MemoryDocumentStore:
    """In-memory document store with uniqueness and failure injection."""

    def __init__(self, unique: Mapping[str, Sequence[str]] | None = None) -> None:
        self.collections: dict[str, list[dict[str, Any]]] = {}
        self.unique = {name: tuple(fields) for name, fields in (unique or {}).items()}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, Exception] = {}

    # -- test helpers ---------------------------------------------------

    def fail_next(self, operation: str, exc: Exception) -> None:
        """Raise *exc* on the next call of *operation* (list_where/insert/patch)."""
        self._failures[operation] = exc

    def documents(self, collection: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(doc) for doc in self.collections.get(collection, [])]

    def seed(self, collection: str, **fields: Any) -> dict[str, Any]:
        """Insert a document directly, bypassing uniqueness checks."""
        document = {"id": fields.pop("id", None) or new_document_id(), **fields}
        self.collections.setdefault(collection, []).append(document)
        return copy.deepcopy(document)

    def _maybe_fail(self, operation: str, collection: str) -> None:
        self.calls.append((operation, collection))
        exc = self._failures.pop(operation, None)
        if exc is not None:
            raise exc

    def _check_unique(self, collection: str, candidate: Mapping[str, Any]) -> None:
        fields = self.unique.get(collection)
        if not fields:
            return
        key = tuple(candidate.get(name) for name in fields)
        for doc in self.collections.get(collection, []):
            if doc["id"] == candidate.get("id"):
                continue
            if tuple(doc.get(name) for name in fields) == key:
                raise DocumentConflictError(
                    f"duplicate {fields} in {collection}", status_code=409
                )

    # -- DocumentStore protocol ----------------------------------------

    async def list_where(
        self, collection: str, filters: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        self._maybe_fail("list_where", collection)
        return [
            copy.deepcopy(doc)
            for doc in self.collections.get(collection, [])
            if all(doc.get(key) == value for key, value in filters.items())
        ]

    async def insert(self, collection: str, record: Mapping[str, Any]) -> dict[str, Any]:
        self._maybe_fail("insert", collection)
        document = {**dict(record), "id": new_document_id()}
        self._check_unique(collection, document)
        self.collections.setdefault(collection, []).append(document)
        return copy.deepcopy(document)

    async def patch(
        self, collection: str, record_id: str, fields: Mapping[str, Any]
    ) -> dict[str, Any]:
        self._maybe_fail("patch", collection)
        for doc in self.collections.get(collection, []):
            if doc["id"] == record_id:
                merged = {**doc, **dict(fields), "id": record_id}
                self._check_unique(collection, merged)
                doc.update(merged)
                return copy.deepcopy(doc)
        raise DocumentStoreError(f"Document {record_id!r} not found", status_code=404)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def docstore() -> MemoryDocumentStore:
    return MemoryDocumentStore(
        unique={
            TOKENS: ("userId", "provider"),
            IDENTITIES: ("userId", "provider", "providerUid"),
        }
    )


@pytest.fixture
def credential_store(docstore: MemoryDocumentStore) -> CredentialStoreAdapter:
    return CredentialStoreAdapter(docstore, TOKENS, clock=fixed_clock)


@pytest.fixture
def identity_directory(docstore: MemoryDocumentStore) -> DocumentIdentityDirectory:
    return DocumentIdentityDirectory(docstore, IDENTITIES)


@pytest.fixture
def engine(
    credential_store: CredentialStoreAdapter,
    identity_directory: DocumentIdentityDirectory,
) -> TokenReconciliationEngine:
    return TokenReconciliationEngine(credential_store, IdentityResolver(identity_directory))
