"""Credential records over a generic document store.

One ``CredentialRecord`` binds one provider token set to one application
user.  At most one record exists per ``(userId, provider)``; the adapter
looks records up by that pair and relies on the underlying store to enforce
it (a racing duplicate create surfaces as ``StorageError(conflict=True)``).

Field-merge policy for updates (``merge_patch``):

- ``accessToken`` is always replaced.
- ``refreshToken``, ``expiresAt`` and ``providerSubjectId`` are replaced only
  when the incoming value is non-empty; otherwise the stored value is kept.
- ``userId`` and ``provider`` are immutable and never patched.

Unset optional fields are stored as ``""`` rather than omitted so every
document in the collection has the same shape.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from tokensync.docstore import DocumentConflictError, DocumentStore, DocumentStoreError
from tokensync.errors import StorageError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Document field names
# ---------------------------------------------------------------------------

FIELD_USER_ID = "userId"
FIELD_PROVIDER = "provider"
FIELD_SUBJECT_ID = "providerSubjectId"
FIELD_ACCESS_TOKEN = "accessToken"
FIELD_REFRESH_TOKEN = "refreshToken"
FIELD_EXPIRES_AT = "expiresAt"
FIELD_CREATED_AT = "createdAt"
FIELD_UPDATED_AT = "updatedAt"

IMMUTABLE_FIELDS = frozenset({FIELD_USER_ID, FIELD_PROVIDER})
PRESERVE_ON_EMPTY_FIELDS = (FIELD_REFRESH_TOKEN, FIELD_EXPIRES_AT, FIELD_SUBJECT_ID)

# Epoch values above this are milliseconds (JavaScript Date.getTime()).
_EPOCH_MILLIS_THRESHOLD = 100_000_000_000
_NUMERIC_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Render *value* as an ISO-8601 UTC string with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_expiry(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or epoch (seconds or milliseconds) expiry.

    Returns ``None`` for an absent/blank value.  Naive ISO timestamps are
    taken as UTC.

    Raises
    ------
    ValueError
        If *value* is neither ISO-8601 nor numeric.
    """
    if value is None or not value.strip():
        return None
    text = value.strip()

    if _NUMERIC_PATTERN.match(text):
        epoch = float(text)
        if abs(epoch) >= _EPOCH_MILLIS_THRESHOLD:
            epoch /= 1000
        try:
            return datetime.fromtimestamp(epoch, UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"epoch value {text!r} is out of range") from exc

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed.astimezone(UTC)
    except OverflowError as exc:
        raise ValueError(f"timestamp {text!r} is out of range in UTC") from exc


# ---------------------------------------------------------------------------
# Record model
# ---------------------------------------------------------------------------


class CredentialRecord(BaseModel):
    """A stored provider credential bound to one application user."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    provider: str
    provider_subject_id: str = ""
    access_token: str
    refresh_token: str = ""
    expires_at: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> CredentialRecord:
        def text(key: str) -> str:
            value = document.get(key)
            return "" if value is None else str(value)

        return cls(
            id=text("id"),
            user_id=text(FIELD_USER_ID),
            provider=text(FIELD_PROVIDER),
            provider_subject_id=text(FIELD_SUBJECT_ID),
            access_token=text(FIELD_ACCESS_TOKEN),
            refresh_token=text(FIELD_REFRESH_TOKEN),
            expires_at=text(FIELD_EXPIRES_AT),
            created_at=text(FIELD_CREATED_AT),
            updated_at=text(FIELD_UPDATED_AT),
        )

    def __repr__(self) -> str:
        return (
            f"CredentialRecord("
            f"id={self.id!r}, "
            f"user_id={self.user_id!r}, "
            f"provider={self.provider!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Merge policy
# ---------------------------------------------------------------------------


def merge_patch(existing: CredentialRecord, incoming: Mapping[str, str | None]) -> dict[str, str]:
    """Compute the update patch for *existing* from *incoming* field values.

    *incoming* uses document field names.  The returned patch always carries
    every mutable field so the write is self-describing, with stored values
    kept wherever the preserve-on-empty policy applies.
    """
    access_token = incoming.get(FIELD_ACCESS_TOKEN)
    if not access_token:
        raise ValueError("accessToken is required for an update")

    stored = {
        FIELD_REFRESH_TOKEN: existing.refresh_token,
        FIELD_EXPIRES_AT: existing.expires_at,
        FIELD_SUBJECT_ID: existing.provider_subject_id,
    }
    patch = {FIELD_ACCESS_TOKEN: access_token}
    for key in PRESERVE_ON_EMPTY_FIELDS:
        value = incoming.get(key)
        patch[key] = value if value else stored[key]
    return patch


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class CredentialStoreAdapter:
    """find / create / update of ``CredentialRecord`` documents.

    Parameters
    ----------
    docstore:
        Any ``DocumentStore`` implementation.
    collection:
        The credential collection id.
    clock:
        Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        docstore: DocumentStore,
        collection: str,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.docstore = docstore
        self.collection = collection
        self._clock = clock

    async def find(self, user_id: str, provider: str) -> CredentialRecord | None:
        """Return the record for ``(user_id, provider)``, or ``None``."""
        try:
            documents = await self.docstore.list_where(
                self.collection,
                {FIELD_USER_ID: user_id, FIELD_PROVIDER: provider},
            )
        except DocumentStoreError as exc:
            raise StorageError(f"Credential lookup failed: {exc}") from exc

        if not documents:
            return None
        if len(documents) > 1:
            logger.warning(
                "Found %d credential records for user=%s provider=%s; using the oldest (%s)",
                len(documents),
                user_id,
                provider,
                documents[0].get("id"),
            )
        return CredentialRecord.from_document(documents[0])

    async def create(self, fields: Mapping[str, str | None]) -> CredentialRecord:
        """Create a record from document-named *fields*.

        ``userId``, ``provider`` and ``accessToken`` must be non-empty; every
        optional field defaults to ``""``.
        """
        for key in (FIELD_USER_ID, FIELD_PROVIDER, FIELD_ACCESS_TOKEN):
            if not fields.get(key):
                raise ValueError(f"{key} is required to create a credential record")

        now = format_timestamp(self._clock())
        document = {
            FIELD_USER_ID: fields[FIELD_USER_ID],
            FIELD_PROVIDER: fields[FIELD_PROVIDER],
            FIELD_SUBJECT_ID: fields.get(FIELD_SUBJECT_ID) or "",
            FIELD_ACCESS_TOKEN: fields[FIELD_ACCESS_TOKEN],
            FIELD_REFRESH_TOKEN: fields.get(FIELD_REFRESH_TOKEN) or "",
            FIELD_EXPIRES_AT: fields.get(FIELD_EXPIRES_AT) or "",
            FIELD_CREATED_AT: now,
            FIELD_UPDATED_AT: now,
        }
        try:
            created = await self.docstore.insert(self.collection, document)
        except DocumentConflictError as exc:
            raise StorageError(
                f"A credential record for user={fields[FIELD_USER_ID]} "
                f"provider={fields[FIELD_PROVIDER]} already exists",
                conflict=True,
            ) from exc
        except DocumentStoreError as exc:
            raise StorageError(f"Credential create failed: {exc}") from exc

        record = CredentialRecord.from_document(created)
        logger.info(
            "Credential record created: id=%s user=%s provider=%s",
            record.id,
            record.user_id,
            record.provider,
        )
        return record

    async def update(self, record_id: str, patch: Mapping[str, str]) -> CredentialRecord:
        """Write *patch* onto the record and refresh ``updatedAt``.

        Only the supplied fields are written; immutable fields are dropped.
        Callers apply ``merge_patch`` first to keep preserve-on-empty fields.
        """
        fields = {key: value for key, value in patch.items() if key not in IMMUTABLE_FIELDS}
        fields[FIELD_UPDATED_AT] = format_timestamp(self._clock())
        try:
            updated = await self.docstore.patch(self.collection, record_id, fields)
        except DocumentConflictError as exc:
            raise StorageError(
                f"Credential update for {record_id} violates a unique constraint",
                conflict=True,
            ) from exc
        except DocumentStoreError as exc:
            raise StorageError(f"Credential update failed: {exc}") from exc

        record = CredentialRecord.from_document(updated)
        logger.info(
            "Credential record updated: id=%s user=%s provider=%s",
            record.id,
            record.user_id,
            record.provider,
        )
        return record
