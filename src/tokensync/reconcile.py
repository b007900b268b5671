"""Token reconciliation engine.

Takes one canonical credential payload and performs an idempotent
create-or-update of the user's stored credential:

    validating -> resolving -> creating | updating -> done
    validating -> rejected            (ValidationError)
    resolving/creating/updating -> failed   (StorageError)

Identity resolution and linking run during ``resolving`` and are
best-effort: they never fail the call and never roll back, nor are they
rolled back by, the credential write.

The engine keeps no per-call state on the instance, so one engine can serve
concurrent calls.  Concurrent creates for the same ``(userId, provider)`` are
left to the store's uniqueness constraint; the losing call gets a
``StorageError(conflict=True)`` and is not retried as an update.

``upsert_credential()`` is the call boundary: it normalizes raw input, runs
the engine and converts every outcome into an ``UpsertResponse``.  No
exception crosses it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from tokensync.credential_store import (
    FIELD_ACCESS_TOKEN,
    FIELD_EXPIRES_AT,
    FIELD_PROVIDER,
    FIELD_REFRESH_TOKEN,
    FIELD_SUBJECT_ID,
    FIELD_USER_ID,
    CredentialRecord,
    CredentialStoreAdapter,
    format_timestamp,
    merge_patch,
    parse_expiry,
)
from tokensync.errors import StorageError, TokenSyncError, ValidationError
from tokensync.identity import ExistingIdentity, IdentityResolver
from tokensync.ingress import CredentialPayload, normalize

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Missing required fields: userId, provider, and accessToken are required"
CREATED_MESSAGE = "Token created successfully"
UPDATED_MESSAGE = "Token updated successfully"


class ReconcileState(StrEnum):
    """States of one reconciliation run."""

    validating = "validating"
    resolving = "resolving"
    creating = "creating"
    updating = "updating"
    done = "done"
    rejected = "rejected"
    failed = "failed"


class ResultStatus(StrEnum):
    """Caller-facing status classification of an upsert."""

    ok = "ok"
    bad_request = "bad_request"
    internal_error = "internal_error"


_HTTP_STATUS = {
    ResultStatus.ok: 200,
    ResultStatus.bad_request: 400,
    ResultStatus.internal_error: 500,
}


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful reconciliation."""

    record: CredentialRecord
    created: bool
    identity: ExistingIdentity | None = None
    identity_linked: bool = False
    states: tuple[ReconcileState, ...] = ()

    @property
    def record_id(self) -> str:
        return self.record.id


class UpsertResponse(BaseModel):
    """Structured result returned across the upsert call boundary."""

    success: bool
    message: str
    record_id: str | None = Field(default=None, serialization_alias="recordId")
    created: bool | None = None
    status: ResultStatus = ResultStatus.ok

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.status]

    def to_wire(self) -> dict[str, Any]:
        """The JSON body for callers: ``success``, ``message`` and, on success, ``recordId``."""
        return self.model_dump(by_alias=True, exclude_none=True, exclude={"status"})


class TokenReconciliationEngine:
    """Create-or-update a credential record from a canonical payload.

    Parameters
    ----------
    store:
        The credential store adapter (authoritative record).
    resolver:
        The identity resolver (advisory).  Defaults to a resolver without a
        directory, which resolves nothing and links nothing.
    """

    def __init__(
        self,
        store: CredentialStoreAdapter,
        resolver: IdentityResolver | None = None,
    ) -> None:
        self.store = store
        self.resolver = resolver or IdentityResolver()

    async def reconcile(self, payload: CredentialPayload | Any) -> ReconcileResult:
        """Run one reconciliation.

        *payload* may be a ``CredentialPayload`` or anything ``normalize()``
        accepts.

        Raises
        ------
        ValidationError
            Required fields missing or ``expiryDate`` malformed.  Nothing is
            written.
        StorageError
            The credential store lookup or write failed.
        """
        if not isinstance(payload, CredentialPayload):
            payload = normalize(payload)

        states = [ReconcileState.validating]

        missing = payload.missing_required()
        if missing:
            states.append(ReconcileState.rejected)
            logger.info("Rejected credential payload: missing %s", ", ".join(missing))
            raise ValidationError(MISSING_FIELDS_MESSAGE, missing=missing)

        try:
            expiry = parse_expiry(payload.expiry_date)
        except ValueError as exc:
            states.append(ReconcileState.rejected)
            logger.info("Rejected credential payload: malformed expiryDate (%s)", exc)
            raise ValidationError(
                "expiryDate must be an ISO-8601 timestamp or an epoch value"
            ) from exc
        expires_at = format_timestamp(expiry) if expiry is not None else None

        user_id = str(payload.user_id)
        provider = str(payload.provider)

        states.append(ReconcileState.resolving)
        identity = await self.resolver.resolve(user_id, provider, payload.provider_subject_id)
        identity_linked = await self._link_identity(payload, identity, expires_at)

        incoming = {
            FIELD_USER_ID: user_id,
            FIELD_PROVIDER: provider,
            FIELD_ACCESS_TOKEN: payload.access_token,
            FIELD_REFRESH_TOKEN: payload.refresh_token,
            FIELD_EXPIRES_AT: expires_at,
            FIELD_SUBJECT_ID: payload.provider_subject_id,
        }

        try:
            existing = await self.store.find(user_id, provider)
            if existing is None:
                states.append(ReconcileState.creating)
                record = await self.store.create(incoming)
                created = True
            else:
                states.append(ReconcileState.updating)
                record = await self.store.update(existing.id, merge_patch(existing, incoming))
                created = False
        except StorageError:
            states.append(ReconcileState.failed)
            raise

        states.append(ReconcileState.done)
        logger.info(
            "Credential reconciled: user=%s provider=%s record=%s created=%s",
            user_id,
            provider,
            record.id,
            created,
        )
        return ReconcileResult(
            record=record,
            created=created,
            identity=identity,
            identity_linked=identity_linked,
            states=tuple(states),
        )

    async def _link_identity(
        self,
        payload: CredentialPayload,
        identity: ExistingIdentity | None,
        expires_at: str | None,
    ) -> bool:
        subject_id = payload.provider_subject_id
        if not subject_id:
            return False
        # The subject already belongs to another user: do not add a second link.
        if identity is not None and identity.user_id != payload.user_id:
            return False
        return await self.resolver.link(
            str(payload.user_id),
            str(payload.provider),
            subject_id,
            access_token=str(payload.access_token),
            refresh_token=payload.refresh_token,
            expires_at=expires_at,
            email=payload.email,
        )


async def upsert_credential(engine: TokenReconciliationEngine, raw: Any) -> UpsertResponse:
    """Normalize *raw*, reconcile it, and return a structured response.

    Never raises.
    """
    try:
        result = await engine.reconcile(normalize(raw))
    except ValidationError as exc:
        return UpsertResponse(
            success=False,
            message=str(exc),
            status=ResultStatus.bad_request,
        )
    except TokenSyncError as exc:
        logger.error("Credential upsert failed: %s", exc)
        return UpsertResponse(
            success=False,
            message=f"Internal server error: {exc}",
            status=ResultStatus.internal_error,
        )
    except Exception as exc:
        logger.exception("Unexpected error during credential upsert")
        return UpsertResponse(
            success=False,
            message=f"Internal server error: {exc}",
            status=ResultStatus.internal_error,
        )

    return UpsertResponse(
        success=True,
        message=CREATED_MESSAGE if result.created else UPDATED_MESSAGE,
        record_id=result.record_id,
        created=result.created,
        status=ResultStatus.ok,
    )
