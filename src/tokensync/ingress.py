"""Ingress normalization for inbound credential payloads.

Callers hand us the same logical payload in many shapes: an already-decoded
mapping, a JSON string, a JSON string wrapped in another JSON string, a JSON
string inside an envelope ``data`` field, or a whole transport envelope whose
``body``/``payload``/``rawBody``/``data`` fields may each hold the payload.
``normalize()`` collapses all of them into one ``CredentialPayload``.

Normalization never raises.  Anything that cannot be decoded becomes an empty
payload, which the reconciliation engine then rejects as missing fields.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tokensync.errors import DecodingError

logger = logging.getLogger(__name__)

# At most two string -> object decoding passes per payload.
MAX_DECODE_DEPTH = 2

REQUIRED_FIELDS = ("userId", "provider", "accessToken")

# Envelope fields, in precedence order within each tier.
_STRUCTURED_FIELDS = ("body", "payload")
_RAW_STRING_FIELDS = ("body", "payload", "rawBody")
_ALTERNATE_FIELD = "data"
_ENVELOPE_FIELDS = frozenset({*_STRUCTURED_FIELDS, *_RAW_STRING_FIELDS, _ALTERNATE_FIELD})

_PAYLOAD_KEYS = frozenset(
    {
        "userId",
        "user_id",
        "provider",
        "accessToken",
        "access_token",
        "refreshToken",
        "refresh_token",
        "expiryDate",
        "expiry_date",
        "providerSubjectId",
        "provider_subject_id",
        "providerUid",
        "email",
    }
)


# ---------------------------------------------------------------------------
# Canonical payload
# ---------------------------------------------------------------------------


class CredentialPayload(BaseModel):
    """The one canonical shape the reconciliation engine accepts.

    Every field is optional here; presence of the required ones is checked by
    the engine so that a malformed input degrades into a validation error
    instead of an exception at the edge.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    user_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("userId", "user_id"),
        serialization_alias="userId",
    )
    provider: str | None = None
    access_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("accessToken", "access_token"),
        serialization_alias="accessToken",
    )
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
        serialization_alias="refreshToken",
    )
    expiry_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("expiryDate", "expiry_date"),
        serialization_alias="expiryDate",
    )
    provider_subject_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("providerSubjectId", "provider_subject_id", "providerUid"),
        serialization_alias="providerSubjectId",
    )
    email: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        # Epoch expiries arrive as numbers; everything else must already be text.
        if isinstance(value, bool):
            return None
        if isinstance(value, int | float):
            return str(value)
        if isinstance(value, str):
            return value.strip() or None
        return None

    def missing_required(self) -> list[str]:
        """Return the wire names of required fields that are absent."""
        present = {
            "userId": self.user_id,
            "provider": self.provider,
            "accessToken": self.access_token,
        }
        return [name for name in REQUIRED_FIELDS if not present[name]]

    def __repr__(self) -> str:
        return (
            f"CredentialPayload("
            f"user_id={self.user_id!r}, "
            f"provider={self.provider!r}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expiry_date={self.expiry_date!r}, "
            f"provider_subject_id={self.provider_subject_id!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _decode_json(text: str | bytes) -> Any:
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError) as exc:
        # ValueError covers JSONDecodeError and the int-digit limit
        raise DecodingError(f"Payload is not valid JSON: {exc}") from exc


def _has_payload_keys(value: Mapping[str, Any]) -> bool:
    return any(key in value for key in _PAYLOAD_KEYS)


def decode_payload(source: Any) -> dict[str, Any]:
    """Decode *source* into a mapping, spending at most two decoding passes.

    A mapping whose only useful content is a ``data`` field (the envelope
    convention of serverless function runtimes) is unwrapped once.  If the
    nested ``data`` string cannot be decoded, the outer mapping is kept.
    """
    value = source
    passes = 0

    while isinstance(value, str | bytes):
        if passes >= MAX_DECODE_DEPTH:
            logger.debug("Payload still encoded after %d decoding passes", passes)
            return {}
        try:
            value = _decode_json(value)
        except DecodingError as exc:
            logger.info("Discarding undecodable payload: %s", exc)
            return {}
        passes += 1

    if not isinstance(value, Mapping):
        return {}

    nested = value.get(_ALTERNATE_FIELD)
    if nested is None or _has_payload_keys(value):
        return dict(value)
    if isinstance(nested, Mapping):
        return dict(nested)
    if isinstance(nested, str | bytes) and passes < MAX_DECODE_DEPTH:
        try:
            inner = _decode_json(nested)
        except DecodingError as exc:
            logger.info("Envelope data field is not JSON; keeping outer payload: %s", exc)
            return dict(value)
        if isinstance(inner, Mapping):
            return dict(inner)
    return dict(value)


# ---------------------------------------------------------------------------
# Envelope source selection
# ---------------------------------------------------------------------------


def is_envelope(value: Any) -> bool:
    """True when *value* looks like a transport envelope rather than a payload."""
    return (
        isinstance(value, Mapping)
        and not _has_payload_keys(value)
        and any(key in value for key in _ENVELOPE_FIELDS)
    )


def select_source(envelope: Mapping[str, Any]) -> Any:
    """Pick the payload source from a transport envelope.

    Precedence: structured object field > raw string field > alternate
    ``data`` field.  The first non-empty source wins; sources are never
    merged.  Returns an empty mapping when every source is empty.
    """
    for key in _STRUCTURED_FIELDS:
        candidate = envelope.get(key)
        if isinstance(candidate, Mapping) and candidate:
            logger.debug("Using structured envelope field %r as payload", key)
            return candidate

    for key in _RAW_STRING_FIELDS:
        candidate = envelope.get(key)
        if isinstance(candidate, bytes):
            candidate = candidate.decode("utf-8", errors="replace")
        if isinstance(candidate, str) and candidate.strip():
            logger.debug("Using raw string envelope field %r as payload", key)
            return candidate

    candidate = envelope.get(_ALTERNATE_FIELD)
    if candidate:
        logger.debug("Using alternate envelope field %r as payload", _ALTERNATE_FIELD)
        return candidate

    return {}


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def normalize(raw: Any) -> CredentialPayload:
    """Turn any supported inbound encoding into a ``CredentialPayload``.

    Never raises: undecodable or unrecognised input yields an empty payload.
    """
    if isinstance(raw, CredentialPayload):
        return raw

    source = select_source(raw) if is_envelope(raw) else raw
    decoded = decode_payload(source)

    try:
        return CredentialPayload.model_validate(decoded)
    except PydanticValidationError as exc:
        logger.warning("Payload could not be normalized: %d field error(s)", exc.error_count())
        return CredentialPayload()
