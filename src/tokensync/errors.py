"""Error taxonomy for token exchange and credential reconciliation.

- ``ValidationError``: missing or malformed caller input. Not retried.
- ``ProviderError``: the OAuth provider answered non-2xx or could not be
  reached. Carries the provider status and error code. Not retried.
- ``StorageError``: a document store read or write failed, including
  uniqueness conflicts (``conflict=True``). Not retried.
- ``DecodingError``: an inbound payload could not be parsed. Non-fatal; the
  ingress normalizer degrades it to an empty payload.

Messages are safe to log and to return to callers: they never include token
values or client secrets.
"""

from __future__ import annotations


class TokenSyncError(Exception):
    """Base class for all tokensync domain errors."""


class ValidationError(TokenSyncError):
    """Raised when a payload is missing required fields or carries malformed values."""

    def __init__(self, message: str, *, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = list(missing or [])


class DecodingError(TokenSyncError):
    """Raised when a payload string is not valid JSON."""


class ProviderError(TokenSyncError):
    """Raised when an OAuth provider call fails.

    Attributes
    ----------
    status_code:
        HTTP status returned by the provider, or ``None`` for network failures.
    error_code:
        The provider's ``error`` field when present (e.g. ``"invalid_grant"``),
        otherwise a local classification such as ``"network_error"``.
    description:
        The provider's ``error_description`` when present.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        description: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.description = description


class StorageError(TokenSyncError):
    """Raised when the credential store cannot complete a read or write."""

    def __init__(self, message: str, *, conflict: bool = False) -> None:
        super().__init__(message)
        self.conflict = conflict
