"""OAuth provider token client.

Performs the provider-facing network calls of the authorization-code flow:

- authorization code -> token set (``exchange_authorization_code``)
- refresh token -> refreshed token set (``refresh_access_token``)
- access token -> subject profile (``fetch_subject_profile``)

The client is stateless: each call opens its own ``httpx.AsyncClient`` with
the configured timeout, makes exactly one request, and never retries.  Any
non-2xx response, transport failure, or unusable body surfaces as a
``ProviderError`` carrying the provider's status and error code.  Expiry
arithmetic (``now + expires_in``) belongs to the caller.

Secret material (client_secret, tokens) is never logged.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, ConfigDict

from tokensync.config import ProviderConfig
from tokensync.errors import ProviderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class TokenSet(BaseModel):
    """Tokens returned by the provider's token endpoint."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in_seconds: int = 0
    scope: str | None = None
    token_type: str | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> TokenSet:
        """Build a TokenSet from a token endpoint JSON body."""
        try:
            expires_in = int(data.get("expires_in") or 0)
        except (TypeError, ValueError):
            expires_in = 0
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            id_token=data.get("id_token") or None,
            expires_in_seconds=max(expires_in, 0),
            scope=data.get("scope") or None,
            token_type=data.get("token_type") or None,
        )

    def __repr__(self) -> str:
        return (
            f"TokenSet("
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"id_token={'<REDACTED>' if self.id_token else None}, "
            f"expires_in_seconds={self.expires_in_seconds!r}, "
            f"scope={self.scope!r})"
        )

    __str__ = __repr__


class SubjectProfile(BaseModel):
    """Identity claims from the provider's user-info endpoint."""

    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str | None = None
    display_name: str | None = None


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _provider_error_from_response(response: httpx.Response, operation: str) -> ProviderError:
    """Map a non-2xx provider response to a ProviderError.

    The raw body is not logged; only the status and the provider's error code.
    """
    error_code: str | None = None
    description: str | None = None
    try:
        body = response.json()
        if isinstance(body, dict):
            error = body.get("error")
            # Some endpoints nest the error object ({"error": {"status": ..., "message": ...}})
            if isinstance(error, dict):
                error_code = error.get("status") or error.get("code")
                description = error.get("message")
            else:
                error_code = error
                description = body.get("error_description")
    except (json.JSONDecodeError, ValueError):
        pass

    logger.warning(
        "Provider %s failed: HTTP %d error=%s",
        operation,
        response.status_code,
        error_code,
    )
    return ProviderError(
        f"Provider {operation} failed with HTTP {response.status_code}"
        + (f" ({error_code})" if error_code else ""),
        status_code=response.status_code,
        error_code=str(error_code) if error_code is not None else None,
        description=description,
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ProviderTokenClient:
    """Async client for one OAuth provider's token and user-info endpoints.

    Parameters
    ----------
    config:
        Endpoint URLs and request timeout.  The client credentials in the
        config are *not* used implicitly; callers pass them per call.
    transport:
        Optional httpx transport, used by tests to stub the provider.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    # ------------------------------------------------------------------
    # Authorization URL
    # ------------------------------------------------------------------

    def build_authorization_url(
        self,
        *,
        client_id: str,
        redirect_uri: str,
        state: str,
        scopes: str | None = None,
    ) -> str:
        """Build the consent URL for the authorization-code flow.

        ``access_type=offline`` plus ``prompt=consent`` makes the provider
        issue a refresh token even when the user granted access before.
        """
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scopes or self.config.scopes,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{self.config.auth_url}?{urlencode(params)}"

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    async def _post_token(self, payload: dict[str, str], operation: str) -> TokenSet:
        try:
            async with self._client() as client:
                response = await client.post(self.config.token_url, data=payload)
        except httpx.RequestError as exc:
            logger.warning("Provider %s: network error: %s", operation, exc)
            raise ProviderError(
                f"Network error during {operation}: {exc}",
                error_code="network_error",
            ) from exc

        if not response.is_success:
            raise _provider_error_from_response(response, operation)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise ProviderError(
                f"Invalid JSON in {operation} response",
                status_code=response.status_code,
                error_code="invalid_response",
            ) from exc

        if not isinstance(data, dict) or not data.get("access_token"):
            raise ProviderError(
                f"{operation} response did not include an access token",
                status_code=response.status_code,
                error_code="invalid_response",
            )

        token_set = TokenSet.from_response(data)
        logger.info(
            "Provider %s succeeded (expires_in=%ds, refresh_token=%s)",
            operation,
            token_set.expires_in_seconds,
            "present" if token_set.refresh_token else "absent",
        )
        return token_set

    async def exchange_authorization_code(
        self,
        code: str,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
    ) -> TokenSet:
        """Exchange an authorization code for a token set.

        Raises
        ------
        ProviderError
            If the exchange fails for any reason (HTTP error, invalid code,
            network error, unusable response).
        """
        return await self._post_token(
            {
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            "authorization code exchange",
        )

    async def refresh_access_token(
        self,
        refresh_token: str,
        *,
        client_id: str,
        client_secret: str,
    ) -> TokenSet:
        """Exchange a refresh token for a fresh access token.

        Providers usually omit ``refresh_token`` from the response unless they
        rotate it, so ``TokenSet.refresh_token`` is often ``None`` here.
        """
        return await self._post_token(
            {
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
            "token refresh",
        )

    # ------------------------------------------------------------------
    # User-info endpoint
    # ------------------------------------------------------------------

    async def fetch_subject_profile(self, access_token: str) -> SubjectProfile:
        """Fetch the provider subject id, email and display name."""
        operation = "user-info lookup"
        try:
            async with self._client() as client:
                response = await client.get(
                    self.config.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.RequestError as exc:
            logger.warning("Provider %s: network error: %s", operation, exc)
            raise ProviderError(
                f"Network error during {operation}: {exc}",
                error_code="network_error",
            ) from exc

        if not response.is_success:
            raise _provider_error_from_response(response, operation)

        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as exc:
            raise ProviderError(
                f"Invalid JSON in {operation} response",
                status_code=response.status_code,
                error_code="invalid_response",
            ) from exc

        subject_id = data.get("sub") if isinstance(data, dict) else None
        if not subject_id:
            raise ProviderError(
                f"{operation} response did not include a subject id",
                status_code=response.status_code,
                error_code="invalid_response",
            )

        return SubjectProfile(
            subject_id=str(subject_id),
            email=data.get("email") or None,
            display_name=data.get("name") or None,
        )
