"""OAuth authorization-code and refresh endpoints.

The flow:
  1. GET /api/oauth/{provider}/start?user_id=...
     - Generates a cryptographically random state token (CSRF protection).
     - Binds the state to the user id in an in-memory store (TTL 10 min).
     - Redirects to the provider consent URL (or returns it as JSON when
       ``redirect=false``).

  2. GET /api/oauth/{provider}/callback
     - Validates and consumes the state, recovering the bound user id.
     - Exchanges the code, fetches the subject profile and reconciles the
       credential record (see ``tokensync.flows``).
     - Redirects to OAUTH_DASHBOARD_URL on success when configured, or
       returns a JSON success payload.

  3. POST /api/oauth/{provider}/refresh
     - Refreshes the access token with the given or stored refresh token and
       reconciles the credential record.

Security notes:
  - State tokens are one-time-use and expire after 10 minutes.
  - Client secrets and token values are never echoed back in responses.
  - Provider error codes are mapped to fixed messages before reaching users.
"""

from __future__ import annotations

import logging
import secrets
import time

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, RedirectResponse, Response

from tokensync.api.deps import get_services, require_flows
from tokensync.api.models.oauth import (
    OAuthCallbackError,
    OAuthCallbackSuccess,
    OAuthStartResponse,
    RefreshRequest,
    RefreshResponse,
)
from tokensync.errors import ProviderError
from tokensync.reconcile import CREATED_MESSAGE, UPDATED_MESSAGE
from tokensync.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])

# ---------------------------------------------------------------------------
# In-memory CSRF state store
# State entries expire after 10 minutes.
# ---------------------------------------------------------------------------

_STATE_TTL_SECONDS = 600  # 10 minutes

# Maps state token → (provider, user id, expiry timestamp (monotonic))
# NOTE: This store is process-local. Do not run multiple worker processes
# (e.g. uvicorn --workers N); state validation fails across workers.
_state_store: dict[str, tuple[str, str, float]] = {}


def _generate_state() -> str:
    """Generate a cryptographically random CSRF state token."""
    return secrets.token_urlsafe(32)


def _store_state(state: str, provider: str, user_id: str) -> None:
    """Bind a state token to a provider and user, with an expiry timestamp."""
    _state_store[state] = (provider, user_id, time.monotonic() + _STATE_TTL_SECONDS)
    _evict_expired_states()


def _validate_and_consume_state(state: str, provider: str) -> str | None:
    """Validate a state token and consume it (one-time-use).

    Returns the bound user id if the state was valid, unexpired and issued
    for *provider*; ``None`` otherwise.
    """
    _evict_expired_states()
    entry = _state_store.pop(state, None)
    if entry is None:
        return None
    bound_provider, user_id, expiry = entry
    if time.monotonic() >= expiry or bound_provider != provider:
        return None
    return user_id


def _evict_expired_states() -> None:
    """Remove all expired state tokens from the store."""
    now = time.monotonic()
    expired = [k for k, (_, _, exp) in _state_store.items() if now >= exp]
    for k in expired:
        del _state_store[k]


def _clear_state_store() -> None:
    """Clear all state entries. Used in tests."""
    _state_store.clear()


def _dashboard_url(services: Services) -> str | None:
    return services.config.dashboard_url if services.config is not None else None


# ---------------------------------------------------------------------------
# Start endpoint
# ---------------------------------------------------------------------------


@router.get(
    "/{provider}/start",
    responses={
        200: {"model": OAuthStartResponse, "description": "JSON payload (redirect=false)"},
        302: {"description": "Redirect to the provider authorization URL"},
    },
)
async def oauth_start(
    provider: str,
    user_id: str = Query(min_length=1, description="Application user to bind the tokens to."),
    redirect: bool = Query(
        default=True,
        description="If true (default), redirect to the provider authorization URL. "
        "If false, return the URL as JSON for programmatic callers.",
    ),
    services: Services = Depends(get_services),
) -> Response:
    """Begin the authorization-code flow for *user_id*."""
    flows = require_flows(services, provider)

    state = _generate_state()
    _store_state(state, flows.provider, user_id)
    authorization_url = flows.authorization_url(state)

    logger.info(
        "OAuth flow started (provider=%s, user=%s, state=%s...)",
        flows.provider,
        user_id,
        state[:8],
    )

    if redirect:
        return RedirectResponse(url=authorization_url, status_code=302)

    return JSONResponse(
        content=OAuthStartResponse(
            authorization_url=authorization_url,
            state=state,
        ).model_dump()
    )


# ---------------------------------------------------------------------------
# Callback endpoint
# ---------------------------------------------------------------------------


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str | None = Query(default=None, description="Authorization code from the provider."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from the provider."),
    error_description: str | None = Query(
        default=None, description="Human-readable error from the provider."
    ),
    services: Services = Depends(get_services),
) -> Response:
    """Handle the provider callback after user authorization.

    On success the credential record is created or updated and either a
    ``OAuthCallbackSuccess`` JSON payload or a dashboard redirect is returned.
    On failure an ``OAuthCallbackError`` is returned; it never contains
    client secrets or raw provider error strings.
    """
    flows = require_flows(services, provider)
    dashboard_url = _dashboard_url(services)

    # --- Handle provider-side errors (e.g. user denied consent) ---
    if error:
        logger.warning("OAuth provider error: %s", error)
        if error_description:
            logger.debug("OAuth provider error_description: %s", error_description)
        # Consume the state token if provided to prevent reuse after a denied/cancelled flow.
        if state:
            _validate_and_consume_state(state, flows.provider)
        error_payload = OAuthCallbackError(
            error_code="provider_error",
            message=_sanitize_provider_error(error),
            provider=flows.provider,
        )
        if dashboard_url:
            return RedirectResponse(
                url=f"{dashboard_url}?oauth_error={error_payload.error_code}",
                status_code=302,
            )
        return JSONResponse(status_code=400, content=error_payload.model_dump())

    # --- Validate required parameters ---
    if not code:
        error_payload = OAuthCallbackError(
            error_code="missing_code",
            message="Authorization code is missing from the callback.",
            provider=flows.provider,
        )
        return JSONResponse(status_code=400, content=error_payload.model_dump())

    if not state:
        error_payload = OAuthCallbackError(
            error_code="missing_state",
            message="State parameter is missing from the callback. Possible CSRF attempt.",
            provider=flows.provider,
        )
        return JSONResponse(status_code=400, content=error_payload.model_dump())

    # --- Validate CSRF state ---
    user_id = _validate_and_consume_state(state, flows.provider)
    if user_id is None:
        logger.warning("OAuth callback received invalid or expired state token")
        error_payload = OAuthCallbackError(
            error_code="invalid_state",
            message="State parameter is invalid or expired. Please restart the OAuth flow.",
            provider=flows.provider,
        )
        return JSONResponse(status_code=400, content=error_payload.model_dump())

    # --- Exchange code and reconcile ---
    try:
        result = await flows.complete_authorization(code, user_id=user_id)
    except ProviderError as exc:
        logger.warning(
            "OAuth token exchange failed: status=%s code=%s", exc.status_code, exc.error_code
        )
        error_payload = OAuthCallbackError(
            error_code="token_exchange_failed",
            message="Failed to exchange authorization code for tokens. "
            "The code may have expired or already been used. Please restart the OAuth flow.",
            provider=flows.provider,
        )
        return JSONResponse(status_code=400, content=error_payload.model_dump())

    logger.info(
        "OAuth flow COMPLETE (provider=%s, user=%s, record=%s, created=%s)",
        flows.provider,
        user_id,
        result.record_id,
        result.created,
    )

    if dashboard_url:
        return RedirectResponse(
            url=f"{dashboard_url}?oauth_success=true",
            status_code=302,
        )

    success_payload = OAuthCallbackSuccess(
        message=CREATED_MESSAGE if result.created else UPDATED_MESSAGE,
        provider=flows.provider,
        record_id=result.record_id,
        created=result.created,
        identity_linked=result.identity_linked,
    )
    return JSONResponse(content=success_payload.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Refresh endpoint
# ---------------------------------------------------------------------------


@router.post("/{provider}/refresh", response_model=RefreshResponse)
async def oauth_refresh(
    provider: str,
    body: RefreshRequest,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Refresh the stored access token for a user.

    ``ValidationError`` (no refresh token available) maps to 400 and
    ``ProviderError`` (refresh rejected) to 502 via the error handlers.
    """
    flows = require_flows(services, provider)
    result = await flows.refresh(user_id=body.user_id, refresh_token=body.refresh_token)

    response = RefreshResponse(
        message=CREATED_MESSAGE if result.created else UPDATED_MESSAGE,
        record_id=result.record_id,
        expires_at=result.record.expires_at or None,
    )
    return JSONResponse(content=response.model_dump(by_alias=True))


# ---------------------------------------------------------------------------
# Error sanitization
# ---------------------------------------------------------------------------

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use the provider's OAuth. "
    "Check your OAuth app configuration.",
    "unsupported_response_type": "Unsupported response type. Please restart the flow.",
    "invalid_scope": "One or more requested OAuth scopes are invalid or not permitted.",
    "server_error": "The provider encountered an internal error. Please try again.",
    "temporarily_unavailable": "The provider is temporarily unavailable. Please try again later.",
}


def _sanitize_provider_error(error: str) -> str:
    """Convert a provider error code into a safe, actionable user message.

    Unknown error codes are replaced with a generic message to avoid
    leaking internal provider state.
    """
    return _KNOWN_PROVIDER_ERRORS.get(
        error,
        "The OAuth authorization failed. Please restart the flow.",
    )
