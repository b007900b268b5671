"""FastAPI dependencies for the tokensync API."""

from __future__ import annotations

from fastapi import HTTPException, Request

from tokensync.flows import OAuthFlows
from tokensync.services import Services


def get_services(request: Request) -> Services:
    """Return the ``Services`` attached to the app at startup."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is not initialized.")
    return services


def require_flows(services: Services, provider: str) -> OAuthFlows:
    """Return the OAuth flows for *provider*, or fail with 503/404."""
    if services.flows is None:
        raise HTTPException(
            status_code=503,
            detail=(
                "OAuth app credentials are not configured. "
                "Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET."
            ),
        )
    if services.flows.provider != provider.lower():
        raise HTTPException(status_code=404, detail=f"Unknown OAuth provider: {provider}")
    return services.flows
