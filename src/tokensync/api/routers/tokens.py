"""Direct credential upsert endpoint.

``POST /api/tokens`` accepts the token-update payload in whatever encoding
the caller uses (JSON object, JSON string, doubly-encoded JSON, a ``data``
envelope) and runs it through the ingress normalizer and the reconciliation
engine.  The response is always the structured upsert result:

- 200 ``{"success": true, "message": ..., "recordId": ..., "created": ...}``
- 400 ``{"success": false, "message": ...}`` for missing/malformed fields
- 500 ``{"success": false, "message": ...}`` for storage failures
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from tokensync.api.deps import get_services
from tokensync.reconcile import upsert_credential
from tokensync.services import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["tokens"])


@router.post("/tokens")
async def upsert_tokens(
    request: Request,
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Create or update the caller's stored credential."""
    raw_body = await request.body()
    result = await upsert_credential(services.engine, raw_body if raw_body else {})
    return JSONResponse(status_code=result.http_status, content=result.to_wire())
