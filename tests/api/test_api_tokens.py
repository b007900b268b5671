"""Tests for the credential upsert endpoint and app wiring.

Verifies the API contract for:
- POST /api/tokens: every supported body encoding, 200/400/500 mapping
- GET /api/health
- 503 when the app has no services attached
"""

from __future__ import annotations

import json

import httpx
import pytest

from tokensync.api.app import create_app
from tokensync.config import DocumentStoreConfig, TokenSyncConfig
from tokensync.docstore import DocumentStoreError
from tokensync.reconcile import CREATED_MESSAGE, MISSING_FIELDS_MESSAGE, UPDATED_MESSAGE
from tokensync.services import Services

pytestmark = pytest.mark.unit

PAYLOAD = {
    "userId": "u1",
    "provider": "google",
    "accessToken": "a1",
    "refreshToken": "r1",
    "expiryDate": "2025-01-01T00:00:00Z",
}


def _config() -> TokenSyncConfig:
    return TokenSyncConfig(
        store=DocumentStoreConfig(backend="http", tokens_collection_id="tokens"),
    )


@pytest.fixture
def app(engine):
    return create_app(services=Services(engine=engine, config=_config()))


async def _post(app, content: str | bytes) -> httpx.Response:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        return await client.post(
            "/api/tokens", content=content, headers={"Content-Type": "application/json"}
        )


class TestUpsertEndpoint:
    async def test_create_then_update(self, app, docstore):
        created = await _post(app, json.dumps(PAYLOAD))

        assert created.status_code == 200
        body = created.json()
        assert body["success"] is True
        assert body["created"] is True
        assert body["message"] == CREATED_MESSAGE
        record_id = body["recordId"]

        updated = await _post(
            app, json.dumps({"userId": "u1", "provider": "google", "accessToken": "a2"})
        )

        assert updated.status_code == 200
        assert updated.json() == {
            "success": True,
            "message": UPDATED_MESSAGE,
            "recordId": record_id,
            "created": False,
        }
        [stored] = docstore.documents("tokens")
        assert stored["accessToken"] == "a2"
        assert stored["refreshToken"] == "r1"

    @pytest.mark.parametrize(
        "content",
        [
            json.dumps(PAYLOAD),
            json.dumps(json.dumps(PAYLOAD)),
            json.dumps({"data": json.dumps(PAYLOAD)}),
        ],
        ids=["plain", "doubly-encoded", "data-envelope"],
    )
    async def test_accepts_every_encoding(self, app, docstore, content):
        response = await _post(app, content)

        assert response.status_code == 200
        assert response.json()["created"] is True
        [stored] = docstore.documents("tokens")
        assert stored["accessToken"] == "a1"

    @pytest.mark.parametrize(
        "content",
        ['{"userId": "u1"}', "{not json", "", "[]"],
        ids=["missing-fields", "malformed", "empty", "array"],
    )
    async def test_rejects_with_400(self, app, docstore, content):
        response = await _post(app, content)

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": MISSING_FIELDS_MESSAGE}
        assert docstore.documents("tokens") == []

    async def test_storage_failure_is_500(self, app, docstore):
        docstore.fail_next("insert", DocumentStoreError("write timeout"))

        response = await _post(app, json.dumps(PAYLOAD))

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["message"].startswith("Internal server error: ")

    async def test_response_never_echoes_tokens(self, app):
        response = await _post(app, json.dumps(PAYLOAD))
        assert set(response.json()) == {"success", "message", "recordId", "created"}


class TestAppWiring:
    async def test_health(self, app):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
        ) as client:
            response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "oauth": None}

    async def test_no_services_returns_503(self):
        app = create_app()
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
        ) as client:
            response = await client.post("/api/tokens", content=json.dumps(PAYLOAD))

        assert response.status_code == 503
