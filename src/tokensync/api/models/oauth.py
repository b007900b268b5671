"""Pydantic models for the OAuth endpoints.

Provides request/response models for the start, callback and refresh flows.
Token values never appear in any response model.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OAuthStartResponse(BaseModel):
    """Response from the OAuth start endpoint.

    Returns the authorization URL that the user should visit to grant access.
    """

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    """Successful OAuth callback payload.

    Returned when the authorization code has been exchanged and the
    credential record has been created or updated.
    """

    success: bool = True
    message: str
    provider: str = "google"
    record_id: str = Field(serialization_alias="recordId")
    created: bool
    identity_linked: bool = Field(default=False, serialization_alias="identityLinked")


class OAuthCallbackError(BaseModel):
    """Error payload returned when the OAuth callback fails.

    Error messages are actionable but do not leak client secrets or raw
    provider error details that could aid an attacker.
    """

    success: bool = False
    error_code: str
    message: str
    provider: str = "google"


class RefreshRequest(BaseModel):
    """Body of ``POST /api/oauth/{provider}/refresh``."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(min_length=1, validation_alias=AliasChoices("userId", "user_id"))
    refresh_token: str | None = Field(
        default=None, validation_alias=AliasChoices("refreshToken", "refresh_token")
    )


class RefreshResponse(BaseModel):
    """Result of a refresh: where the new token was stored and until when it is valid."""

    success: bool = True
    message: str
    record_id: str = Field(serialization_alias="recordId")
    expires_at: str | None = Field(default=None, serialization_alias="expiresAt")
