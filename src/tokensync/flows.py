"""OAuth flows that feed the reconciliation engine.

``complete_authorization``
    The authorization-code callback: exchange the code, look up the subject
    profile, compute the absolute expiry and reconcile the credential.

``refresh``
    The refresh flow: trade the (given or stored) refresh token for a new
    access token and reconcile again.  A refresh token rotated by the
    provider replaces the stored one; an absent one leaves it untouched.

Flows run their calls sequentially and do not retry; provider failures
propagate as ``ProviderError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from tokensync.config import ProviderConfig
from tokensync.credential_store import format_timestamp, utc_now
from tokensync.errors import ValidationError
from tokensync.ingress import CredentialPayload
from tokensync.provider import ProviderTokenClient, TokenSet
from tokensync.reconcile import ReconcileResult, TokenReconciliationEngine

logger = logging.getLogger(__name__)


class OAuthFlows:
    """Authorization-code and refresh flows for one configured provider."""

    def __init__(
        self,
        config: ProviderConfig,
        client: ProviderTokenClient,
        engine: TokenReconciliationEngine,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.client = client
        self.engine = engine
        self._clock = clock

    @property
    def provider(self) -> str:
        return self.config.name

    def authorization_url(self, state: str) -> str:
        return self.client.build_authorization_url(
            client_id=self.config.client_id,
            redirect_uri=self.config.redirect_uri,
            state=state,
            scopes=self.config.scopes,
        )

    def _expiry_for(self, token_set: TokenSet) -> str | None:
        if token_set.expires_in_seconds <= 0:
            return None
        return format_timestamp(self._clock() + timedelta(seconds=token_set.expires_in_seconds))

    async def complete_authorization(self, code: str, *, user_id: str) -> ReconcileResult:
        """Exchange *code* and store the resulting credential for *user_id*.

        Raises
        ------
        ValidationError
            If *code* or *user_id* is empty.
        ProviderError
            If the code exchange or the profile lookup fails.
        StorageError
            If the credential cannot be written.
        """
        if not code or not user_id:
            raise ValidationError("An authorization code and a user id are required")

        token_set = await self.client.exchange_authorization_code(
            code,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
            redirect_uri=self.config.redirect_uri,
        )
        if not token_set.refresh_token:
            logger.warning(
                "Provider %s returned no refresh token for user=%s; "
                "any stored refresh token is kept",
                self.provider,
                user_id,
            )

        profile = await self.client.fetch_subject_profile(token_set.access_token)

        payload = CredentialPayload(
            user_id=user_id,
            provider=self.provider,
            access_token=token_set.access_token,
            refresh_token=token_set.refresh_token,
            expiry_date=self._expiry_for(token_set),
            provider_subject_id=profile.subject_id,
            email=profile.email,
        )
        return await self.engine.reconcile(payload)

    async def refresh(self, *, user_id: str, refresh_token: str | None = None) -> ReconcileResult:
        """Refresh the access token for *user_id* and store it.

        When *refresh_token* is not given, the one on the stored credential
        record is used.

        Raises
        ------
        ValidationError
            If no refresh token is given and none is stored.
        ProviderError
            If the provider rejects the refresh.
        StorageError
            If the stored record cannot be read or written.
        """
        if not user_id:
            raise ValidationError("A user id is required to refresh a token", missing=["userId"])

        token = refresh_token
        if not token:
            record = await self.engine.store.find(user_id, self.provider)
            token = record.refresh_token if record is not None else None
        if not token:
            raise ValidationError(
                f"No refresh token available for user {user_id} and provider {self.provider}",
                missing=["refreshToken"],
            )

        token_set = await self.client.refresh_access_token(
            token,
            client_id=self.config.client_id,
            client_secret=self.config.client_secret,
        )

        payload = CredentialPayload(
            user_id=user_id,
            provider=self.provider,
            access_token=token_set.access_token,
            refresh_token=token_set.refresh_token,
            expiry_date=self._expiry_for(token_set),
        )
        return await self.engine.reconcile(payload)
