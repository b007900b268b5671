"""Best-effort identity resolution and linking.

An identity link associates an application user with a provider-assigned
subject id (plus a copy of the provider tokens).  Links are advisory
metadata: the credential record is the authoritative store.  Therefore:

- ``IdentityResolver.resolve()`` degrades to ``None`` when the directory is
  missing or a lookup fails.
- ``IdentityResolver.link()`` logs and swallows every failure.

Neither operation gates the credential write, and the two writes are not
transactional.

``(provider, subject id)`` is a secondary uniqueness signal: when the same
provider subject is already linked under a different user id, resolution
returns that identity so the caller does not create a duplicate link.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from tokensync.docstore import DocumentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExistingIdentity:
    """An identity link found in the directory.

    Attributes
    ----------
    user_id:
        The application user the identity is linked to.  May differ from the
        user being reconciled when the subject was linked elsewhere first.
    provider:
        Provider name (e.g. ``"google"``).
    subject_id:
        Provider-assigned subject id, or ``None`` if the link has none.
    identity_id:
        Directory id of the link, when the directory exposes one.
    email:
        Email recorded on the link, if any.
    """

    user_id: str
    provider: str
    subject_id: str | None = None
    identity_id: str | None = None
    email: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ExistingIdentity:
        return cls(
            user_id=str(data.get("userId") or ""),
            provider=str(data.get("provider") or ""),
            subject_id=data.get("providerUid") or None,
            identity_id=data.get("id") or None,
            email=data.get("email") or None,
        )


class IdentityDirectory(Protocol):
    """The externally-owned user/identity relation."""

    async def get_identities(self, user_id: str) -> list[Mapping[str, Any]]: ...

    async def find_subject(self, provider: str, subject_id: str) -> list[Mapping[str, Any]]: ...

    async def link_identity(
        self,
        user_id: str,
        provider: str,
        subject_id: str,
        token: str,
        refresh_token: str | None = None,
        expiry: str | None = None,
        email: str | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Document-store directory
# ---------------------------------------------------------------------------


class DocumentIdentityDirectory:
    """Identity directory kept in its own document collection.

    Link documents hold ``userId``, ``provider``, ``providerUid``,
    ``providerAccessToken``, ``providerRefreshToken``,
    ``providerAccessTokenExpiry`` and ``email``.  Linking an existing
    ``(userId, provider, providerUid)`` triple updates its tokens and keeps a
    stored refresh token when the new one is empty.
    """

    def __init__(self, docstore: DocumentStore, collection: str) -> None:
        self.docstore = docstore
        self.collection = collection

    async def get_identities(self, user_id: str) -> list[Mapping[str, Any]]:
        return await self.docstore.list_where(self.collection, {"userId": user_id})

    async def find_subject(self, provider: str, subject_id: str) -> list[Mapping[str, Any]]:
        return await self.docstore.list_where(
            self.collection, {"provider": provider, "providerUid": subject_id}
        )

    async def link_identity(
        self,
        user_id: str,
        provider: str,
        subject_id: str,
        token: str,
        refresh_token: str | None = None,
        expiry: str | None = None,
        email: str | None = None,
    ) -> None:
        existing = await self.docstore.list_where(
            self.collection,
            {"userId": user_id, "provider": provider, "providerUid": subject_id},
        )
        if not existing:
            await self.docstore.insert(
                self.collection,
                {
                    "userId": user_id,
                    "provider": provider,
                    "providerUid": subject_id,
                    "providerAccessToken": token,
                    "providerRefreshToken": refresh_token or "",
                    "providerAccessTokenExpiry": expiry or "",
                    "email": email or "",
                },
            )
            return

        identity = existing[0]
        await self.docstore.patch(
            self.collection,
            str(identity["id"]),
            {
                "providerAccessToken": token,
                "providerRefreshToken": refresh_token or identity.get("providerRefreshToken") or "",
                "providerAccessTokenExpiry": expiry
                or identity.get("providerAccessTokenExpiry")
                or "",
                "email": email or identity.get("email") or "",
            },
        )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class IdentityResolver:
    """Resolve and link provider identities without ever failing the caller.

    Parameters
    ----------
    directory:
        The identity directory, or ``None`` when identity linking is not
        configured (every resolve then returns ``None``).
    """

    def __init__(self, directory: IdentityDirectory | None = None) -> None:
        self.directory = directory

    async def resolve(
        self,
        user_id: str,
        provider: str,
        subject_id: str | None = None,
    ) -> ExistingIdentity | None:
        """Return the existing identity for the user/provider(/subject), if any."""
        if self.directory is None:
            return None

        try:
            for entry in await self.directory.get_identities(user_id):
                identity = ExistingIdentity.from_mapping(entry)
                if identity.provider != provider:
                    continue
                if subject_id and identity.subject_id != subject_id:
                    continue
                return identity

            if not subject_id:
                return None

            for entry in await self.directory.find_subject(provider, subject_id):
                identity = ExistingIdentity.from_mapping(entry)
                if identity.user_id != user_id:
                    logger.warning(
                        "Provider subject %s/%s is already linked to user %s; "
                        "not linking it to user %s",
                        provider,
                        subject_id,
                        identity.user_id,
                        user_id,
                    )
                return identity
        except Exception:
            logger.warning(
                "Identity lookup failed for user=%s provider=%s; continuing without it",
                user_id,
                provider,
                exc_info=True,
            )
        return None

    async def link(
        self,
        user_id: str,
        provider: str,
        subject_id: str,
        *,
        access_token: str,
        refresh_token: str | None = None,
        expires_at: str | None = None,
        email: str | None = None,
    ) -> bool:
        """Create or refresh the identity link; ``False`` if it could not be written."""
        if self.directory is None:
            return False

        try:
            await self.directory.link_identity(
                user_id,
                provider,
                subject_id,
                access_token,
                refresh_token=refresh_token,
                expiry=expires_at,
                email=email,
            )
        except Exception:
            logger.warning(
                "Identity link failed for user=%s provider=%s subject=%s; "
                "credential storage continues",
                user_id,
                provider,
                subject_id,
                exc_info=True,
            )
            return False

        logger.info(
            "Identity linked: user=%s provider=%s subject=%s", user_id, provider, subject_id
        )
        return True
