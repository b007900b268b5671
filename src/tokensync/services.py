"""Wiring of configuration into the runtime components.

``build_services(config)`` constructs the document store, credential store
adapter, identity resolver, reconciliation engine and (when OAuth is
configured) the provider client and flows.  Nothing here is a module-level
singleton: the API keeps its ``Services`` on ``app.state`` and the CLI builds
one per invocation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import asyncpg

from tokensync.config import TokenSyncConfig
from tokensync.credential_store import FIELD_PROVIDER, FIELD_USER_ID, CredentialStoreAdapter
from tokensync.docstore import DocumentStore, HttpDocumentStore, PostgresDocumentStore
from tokensync.flows import OAuthFlows
from tokensync.identity import DocumentIdentityDirectory, IdentityResolver
from tokensync.provider import ProviderTokenClient
from tokensync.reconcile import TokenReconciliationEngine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Runtime components shared by the request handlers of one process."""

    engine: TokenReconciliationEngine
    flows: OAuthFlows | None = None
    config: TokenSyncConfig | None = None
    pool: asyncpg.Pool | None = None


async def _build_docstore(config: TokenSyncConfig) -> tuple[DocumentStore, asyncpg.Pool | None]:
    store_config = config.store
    if store_config.backend == "http":
        return HttpDocumentStore(store_config), None

    pool = await asyncpg.create_pool(dsn=store_config.dsn, timeout=store_config.timeout)
    docstore = PostgresDocumentStore(pool)
    await docstore.ensure_schema()
    await docstore.ensure_unique(store_config.tokens_collection_id, [FIELD_USER_ID, FIELD_PROVIDER])
    if store_config.identities_collection_id:
        await docstore.ensure_unique(
            store_config.identities_collection_id, ["userId", "provider", "providerUid"]
        )
    return docstore, pool


def build_engine(docstore: DocumentStore, config: TokenSyncConfig) -> TokenReconciliationEngine:
    """Assemble the reconciliation engine over *docstore*."""
    directory = None
    if config.store.identities_collection_id:
        directory = DocumentIdentityDirectory(docstore, config.store.identities_collection_id)
    else:
        logger.info("IDENTITIES_COLLECTION_ID not set; identity linking disabled")

    return TokenReconciliationEngine(
        CredentialStoreAdapter(docstore, config.store.tokens_collection_id),
        IdentityResolver(directory),
    )


async def build_services(config: TokenSyncConfig) -> Services:
    """Build every component from *config*."""
    docstore, pool = await _build_docstore(config)
    engine = build_engine(docstore, config)

    flows = None
    if config.provider is not None:
        flows = OAuthFlows(config.provider, ProviderTokenClient(config.provider), engine)
    else:
        logger.info("OAuth client credentials not configured; OAuth flows disabled")

    logger.info(
        "Services ready (backend=%s, tokens_collection=%s, oauth=%s)",
        config.store.backend,
        config.store.tokens_collection_id,
        config.provider.name if config.provider else "disabled",
    )
    return Services(engine=engine, flows=flows, config=config, pool=pool)


async def close_services(services: Services) -> None:
    """Release pooled resources held by *services*."""
    if services.pool is not None:
        await services.pool.close()
        services.pool = None
