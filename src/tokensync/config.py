"""Configuration loading and validation.

Reads the process environment (or an explicit mapping) and returns a
validated, frozen ``TokenSyncConfig``.  Every missing required variable is
reported in a single ``ConfigError`` so an operator can fix them in one pass.
Configuration problems are startup failures, never per-call errors.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

DEFAULT_PROVIDER = "google"
DEFAULT_REDIRECT_URI = "http://localhost:3000/api/oauth/google/callback"
DEFAULT_SCOPES = "openid email profile"
DEFAULT_TIMEOUT_SECONDS = 10.0

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

# Collection ids end up in REST paths and DDL; keep them to a safe charset.
_COLLECTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,63}$")

_BACKENDS = ("http", "postgres")
_LOG_FORMATS = ("text", "json")

_HTTP_REQUIRED = (
    "DOCSTORE_ENDPOINT",
    "DOCSTORE_PROJECT_ID",
    "DOCSTORE_API_KEY",
    "DOCSTORE_DATABASE_ID",
)
_POSTGRES_REQUIRED = ("DOCSTORE_DSN",)


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass(frozen=True)
class DocumentStoreConfig:
    """Where credential and identity documents live."""

    backend: str
    tokens_collection_id: str
    identities_collection_id: str | None = None
    endpoint: str | None = None
    project_id: str | None = None
    api_key: str | None = field(default=None, repr=False)
    database_id: str | None = None
    dsn: str | None = field(default=None, repr=False)
    timeout: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class ProviderConfig:
    """OAuth provider endpoints and app credentials."""

    name: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scopes: str = DEFAULT_SCOPES
    auth_url: str = GOOGLE_AUTH_URL
    token_url: str = GOOGLE_TOKEN_URL
    userinfo_url: str = GOOGLE_USERINFO_URL
    timeout: float = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "text"  # "text" or "json"


@dataclass(frozen=True)
class TokenSyncConfig:
    """Top-level configuration.

    ``provider`` is ``None`` when no OAuth app credentials are configured; the
    direct upsert path still works, the OAuth flows are unavailable.
    """

    store: DocumentStoreConfig
    provider: ProviderConfig | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    dashboard_url: str | None = None


def _get(env: Mapping[str, str], key: str) -> str | None:
    value = env.get(key, "")
    value = value.strip() if isinstance(value, str) else ""
    return value or None


def _parse_timeout(env: Mapping[str, str], key: str) -> float:
    raw = _get(env, key)
    if raw is None:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        timeout = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number of seconds, got {raw!r}") from exc
    if timeout <= 0:
        raise ConfigError(f"{key} must be positive, got {raw!r}")
    return timeout


def _validate_collection_id(key: str, value: str) -> str:
    if not _COLLECTION_ID_PATTERN.match(value):
        raise ConfigError(
            f"{key} must contain only letters, digits, '.', '_' or '-', got {value!r}"
        )
    return value


def load_store_config(env: Mapping[str, str] | None = None) -> DocumentStoreConfig:
    """Build the document store section, aggregating missing variables."""
    env = os.environ if env is None else env

    backend = (_get(env, "DOCSTORE_BACKEND") or "http").lower()
    if backend not in _BACKENDS:
        raise ConfigError(
            f"DOCSTORE_BACKEND must be one of {', '.join(_BACKENDS)}, got {backend!r}"
        )

    required = ["TOKENS_COLLECTION_ID"]
    required += _HTTP_REQUIRED if backend == "http" else _POSTGRES_REQUIRED
    missing = [key for key in required if _get(env, key) is None]
    if missing:
        raise ConfigError(
            f"Missing required environment variable(s) for the {backend} document store: "
            f"{', '.join(missing)}"
        )

    tokens_collection_id = _validate_collection_id(
        "TOKENS_COLLECTION_ID", _get(env, "TOKENS_COLLECTION_ID")  # type: ignore[arg-type]
    )
    identities_collection_id = _get(env, "IDENTITIES_COLLECTION_ID")
    if identities_collection_id is not None:
        _validate_collection_id("IDENTITIES_COLLECTION_ID", identities_collection_id)

    endpoint = _get(env, "DOCSTORE_ENDPOINT")
    return DocumentStoreConfig(
        backend=backend,
        tokens_collection_id=tokens_collection_id,
        identities_collection_id=identities_collection_id,
        endpoint=endpoint.rstrip("/") if endpoint else None,
        project_id=_get(env, "DOCSTORE_PROJECT_ID"),
        api_key=_get(env, "DOCSTORE_API_KEY"),
        database_id=_get(env, "DOCSTORE_DATABASE_ID"),
        dsn=_get(env, "DOCSTORE_DSN"),
        timeout=_parse_timeout(env, "DOCSTORE_TIMEOUT"),
    )


def load_provider_config(env: Mapping[str, str] | None = None) -> ProviderConfig | None:
    """Build the provider section, or return ``None`` when OAuth is not configured.

    Client id and secret must be set together; one without the other is an
    error rather than a silently disabled flow.
    """
    env = os.environ if env is None else env

    client_id = _get(env, "GOOGLE_OAUTH_CLIENT_ID")
    client_secret = _get(env, "GOOGLE_OAUTH_CLIENT_SECRET")
    if client_id is None and client_secret is None:
        return None
    if client_id is None or client_secret is None:
        missing = "GOOGLE_OAUTH_CLIENT_ID" if client_id is None else "GOOGLE_OAUTH_CLIENT_SECRET"
        raise ConfigError(
            f"{missing} is not set; OAuth client id and secret must be configured together"
        )

    return ProviderConfig(
        name=(_get(env, "OAUTH_PROVIDER") or DEFAULT_PROVIDER).lower(),
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=_get(env, "GOOGLE_OAUTH_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
        scopes=_get(env, "GOOGLE_OAUTH_SCOPES") or DEFAULT_SCOPES,
        timeout=_parse_timeout(env, "OAUTH_TIMEOUT"),
    )


def load_config(env: Mapping[str, str] | None = None) -> TokenSyncConfig:
    """Load the full configuration from *env* (defaults to ``os.environ``).

    Raises
    ------
    ConfigError
        If a required variable is missing or a value is malformed.
    """
    env = os.environ if env is None else env

    log_format = (_get(env, "LOG_FORMAT") or "text").lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"LOG_FORMAT must be 'text' or 'json', got {log_format!r}")

    return TokenSyncConfig(
        store=load_store_config(env),
        provider=load_provider_config(env),
        logging=LoggingConfig(
            level=(_get(env, "LOG_LEVEL") or "INFO").upper(),
            format=log_format,
        ),
        dashboard_url=_get(env, "OAUTH_DASHBOARD_URL"),
    )
