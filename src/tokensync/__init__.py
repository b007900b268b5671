"""tokensync — OAuth2 token exchange and credential reconciliation."""

__version__ = "0.1.0"
