"""Configuration from environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from .errors import ConfigurationError

DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_GRAPH_BASE = "https://graph.microsoft.com/v1.0"
DEFAULT_GRAPH_SCOPES = (
    "https://graph.microsoft.com/User.Read",
    "https://graph.microsoft.com/GroupMember.Read.All",
)


def _getenv(key: str, default: str | None = None) -> str | None:
    return os.environ.get(key, default)


def _getenv_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _getenv_float(key: str, default: float) -> float:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ServiceCredential:
    """
    Confidential-client identity of this application.

    Immutable and safe to share between threads. ``client_secret`` is kept
    out of ``repr`` so the credential can appear in log records without
    leaking it.
    """

    client_id: str
    tenant_id: str
    client_secret: str = field(repr=False)

    def __post_init__(self) -> None:
        missing = [
            name
            for name in ("client_id", "tenant_id", "client_secret")
            if not (getattr(self, name) or "").strip()
        ]
        if missing:
            raise ConfigurationError(f"Service credential missing: {', '.join(missing)}")


@dataclass(frozen=True)
class EntraConfig:
    """
    Azure Entra ID configuration from environment.

    Required:
        AZURE_TENANT_ID: Tenant (directory) ID.
        AZURE_CLIENT_ID: Application (client) ID; also the default audience.

    Required for the on-behalf-of exchange:
        AZURE_CLIENT_SECRET: Client secret of the app registration.

    Optional:
        AZURE_AUDIENCE: Expected ``aud`` of incoming tokens (default client id).
        CLOCK_SKEW_SECONDS: Tolerance for exp/nbf (default 120).
        JWKS_CACHE_TTL_SECONDS: How long to cache JWKS (default 3600).
        GRAPH_SCOPES: Space separated delegated scopes to request.
        GRAPH_BASE_URL: Microsoft Graph root (default v1.0 endpoint).
        AUTHORITY_HOST: Login host (default login.microsoftonline.com).
        HTTP_TIMEOUT_SECONDS: Per-request timeout (default 10).
        GRAPH_MAX_CONCURRENCY: Upper bound on parallel batch requests (default 8).
    """

    tenant_id: str
    client_id: str
    audience: str | None  # if None, use client_id as audience
    clock_skew_seconds: int
    jwks_cache_ttl_seconds: int
    client_secret: str | None = field(default=None, repr=False)
    graph_scopes: tuple[str, ...] = DEFAULT_GRAPH_SCOPES
    graph_base_url: str = DEFAULT_GRAPH_BASE
    authority_host: str = DEFAULT_AUTHORITY_HOST
    http_timeout_seconds: float = 10.0
    graph_max_concurrency: int = 8

    @property
    def expected_audience(self) -> str:
        return self.audience if self.audience else self.client_id

    @property
    def issuer(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/v2.0"

    @property
    def jwks_uri(self) -> str:
        return f"{self.authority_host}/{self.tenant_id}/discovery/v2.0/keys"

    def service_credential(self) -> ServiceCredential:
        """Build the credential used for the on-behalf-of exchange."""
        if not self.client_secret:
            raise ConfigurationError("AZURE_CLIENT_SECRET must be set for the on-behalf-of exchange")
        return ServiceCredential(
            client_id=self.client_id,
            tenant_id=self.tenant_id,
            client_secret=self.client_secret,
        )

    @classmethod
    def from_environ(cls) -> EntraConfig:
        tenant = _getenv("AZURE_TENANT_ID")
        client = _getenv("AZURE_CLIENT_ID")
        if not tenant or not client or not tenant.strip() or not client.strip():
            raise ConfigurationError("AZURE_TENANT_ID and AZURE_CLIENT_ID must be set")

        raw_scopes = _getenv("GRAPH_SCOPES")
        scopes = tuple(raw_scopes.split()) if raw_scopes is not None else DEFAULT_GRAPH_SCOPES
        if not scopes:
            raise ConfigurationError("GRAPH_SCOPES must list at least one scope")

        return cls(
            tenant_id=tenant.strip(),
            client_id=client.strip(),
            audience=_strip_or_none(_getenv("AZURE_AUDIENCE")),
            clock_skew_seconds=_getenv_int("CLOCK_SKEW_SECONDS", 120),
            jwks_cache_ttl_seconds=_getenv_int("JWKS_CACHE_TTL_SECONDS", 3600),
            client_secret=_strip_or_none(_getenv("AZURE_CLIENT_SECRET")),
            graph_scopes=scopes,
            graph_base_url=(_strip_or_none(_getenv("GRAPH_BASE_URL")) or DEFAULT_GRAPH_BASE).rstrip("/"),
            authority_host=(_strip_or_none(_getenv("AUTHORITY_HOST")) or DEFAULT_AUTHORITY_HOST).rstrip("/"),
            http_timeout_seconds=_getenv_float("HTTP_TIMEOUT_SECONDS", 10.0),
            graph_max_concurrency=max(_getenv_int("GRAPH_MAX_CONCURRENCY", 8), 1),
        )


def _strip_or_none(s: str | None) -> str | None:
    if s is None:
        return None
    t = s.strip()
    return t if t else None
