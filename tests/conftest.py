"""
Pytest fixtures for the test suite.

No test talks to Entra or Graph: HTTP calls are replaced with
``unittest.mock.patch`` on the ``requests`` module used by each client.
"""
from __future__ import annotations

import time

import pytest

from aad_group_roles.entra.config import EntraConfig, ServiceCredential
from aad_group_roles.entra.token_exchange import DelegatedToken


@pytest.fixture
def entra_config() -> EntraConfig:
    return EntraConfig(
        tenant_id="tenant-1",
        client_id="api-client-id",
        audience=None,
        clock_skew_seconds=120,
        jwks_cache_ttl_seconds=3600,
        client_secret="s3cr3t-value",
    )


@pytest.fixture
def credential() -> ServiceCredential:
    return ServiceCredential(client_id="api-client-id", tenant_id="tenant-1", client_secret="s3cr3t-value")


@pytest.fixture
def delegated_token() -> DelegatedToken:
    """A Graph token valid for the next hour."""
    return DelegatedToken(access_token="delegated-graph-token", expires_on=time.time() + 3600)
