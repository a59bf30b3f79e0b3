"""
Entra ID helpers: on-behalf-of token exchange and batched group membership.

This package has no dependency on the web layer (aad_group_roles.security,
FastAPI). Typical use after primary authentication::

    exchanger = TokenExchanger(config.service_credential(), config.graph_scopes)
    resolver = GroupMembershipResolver.from_config(config)
    matched = resolver.resolve_membership(exchanger.exchange(raw_token), group_ids)
"""

from .config import EntraConfig, ServiceCredential
from .context import TokenContext
from .errors import (
    AuthExchangeError,
    ConfigurationError,
    GroupRolesError,
    MembershipQueryCancelled,
    MembershipQueryError,
)
from .membership import MAX_BATCH_SIZE, GroupMembershipResolver, partition
from .token_exchange import DelegatedToken, TokenExchanger, exchange_on_behalf_of
from .validator import EntraTokenValidator, ValidationError

__all__ = [
    "EntraConfig",
    "ServiceCredential",
    "TokenContext",
    "GroupRolesError",
    "ConfigurationError",
    "AuthExchangeError",
    "MembershipQueryError",
    "MembershipQueryCancelled",
    "MAX_BATCH_SIZE",
    "GroupMembershipResolver",
    "partition",
    "DelegatedToken",
    "TokenExchanger",
    "exchange_on_behalf_of",
    "EntraTokenValidator",
    "ValidationError",
]
