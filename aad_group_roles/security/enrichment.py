"""
Post-authentication hook that turns group membership into roles.

Runs once primary authentication has produced a principal and the raw
caller token is still at hand:

    1. exchange the caller token for a delegated Graph token,
    2. ask Graph which of the configured groups the user is in,
    3. map matched groups to role names and add them to the principal.

Failures are not swallowed. An empty role set must only ever mean "checked,
user is in none of the groups", never "could not check".
"""

from __future__ import annotations

import logging
import threading
from typing import Mapping

from aad_group_roles.entra.context import TokenContext
from aad_group_roles.entra.membership import GroupMembershipResolver
from aad_group_roles.entra.token_exchange import TokenExchanger

logger = logging.getLogger(__name__)


class GroupRoleEnricher:
    def __init__(
        self,
        exchanger: TokenExchanger,
        resolver: GroupMembershipResolver,
        role_groups: Mapping[str, str],
        *,
        timeout: float | None = None,
    ) -> None:
        self._exchanger = exchanger
        self._resolver = resolver
        self._role_groups = dict(role_groups)
        self._timeout = timeout

    def enrich(
        self,
        caller_token: str,
        principal: TokenContext,
        *,
        cancel_event: threading.Event | None = None,
    ) -> TokenContext:
        """
        Return ``principal`` with roles from group membership added.

        Raises AuthExchangeError or MembershipQueryError unchanged.
        """
        if not self._role_groups:
            return principal

        delegated = self._exchanger.exchange(caller_token)
        matched = self._resolver.resolve_membership(
            delegated,
            self._role_groups.keys(),
            timeout=self._timeout,
            cancel_event=cancel_event,
        )
        # matched is a subset of the configured ids, in their configured spelling.
        roles = sorted({self._role_groups[gid] for gid in matched})
        logger.info(
            "Roles from group membership user=%s groups=%s roles=%s",
            principal.user_id,
            len(matched),
            roles,
        )
        return principal.with_roles(roles)
