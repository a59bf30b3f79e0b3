"""Principal produced by primary authentication and extended with group roles."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable


@dataclass(frozen=True)
class TokenContext:
    """
    Authenticated user as seen by the rest of the application.

    Built from validated token claims; roles derived from group membership
    are added afterwards with ``with_roles``.
    """

    user_id: str
    """Canonical user id from token (oid, falling back to sub)."""

    roles: tuple[str, ...]
    """App roles from the token plus any added from group membership."""

    scopes: tuple[str, ...]
    """OAuth2 scopes from the token (scp claim)."""

    preferred_username: str | None = None

    groups_overage: bool = False
    """True when Entra left group membership out of the token."""

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def with_roles(self, extra: Iterable[str]) -> TokenContext:
        """Return a copy with ``extra`` appended; existing roles keep their order."""
        roles = list(self.roles)
        for role in extra:
            if role not in roles:
                roles.append(role)
        return replace(self, roles=tuple(roles))

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "roles": list(self.roles),
            "scopes": list(self.scopes),
            "preferred_username": self.preferred_username,
            "groups_overage": self.groups_overage,
        }
