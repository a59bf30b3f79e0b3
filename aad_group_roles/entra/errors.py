"""
Exceptions raised by the token exchange and membership lookup.

None of these carry token or secret material. Messages are safe to log.
"""

from __future__ import annotations

from typing import Sequence


class GroupRolesError(Exception):
    """Base class for everything this package raises on purpose."""


class ConfigurationError(GroupRolesError, ValueError):
    """Missing or malformed credential / scope configuration."""


class AuthExchangeError(GroupRolesError):
    """
    The identity provider refused to issue (or honour) a delegated token.

    Callers must treat this as "authorization could not be determined" and
    deny, not as "user has no roles".
    """

    def __init__(
        self,
        message: str,
        *,
        error: str | None = None,
        error_description: str | None = None,
        suberror: str | None = None,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.suberror = suberror
        self.status_code = status_code
        self.transient = transient


class MembershipQueryError(GroupRolesError):
    """A checkMemberGroups batch failed; no partial result is available."""

    def __init__(
        self,
        message: str,
        *,
        batch: Sequence[str] = (),
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.batch = tuple(batch)
        self.status_code = status_code
        self.transient = transient


class MembershipQueryCancelled(MembershipQueryError):
    """The caller's deadline passed or cancel event fired before all batches completed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)
