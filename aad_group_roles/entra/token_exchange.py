"""
On-behalf-of (OBO) token exchange against the Entra token endpoint.

Background for newcomers:
    The token the browser/SPA sends us was issued for *our* API. Microsoft
    Graph will not accept it. To call Graph as the signed-in user we present
    that token to Entra as a ``user assertion``, together with our own client
    id and secret, and ask for a new token scoped to Graph. This is the
    OAuth2 "on-behalf-of" flow (RFC 7523 jwt-bearer grant with
    ``requested_token_use=on_behalf_of``).

    The exchange fails when the user token is expired or not for this app,
    when an admin has not consented to the requested Graph permissions, or
    when our client secret is wrong. All of those surface here as
    ``AuthExchangeError``.

Required delegated permissions on the app registration (API Permissions):
- User.Read
- GroupMember.Read.All
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable

import requests

from .config import DEFAULT_AUTHORITY_HOST, ServiceCredential
from .errors import AuthExchangeError, ConfigurationError

logger = logging.getLogger(__name__)

TOKEN_URL_TEMPLATE = "{authority_host}/{tenant_id}/oauth2/v2.0/token"
OBO_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_EXPIRES_IN = 3600


@dataclass(frozen=True)
class DelegatedToken:
    """Graph access token issued on behalf of one user. Never persisted."""

    access_token: str = field(repr=False)
    expires_on: float
    """Unix timestamp after which the token is no longer accepted."""

    scopes: tuple[str, ...] = ()

    def is_expired(self, now: float | None = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_on

    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


def _normalize_scopes(scopes: Iterable[str]) -> tuple[str, ...]:
    if isinstance(scopes, str):
        scopes = scopes.split()
    cleaned: list[str] = []
    for scope in scopes:
        s = str(scope).strip()
        if not s:
            raise ConfigurationError("Scopes must be non-empty strings")
        if s not in cleaned:
            cleaned.append(s)
    if not cleaned:
        raise ConfigurationError("At least one scope is required for the on-behalf-of exchange")
    return tuple(cleaned)


def _expires_in(raw) -> int:
    """Token lifetime in seconds; Entra's default when the response omits it."""
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning(
            "OBO response has no usable expires_in (%r); assuming %s seconds",
            raw,
            DEFAULT_EXPIRES_IN,
        )
        return DEFAULT_EXPIRES_IN


def _error_from_response(resp: requests.Response) -> AuthExchangeError:
    """Translate an Entra error payload into AuthExchangeError (no token material)."""
    try:
        body = resp.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    error = body.get("error")
    suberror = body.get("suberror")
    # error_description from Entra is first-line meaningful ("AADSTS50013: ...")
    description = body.get("error_description")
    if isinstance(description, str):
        description = description.splitlines()[0] if description else None

    transient = resp.status_code >= 500 or error == "temporarily_unavailable"
    return AuthExchangeError(
        f"On-behalf-of exchange rejected: status={resp.status_code} error={error or 'unknown'}",
        error=error,
        error_description=description,
        suberror=suberror,
        status_code=resp.status_code,
        transient=transient,
    )


class TokenExchanger:
    """
    Exchanges a caller token for a Graph-scoped delegated token.

    Holds only the immutable credential and scopes, so a single instance can
    serve many concurrent authentication events.
    """

    def __init__(
        self,
        credential: ServiceCredential,
        scopes: Iterable[str],
        *,
        authority_host: str = DEFAULT_AUTHORITY_HOST,
        timeout: float = 10.0,
    ) -> None:
        if not isinstance(credential, ServiceCredential):
            raise ConfigurationError("credential must be a ServiceCredential")
        self._credential = credential
        self._scopes = _normalize_scopes(scopes)
        self._token_url = TOKEN_URL_TEMPLATE.format(
            authority_host=authority_host.rstrip("/"),
            tenant_id=credential.tenant_id,
        )
        self._timeout = timeout

    @property
    def scopes(self) -> tuple[str, ...]:
        return self._scopes

    def exchange(self, caller_token: str) -> DelegatedToken:
        """
        Perform one OBO round trip and return the delegated token.

        Raises AuthExchangeError when Entra rejects the assertion, the
        request cannot be sent, or the response has no access token.
        """
        if not caller_token or not caller_token.strip():
            raise AuthExchangeError("Caller token is empty", error="invalid_request")

        data = {
            "grant_type": OBO_GRANT_TYPE,
            "client_id": self._credential.client_id,
            "client_secret": self._credential.client_secret,
            "assertion": caller_token.strip(),
            "scope": " ".join(self._scopes),
            "requested_token_use": "on_behalf_of",
        }
        started = time.time()
        try:
            resp = requests.post(self._token_url, data=data, timeout=self._timeout)
        except requests.RequestException as e:
            logger.warning("OBO token request failed: %s", type(e).__name__, exc_info=False)
            raise AuthExchangeError(
                "On-behalf-of exchange could not reach the token endpoint",
                transient=True,
            ) from e

        if resp.status_code != 200:
            err = _error_from_response(resp)
            logger.info(
                "OBO exchange rejected status=%s error=%s suberror=%s",
                err.status_code,
                err.error,
                err.suberror,
            )
            raise err

        try:
            body = resp.json()
        except ValueError as e:
            raise AuthExchangeError("Token endpoint returned a non-JSON body", status_code=resp.status_code) from e

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise AuthExchangeError("No access_token in on-behalf-of response", status_code=resp.status_code)

        expires_in = _expires_in(body.get("expires_in"))
        granted = body.get("scope")
        scopes = tuple(granted.split()) if isinstance(granted, str) and granted else self._scopes

        logger.debug("OBO exchange succeeded expires_in=%s scopes=%s", expires_in, " ".join(scopes))
        return DelegatedToken(
            access_token=str(access_token),
            expires_on=started + expires_in,
            scopes=scopes,
        )


def exchange_on_behalf_of(
    caller_token: str,
    credential: ServiceCredential,
    scopes: Iterable[str],
    *,
    authority_host: str = DEFAULT_AUTHORITY_HOST,
    timeout: float = 10.0,
) -> DelegatedToken:
    """
    Convenience function: build a ``TokenExchanger`` and run one exchange.

    Prefer holding a ``TokenExchanger`` when the credential and scopes are
    fixed for the process; construction validates them once.
    """
    exchanger = TokenExchanger(credential, scopes, authority_host=authority_host, timeout=timeout)
    return exchanger.exchange(caller_token)
