"""
Primary authentication: validate the caller's Entra access token.

The raw token is kept by the caller because the on-behalf-of exchange needs
it as the user assertion once validation has succeeded. Nothing here calls
Microsoft Graph; role enrichment happens afterwards in
``aad_group_roles.security.enrichment``.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt

from .config import EntraConfig
from .context import TokenContext
from .errors import GroupRolesError
from .jwks_cache import JWKSCache

logger = logging.getLogger(__name__)


class ValidationError(GroupRolesError):
    """Raised when token validation fails. Do not log the token."""


def _get_kid(token: str) -> str | None:
    try:
        header = jwt.get_unverified_header(token)
    except jwt.InvalidTokenError:
        return None
    return header.get("kid") if isinstance(header, dict) else None


def _as_str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(str(v) for v in value)
    if isinstance(value, str):
        return tuple(s for s in value.split() if s)
    return ()


def _has_groups_overage(payload: dict[str, Any]) -> bool:
    """
    Entra signals overage with ``hasgroups`` (implicit flow) or a ``groups``
    entry in ``_claim_names`` pointing at a Graph source.
    """
    if payload.get("hasgroups") in (True, "true"):
        return True
    claim_names = payload.get("_claim_names")
    return isinstance(claim_names, dict) and "groups" in claim_names


def _extract_claims(payload: dict[str, Any]) -> TokenContext:
    # oid is stable across app registrations; sub is pairwise per app.
    user_id = payload.get("oid") or payload.get("sub") or ""

    preferred_username = payload.get("preferred_username")
    return TokenContext(
        user_id=str(user_id),
        roles=_as_str_tuple(payload.get("roles")),
        scopes=_as_str_tuple(payload.get("scp")),
        preferred_username=str(preferred_username) if preferred_username is not None else None,
        groups_overage=_has_groups_overage(payload),
    )


class EntraTokenValidator:
    """
    Validates signature, issuer, audience and lifetime of Entra access tokens.

    One instance per process; the JWKS cache inside is shared and locked.
    """

    def __init__(self, config: EntraConfig | None = None) -> None:
        self._config = config or EntraConfig.from_environ()
        self._jwks = JWKSCache(
            self._config.jwks_uri,
            self._config.jwks_cache_ttl_seconds,
            timeout=self._config.http_timeout_seconds,
        )

    def validate_and_extract(self, token: str) -> TokenContext:
        """Return the principal for ``token`` or raise ValidationError."""
        kid = _get_kid(token)
        if not kid:
            logger.debug("Token missing or invalid kid")
            raise ValidationError("Invalid token: missing key id")

        signing_key = self._jwks.get_signing_key(kid)
        if signing_key is None:
            logger.debug("No signing key found for kid")
            raise ValidationError("Invalid token: unknown signing key")

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self._config.expected_audience,
                issuer=self._config.issuer,
                leeway=self._config.clock_skew_seconds,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as e:
            logger.info("Token expired")
            raise ValidationError("Token expired") from e
        except jwt.InvalidIssuerError as e:
            logger.info("Token invalid issuer")
            raise ValidationError("Invalid token: issuer") from e
        except jwt.InvalidAudienceError as e:
            logger.info("Token invalid audience")
            raise ValidationError("Invalid token: audience") from e
        except jwt.InvalidTokenError as e:
            logger.info("Token invalid: %s", type(e).__name__)
            raise ValidationError("Invalid token") from e

        return _extract_claims(payload)
