from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from aad_group_roles.entra.context import TokenContext
from aad_group_roles.entra.errors import AuthExchangeError, MembershipQueryError
from aad_group_roles.entra.validator import EntraTokenValidator, ValidationError
from aad_group_roles.security.auth import extract_bearer_token
from aad_group_roles.security.config import SecurityConfig
from aad_group_roles.security.enrichment import GroupRoleEnricher

logger = logging.getLogger(__name__)


def _app_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialised. Did app startup run?")
    return value


def get_security_config(request: Request) -> SecurityConfig:
    return _app_state(request, "security_config")


def _enriched_principal(request: Request) -> TokenContext:
    """
    Add group-derived roles to the authenticated principal, once per request.

    Each call that is not yet enriched costs one OBO exchange plus one Graph
    checkMemberGroups fan-out. Roles are not stored between requests.
    """
    principal: TokenContext = request.state.principal
    if getattr(request.state, "roles_resolved", False):
        return principal

    enricher: GroupRoleEnricher = _app_state(request, "role_enricher")
    try:
        principal = enricher.enrich(request.state.caller_token, principal)
    except AuthExchangeError as exc:
        logger.warning("Role enrichment denied user=%s error=%s", principal.user_id, exc.error)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not determine authorization for this user",
        ) from exc
    except MembershipQueryError as exc:
        logger.warning(
            "Group membership lookup failed user=%s status=%s transient=%s",
            principal.user_id,
            exc.status_code,
            exc.transient,
        )
        code = status.HTTP_503_SERVICE_UNAVAILABLE if exc.transient else status.HTTP_403_FORBIDDEN
        raise HTTPException(status_code=code, detail="Could not determine group membership") from exc

    request.state.principal = principal
    request.state.roles_resolved = True
    return principal


def get_current_principal(request: Request) -> TokenContext:
    """Authenticated principal with group-derived roles, resolved on first use."""
    if getattr(request.state, "principal", None) is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return _enriched_principal(request)


def enforce_security(
    request: Request,
    config: SecurityConfig = Depends(get_security_config),
) -> None:
    """
    Global security dependency.

    Authenticates the bearer token, then applies the route's role
    requirement. Group membership is only looked up when the route requires
    a role; handlers that need the roles otherwise ask for them through
    ``get_current_principal``. Declared as a plain ``def``, so FastAPI runs
    it in its threadpool and the blocking Entra/Graph calls do not stall the
    event loop.
    """

    rule = config.match(request.url.path, request.method)
    if not rule.auth_required:
        return

    token = extract_bearer_token(request, config)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")

    validator: EntraTokenValidator = _app_state(request, "token_validator")
    try:
        principal = validator.validate_and_extract(token)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    request.state.principal = principal
    request.state.caller_token = token

    if not rule.required_roles:
        return

    principal = _enriched_principal(request)
    if not (set(principal.roles) & rule.required_roles):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Insufficient role. Required one of: {sorted(rule.required_roles)}",
        )
