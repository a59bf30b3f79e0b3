from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from aad_group_roles.entra.config import EntraConfig
from aad_group_roles.entra.membership import GroupMembershipResolver
from aad_group_roles.entra.token_exchange import TokenExchanger
from aad_group_roles.entra.validator import EntraTokenValidator
from aad_group_roles.logging_config import configure_app_logging
from aad_group_roles.routers import home
from aad_group_roles.security.config import load_security_config
from aad_group_roles.security.dependencies import enforce_security
from aad_group_roles.security.enrichment import GroupRoleEnricher
from aad_group_roles.settings import get_settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_app_logging(settings.log_level)
        logger.info("App startup beginning")

        security_config = load_security_config(settings.resolved_security_config_path())
        app.state.security_config = security_config
        logger.info(
            "Loaded security config: %s (authorization groups=%s)",
            settings.resolved_security_config_path(),
            len(security_config.role_groups),
        )

        # ConfigurationError here aborts startup: no request could be authorized.
        entra = EntraConfig.from_environ()
        app.state.token_validator = EntraTokenValidator(entra)
        app.state.role_enricher = GroupRoleEnricher(
            TokenExchanger(
                entra.service_credential(),
                entra.graph_scopes,
                authority_host=entra.authority_host,
                timeout=entra.http_timeout_seconds,
            ),
            GroupMembershipResolver.from_config(entra),
            security_config.role_groups,
            timeout=settings.membership_timeout_seconds,
        )
        logger.info("Entra role enrichment ready tenant=%s client=%s", entra.tenant_id, entra.client_id)

        yield

    # Global dependency: every route goes through authentication + role checks.
    app = FastAPI(dependencies=[Depends(enforce_security)], lifespan=lifespan)
    app.include_router(home.router)
    return app


app = create_app()
