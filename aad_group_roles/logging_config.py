from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Set the level for the ``aad_group_roles`` logger tree.

    Handlers are left to the host (uvicorn configures its own). Set
    ``APP_LOG_LEVEL=DEBUG`` to see per-batch Graph activity; tokens and
    secrets are never logged at any level.
    """

    normalized = level.upper()
    package_logger = logging.getLogger("aad_group_roles")
    package_logger.setLevel(normalized)
    package_logger.propagate = True
