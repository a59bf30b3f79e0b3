from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    App settings (``APP_`` prefixed env vars).

    Entra credentials are not here; they come from ``EntraConfig.from_environ``
    so the entra package stays usable without the web layer.
    """

    model_config = SettingsConfigDict(env_prefix="APP_", extra="ignore")

    security_config_path: str | None = None
    log_level: str = "INFO"
    membership_timeout_seconds: float | None = 15.0

    def resolved_security_config_path(self) -> Path:
        if self.security_config_path:
            return Path(self.security_config_path)

        repo_root = Path(__file__).resolve().parents[1]
        return repo_root / "config" / "security_config.yaml"


@lru_cache
def get_settings() -> Settings:
    return Settings()
