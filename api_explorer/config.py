from __future__ import annotations

from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="API_EXPLORER_", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")

    upstream_base_url: str = Field(default="https://api.managefy.com.br/integration")
    upstream_timeout_sec: float = Field(default=30.0, ge=1.0, le=300.0)

    database_url: str = Field(default="sqlite:///./api_explorer.db")

    credential_storage_key: str = Field(default="managefy-token-data", min_length=1)
    credential_check_path: str = Field(default="/Suppliers", min_length=1)
    credential_freshness_sec: float = Field(default=3600.0, gt=0.0)
    credential_revalidate_interval_sec: float = Field(default=1800.0, gt=0.0)
    credential_scheduler_enabled: bool = Field(default=True)

    api_spec_path: str = Field(default="./public/swagger.json")
    api_spec_server_url: str = Field(default="https://devapi.managefy.com.br/integration")
    api_spec_server_description: str = Field(default="Managefy Development API")

    def is_production(self) -> bool:
        return self.app_env.strip().lower() == "production"

    def production_safety_errors(self) -> list[str]:
        if not self.is_production():
            return []

        errors: list[str] = []

        if urlparse(self.upstream_base_url.strip()).scheme != "https":
            errors.append("API_EXPLORER_UPSTREAM_BASE_URL must use https in production")

        if self.credential_revalidate_interval_sec >= self.credential_freshness_sec:
            errors.append(
                "API_EXPLORER_CREDENTIAL_REVALIDATE_INTERVAL_SEC must be shorter than "
                "API_EXPLORER_CREDENTIAL_FRESHNESS_SEC in production"
            )

        if self.database_url.strip().lower().startswith("sqlite"):
            errors.append("API_EXPLORER_DATABASE_URL must not use sqlite in production")

        return errors


def get_settings() -> Settings:
    return Settings()
