"""
FHIRBridge Configuration Module

Centralized configuration management using Pydantic Settings.
Supports environment variables and .env files. Settings are loaded once
at process start and never reloaded at runtime.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from fhirbridge.integrations.models import ConnectorConfig


class AppSettings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="FHIRBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    env: Literal["development", "staging", "production"] = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Audit
    audit_enabled: bool = True

    # Vendor calls
    request_timeout_seconds: float = 30.0
    operation_timeout_seconds: float = 90.0
    token_expiry_buffer_seconds: int = 60


class EpicSettings(BaseSettings):
    """Epic FHIR API settings (discovery-based authentication)."""

    model_config = SettingsConfigDict(
        env_prefix="EPIC_",
        env_file=".env",
        extra="ignore",
    )

    client_id: str = ""
    client_secret: SecretStr = Field(default=SecretStr(""))
    fhir_endpoint: str = ""
    fhir_version: str = "R4"
    non_production_mode: bool = False
    scope: str = "system/*.read system/*.write"
    default_last_updated: str = "gt2022-01-01"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def to_connector_config(self) -> ConnectorConfig:
        """Build the immutable connector configuration."""
        return ConnectorConfig(
            vendor_id="epic",
            client_id=self.client_id,
            client_secret=self.client_secret.get_secret_value(),
            base_url=self.fhir_endpoint,
            fhir_version=self.fhir_version,
            vendor_specific={
                "non_production_mode": "true" if self.non_production_mode else "false",
                "scope": self.scope,
                "default_last_updated": self.default_last_updated,
            },
        )


class CernerSettings(BaseSettings):
    """Cerner FHIR API settings (static tenant token endpoint)."""

    model_config = SettingsConfigDict(
        env_prefix="CERNER_",
        env_file=".env",
        extra="ignore",
    )

    client_id: str = ""
    client_secret: SecretStr = Field(default=SecretStr(""))
    fhir_endpoint: str = ""
    fhir_version: str = "R4"
    tenant_id: str = ""
    scope: str = "system/Patient.read system/Observation.read system/Condition.read"

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id)

    def to_connector_config(self) -> ConnectorConfig:
        """Build the immutable connector configuration."""
        return ConnectorConfig(
            vendor_id="cerner",
            client_id=self.client_id,
            client_secret=self.client_secret.get_secret_value(),
            base_url=self.fhir_endpoint,
            fhir_version=self.fhir_version,
            vendor_specific={
                "tenant": self.tenant_id,
                "scope": self.scope,
            },
        )


class Settings:
    """
    Aggregated settings container.

    Usage:
        from fhirbridge.config import get_settings
        settings = get_settings()
        print(settings.app.request_timeout_seconds)
        print(settings.epic.is_configured)
    """

    def __init__(self):
        self.app = AppSettings()
        self.epic = EpicSettings()
        self.cerner = CernerSettings()

    @property
    def is_development(self) -> bool:
        return self.app.env == "development"

    @property
    def is_production(self) -> bool:
        return self.app.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: The application settings
    """
    return Settings()
