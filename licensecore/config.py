"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from decimal import Decimal
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Backend selection - "memory" is the deterministic reference backend
    backend: Literal["memory", "database"] = "memory"

    # Database Configuration (only used when backend == "database")
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Asset License Core API"
    api_version: str = "0.1.0"
    api_description: str = "Escrow, settlement and license issuance for digital assets"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "asset-license-core"

    # Settlement network (simulated)
    network: Literal["mainnet", "testnet", "devnet"] = "devnet"
    contract_address: str = "0x1234567890abcdef1234567890abcdef12345678"
    issuer_address: str = "0x9876543210fedcba9876543210fedcba98765432"
    gas_price: int = 50  # attoFIL per gas unit
    confirmations_per_block: int = 1

    # Orchestration
    backend_call_timeout_seconds: float = 30.0

    # Default escrow release conditions
    escrow_min_rating: int = 3
    escrow_time_lock_seconds: int = 86400  # 24 hours
    escrow_verification_required: bool = False

    # Demo catalog
    seed_demo_assets: bool = True
    default_currency: str = "USD"
    max_price: Decimal = Decimal("1000000")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start with a database backend and no database,
        or with timeouts that would make every call fail.
        """
        errors: list[str] = []

        if self.backend == "database":
            if not self.database_url:
                errors.append("DATABASE_URL is required when BACKEND=database")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if self.backend_call_timeout_seconds <= 0:
            errors.append("BACKEND_CALL_TIMEOUT_SECONDS must be positive")

        if self.gas_price <= 0:
            errors.append("GAS_PRICE must be positive")

        if len(self.default_currency) != 3:
            errors.append(f"DEFAULT_CURRENCY must be a 3-letter code, got: {self.default_currency}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
