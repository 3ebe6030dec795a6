"""PharmaSeal configuration via pydantic-settings."""

import warnings
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

_INSECURE_DEFAULTS = {
    "secret_key": "insecure-dev-key-change-me",
}


class PharmaSealSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="PHARMASEAL_")

    environment: str = "development"
    secret_key: str = "insecure-dev-key-change-me"
    log_level: str = "INFO"

    # Database (read-optimized cache of ledger/document-store facts)
    db_url: str = "sqlite+aiosqlite:///./data/pharmaseal.db"

    # API
    api_title: str = "PharmaSeal"
    api_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8080
    api_prefix: str = ""
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]
    # Public base URL printed into batch QR codes
    public_base_url: str = "http://localhost:8080"

    # Sessions
    access_token_ttl: int = 900  # 15 minutes
    refresh_token_ttl: int = 604800  # 7 days

    # External collaborators: "memory" or "http"
    ledger_backend: str = "memory"
    ledger_url: str = "http://localhost:8545"
    document_store_backend: str = "memory"
    document_store_url: str = "http://localhost:3001"

    # Timeouts (seconds)
    confirmation_timeout: float = 30.0
    store_timeout: float = 30.0
    ledger_call_timeout: float = 15.0

    # Retry policy for transient collaborator failures
    retry_attempts: int = 3
    retry_backoff_base: float = 0.5
    reconcile_attempts: int = 2

    # Pagination
    default_page_size: int = 20
    max_page_size: int = 100

    def validate_for_production(self) -> None:
        """Raise if insecure defaults are used in non-development environments."""
        insecure_fields = [
            field
            for field, default in _INSECURE_DEFAULTS.items()
            if getattr(self, field) == default
        ]

        if self.environment != "development" and insecure_fields:
            env_vars = ", ".join(f"PHARMASEAL_{f.upper()}" for f in insecure_fields)
            raise RuntimeError(
                f"Insecure default values detected in '{self.environment}' environment. "
                f"Set these environment variables to secure values: {env_vars}. "
                "Generate secrets with: python -c \"import secrets; print(secrets.token_urlsafe(48))\""
            )

        if self.environment != "development" and "memory" in (
            self.ledger_backend, self.document_store_backend,
        ):
            raise RuntimeError(
                "In-memory ledger/document store backends are only allowed in "
                "the development environment. Set PHARMASEAL_LEDGER_BACKEND=http "
                "and PHARMASEAL_DOCUMENT_STORE_BACKEND=http."
            )

        if insecure_fields:
            warnings.warn(
                "Using insecure default secret key — set PHARMASEAL_SECRET_KEY "
                "for production",
                UserWarning,
                stacklevel=2,
            )


@lru_cache
def get_settings() -> PharmaSealSettings:
    settings = PharmaSealSettings()
    settings.validate_for_production()
    return settings
