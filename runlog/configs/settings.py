"""Centralized settings management for the run log pipeline."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import make_url


class Settings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Loads configuration from environment variables and a .env file located
    in the project root.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    DEBUG: bool = False

    # -------------------------------------------------------------------------
    # DATABASE
    # -------------------------------------------------------------------------
    DATABASE_URL: str = Field(..., min_length=1)

    # -------------------------------------------------------------------------
    # RELEASE STATUS ENRICHMENT
    # -------------------------------------------------------------------------
    STATUS_API_HOST: str = "api.status.salesforce.com"
    STATUS_API_TOKEN: SecretStr | None = None
    INSTANCE_NAME: str | None = None
    # Turns the remote call path off entirely (tests, offline runs)
    ENRICHMENT_ENABLED: bool = True
    REQUEST_TIMEOUT_SECONDS: float = 10.0

    # -------------------------------------------------------------------------
    # LOGGING
    # -------------------------------------------------------------------------
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False

    # -------------------------------------------------------------------------
    # PATHS
    # -------------------------------------------------------------------------
    # BASE_DIR points to the runlog package
    BASE_DIR: Path = Path(__file__).resolve().parents[1]

    PIPELINE_CONFIG_PATH: Path = BASE_DIR / "configs" / "pipeline.yaml"

    # -------------------------------------------------------------------------
    # CONFIGURATION
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_psycopg2_params(self) -> dict:
        """
        Parse DATABASE_URL into psycopg2-compatible connection parameters.

        Returns
        -------
        dict
            psycopg2 connection arguments (host, port, dbname, user, password).
        """
        url = make_url(self.DATABASE_URL)
        return {
            "host": url.host,
            "port": url.port,
            "dbname": url.database,
            "user": url.username,
            "password": url.password,
        }

    def status_endpoint(self) -> str | None:
        """Return the release status URL for INSTANCE_NAME, or None when unset."""
        if not self.INSTANCE_NAME:
            return None
        return f"https://{self.STATUS_API_HOST}/v1/instances/{self.INSTANCE_NAME}/status"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
