"""Configuration for the Fitbit MCP server, loaded from environment variables."""

from __future__ import annotations

from pydantic import field_validator
from pydantic_settings import BaseSettings

DEFAULT_SCOPES = "activity heartrate nutrition profile sleep weight"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Fitbit OAuth (optional at startup; the authorization flow refuses to run without them)
    fitbit_client_id: str = ""
    fitbit_client_secret: str = ""
    fitbit_redirect_uri: str = "http://localhost:3000/callback"
    fitbit_scopes: str = DEFAULT_SCOPES

    # Local callback listener
    oauth_callback_host: str = "127.0.0.1"
    oauth_callback_port: int = 3000
    oauth_flow_timeout: float = 600.0
    oauth_open_browser: bool = True

    # Database
    database_url: str
    database_ssl: bool = False

    log_level: str = "INFO"

    @field_validator("database_url", mode="before")
    @classmethod
    def check_database_url(cls, v):
        """Reject an empty connection string."""
        if v is None or (isinstance(v, str) and v.strip() == ""):
            raise ValueError("DATABASE_URL is not set")
        return v

    @property
    def scopes(self) -> list[str]:
        """Requested scopes, accepting space or comma separated values."""
        return [s for s in self.fitbit_scopes.replace(",", " ").split() if s]

    @property
    def has_credentials(self) -> bool:
        """Check if Fitbit client credentials are configured."""
        return bool(self.fitbit_client_id and self.fitbit_client_secret)


def get_settings() -> Settings:
    """Load and validate settings from environment.

    Raises:
        ValidationError: If required environment variables are missing or invalid.
    """
    return Settings()
