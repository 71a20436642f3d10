"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the Immobilier API happen here. No module
should call os.getenv() or os.environ.get() directly.

Design patterns used:
  Explicit construction: asgi.py builds one Settings() instance and hands it
      to api.main.create_app(settings). Every component (token issuer,
      stores, GED client, mailer) receives the object it needs from the app
      factory. There is no module-level settings singleton, so tests simply
      construct Settings(...) with the values they want.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Implements the DEBUG-conditional JWT
      secret policy: dev mode generates secrets with a warning, production
      mode refuses to start without them.

Security notes:
  [M6] JWT secrets shorter than 32 chars are rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret is a
       hard startup failure.

  [M8] The access and refresh secrets must differ. A refresh token must never
       verify as an access token even if the type claim were forged.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
catalog/, ged/, or mail/.
"""

import logging
import secrets

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("immobilier.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "development"
    app_name: str = "Immobilier API"
    version: str = "1.0.0"
    frontend_url: str = "http://localhost:3000"
    database_url: str = "sqlite:///immobilier.db"

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_issuer: str = "immobilier-api"
    jwt_audience: str = "immobilier-client"
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    bcrypt_rounds: int = 12
    secure_cookies: bool = False
    max_sessions: int = 5
    activation_token_ttl_seconds: int = 24 * 3600
    reset_token_ttl_seconds: int = 3600

    # ------------------------------------------------------------------
    # Listings and uploads
    # ------------------------------------------------------------------

    max_media_files: int = 20
    max_upload_bytes: int = 5 * 1024 * 1024
    default_page_size: int = 10
    max_page_size: int = 100

    # ------------------------------------------------------------------
    # GED (external document store)
    # ------------------------------------------------------------------

    ged_api_url: str = "http://localhost:8000"
    ged_api_key: str = ""
    ged_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Mail (transactional email HTTP API)
    # ------------------------------------------------------------------

    mail_api_url: str = "https://api.brevo.com/v3/smtp/email"
    mail_api_key: str = ""
    mail_from: str = "noreply@immobilier.local"
    mail_from_name: str = "Immobilier"

    # ------------------------------------------------------------------
    # Payload encryption
    # ------------------------------------------------------------------

    payload_encryption: bool = False
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["*"]
    default_rate_limit: str = "100 per 15 minutes"
    auth_rate_limit: str = "5 per 15 minutes"
    upload_rate_limit: str = "10 per hour"

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_jwt_secrets(self) -> "Settings":
        """Enforce the JWT secret policy [M6][M7][M8].

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.
        """
        for field in ("jwt_access_secret", "jwt_refresh_secret"):
            if not getattr(self, field):
                if self.debug:
                    setattr(self, field, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Tokens will not persist across restarts.", field.upper()
                    )
                else:
                    raise ValueError(
                        f"{field.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field)) < 32:
                raise ValueError(f"{field.upper()} must be at least 32 characters.")
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.payload_encryption and not self.encryption_key:
            raise ValueError("ENCRYPTION_KEY is required when PAYLOAD_ENCRYPTION is enabled.")
        return self
