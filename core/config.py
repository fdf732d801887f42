"""
core/config.py -- Centralized TrustGate configuration via pydantic-settings.

All environment variable reads for TrustGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing keys with a
      warning, production mode refuses to start without them.

Security notes:
  [K1] SECRET_KEY keys the HMAC digests that index backup codes. Shorter than
       32 chars is rejected outright.

  [K2] ENCRYPTION_KEY is a Fernet key (32 url-safe base64-encoded bytes) used
       to encrypt TOTP secrets and backup codes at rest. A key that Fernet
       cannot load is a startup failure, not a runtime surprise.

  [K3] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       ENCRYPTION_KEY is a hard startup failure. Randomly generated keys would
       make every stored MFA secret undecryptable after a restart.

Layer rule: core/ is the kernel. This module may not import from store/ or
security/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from cryptography.fernet import Fernet
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("trustgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'trustgate.db'}"


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    totp_issuer: str = "TrustGate"
    # Number of 30-second steps accepted on either side of "now".
    totp_valid_window: int = 1

    # ------------------------------------------------------------------
    # WebAuthn relying party
    # ------------------------------------------------------------------

    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "TrustGate"
    # Comma-separated list. Empty string means https://{webauthn_rp_id} only.
    webauthn_origins: str = ""
    webauthn_timeout_ms: int = 60000

    # ------------------------------------------------------------------
    # Security event log
    # ------------------------------------------------------------------

    security_event_retention: int = 10000

    @property
    def allowed_origins(self) -> list[str]:
        """Parse WEBAUTHN_ORIGINS into a list of exact origins.

        An empty setting falls back to the HTTPS origin of the RP ID. Never a
        wildcard: an origin mismatch must fail the ceremony.
        """
        origins = [o.strip().rstrip("/") for o in self.webauthn_origins.split(",") if o.strip()]
        return origins or [f"https://{self.webauthn_rp_id}"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_keys(self) -> "Settings":
        """Enforce the key policy [K1] [K2] [K3].

        Dev mode (DEBUG=true): auto-generate missing keys with a warning.
            Enrolled MFA secrets will not survive a restart -- acceptable for
            local dev and tests.

        Production mode: refuse to start if either key is missing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Backup codes will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")

        if not self.encryption_key:
            if self.debug:
                self.encryption_key = Fernet.generate_key().decode("ascii")
                logger.warning("WARNING: Using auto-generated ENCRYPTION_KEY. MFA secrets will not survive restarts.")
            else:
                raise ValueError(
                    "ENCRYPTION_KEY is required in production mode. "
                    "Generate one with: python -c 'from cryptography.fernet import Fernet; "
                    "print(Fernet.generate_key().decode())'"
                )
        try:
            Fernet(self.encryption_key)
        except (ValueError, TypeError) as exc:
            raise ValueError("ENCRYPTION_KEY must be 32 url-safe base64-encoded bytes.") from exc

        if self.totp_valid_window < 0:
            raise ValueError("TOTP_VALID_WINDOW must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    All modules should call get_settings() rather than constructing Settings()
    directly. In tests: call get_settings.cache_clear() between test cases if
    you need to inject different environment variables.
    """
    return Settings()
