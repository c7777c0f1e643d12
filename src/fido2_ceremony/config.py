"""Configuration module for the FIDO2 ceremony engine.

Config file discovery order:
    1. ``FIDO2_CEREMONY_CONFIG_PATH`` environment variable
    2. ``.fido2`` in the project root
    3. ``.env`` in the project root
    4. environment variables only

The ``Settings`` class uses Pydantic's ``BaseSettings`` so every field can be
overridden from the environment. Extra environment variables are allowed.

Logging is not configured here: the logging manager imports ``settings``, so
this module must not import it back.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
FIDO2_FILENAME: str = ".fido2"
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "FIDO2_CEREMONY_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def get_config_path() -> Optional[str]:
    """Determine the config file path to use.

    Returns:
        Optional[str]: Path to config file, or None when only environment
        variables should be used.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    fido2_path: Path = PROJECT_ROOT / FIDO2_FILENAME
    if fido2_path.exists():
        return str(fido2_path)
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Engine settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    APP_NAME: str = "fido2-ceremony"
    ENV: str = "dev"
    DEBUG: bool = False
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Relying party
    WEBAUTHN_RP_NAME: str = "FIDO2 Ceremony"
    WEBAUTHN_RP_ID: str = "localhost"
    WEBAUTHN_ORIGIN: str = "http://localhost"
    WEBAUTHN_TIMEOUT_MS: int = 60000

    # MongoDB
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "fido2_ceremony"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Collections
    CHALLENGE_COLLECTION: str = "webauthn_challenges"
    CREDENTIAL_COLLECTION: str = "webauthn_credentials"
    PRINCIPAL_COLLECTION: str = "principals"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"  # empty string disables per-worker log files
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_BUFFER_FILE: str = "loki_buffer.log"
    LOKI_COMPRESS: bool = True

    @field_validator("WEBAUTHN_ORIGIN")
    @classmethod
    def origin_must_have_scheme(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("WEBAUTHN_ORIGIN must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("WEBAUTHN_RP_ID")
    @classmethod
    def rp_id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("WEBAUTHN_RP_ID must be set")
        return v.strip()

    @field_validator("LOG_LEVEL")
    @classmethod
    def log_level_known(cls, v: str) -> str:
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(VALID_LOG_LEVELS)}")
        return level

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")


settings = Settings()
