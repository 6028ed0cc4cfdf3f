"""
Client configuration, read from the environment (CHAT_CLIENT_*) or a .env file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    # ============ Server ============
    SERVER_URL: str = "http://localhost:8000"

    # ============ Key storage ============
    VAULT_DIR: str = "client_data"
    RSA_KEY_SIZE: int = Field(default=2048, ge=2048)
    PBKDF2_ITERATIONS: int = Field(default=100000, ge=10000)

    # ============ Membership ============
    LEAVE_RETRIES: int = Field(default=3, ge=1)
    PREVIEW_LENGTH: int = 40

    LOG_LEVEL: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="CHAT_CLIENT_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> ClientSettings:
    return ClientSettings()
