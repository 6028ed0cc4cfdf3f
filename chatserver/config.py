"""
Server configuration, read from the environment (CHAT_SERVER_*) or a .env file.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    # ============ Application ============
    APP_NAME: str = "CipherChat Store"
    APP_VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ============ Security ============
    # Override in production, e.g. with `openssl rand -hex 32`
    SECRET_KEY: str = Field(default="change-this-secret-key-in-production")
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # ============ Database ============
    DATABASE_URL: str = Field(default="sqlite+aiosqlite:///./chat.db")

    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CHAT_SERVER_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> ServerSettings:
    return ServerSettings()
