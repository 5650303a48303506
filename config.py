# config.py

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Environment-driven settings for the Posts API.
    """

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    # ---- Database ----
    database_url: str = Field(default="sqlite+aiosqlite:///./posts.db", alias="DATABASE_URL")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO") # True logs every SQL statement

    # ---- Logging ----
    log_level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = Field(default="INFO", alias="LOG_LEVEL")

    # ---- Resource policy ----
    # When on, createdAt/updatedAt are assigned by the server and dropped from write payloads
    server_managed_timestamps: bool = Field(default=False, alias="POSTS_SERVER_TIMESTAMPS")
    # When on, keys outside the write projection (e.g. "id") fail validation instead of being ignored
    reject_unknown_fields: bool = Field(default=False, alias="POSTS_REJECT_UNKNOWN_FIELDS")

    # ---- Pagination ----
    page_size: int = Field(default=10, ge=1, le=100, alias="POSTS_PAGE_SIZE")

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, value):
        return value.upper() if isinstance(value, str) else value


@lru_cache
def get_settings() -> Settings:
    return Settings()
