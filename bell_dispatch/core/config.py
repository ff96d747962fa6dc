from typing import Optional
from enum import Enum

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment Configuration
    ENVIRONMENT: Environment = Environment.DEVELOPMENT

    # Project Information
    PROJECT_NAME: str = "bell-dispatch"
    LOG_LEVEL: str = "INFO"

    # Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None
    REDIS_URL: Optional[str] = None

    # Prefix applied to every stored key so environments can share one Redis
    KEY_PREFIX: str = ""

    # Fallback zone for records whose timezone is missing or unknown
    DEFAULT_TIMEZONE: str = "UTC"

    # --- Validators & Derived Settings ---
    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Optional[str]) -> str:
        if v is None or str(v).strip() == "":
            return "INFO"
        return str(v).strip().upper()

    @field_validator("DEFAULT_TIMEZONE", mode="before")
    @classmethod
    def default_timezone_when_blank(cls, v: Optional[str]) -> str:
        if v is None or str(v).strip() == "":
            return "UTC"
        return str(v).strip()

    @model_validator(mode="after")
    def _finalize(self) -> "Settings":
        # Derive REDIS_URL if not provided
        if not self.REDIS_URL:
            auth = f":{self.REDIS_PASSWORD}@" if self.REDIS_PASSWORD else ""
            self.REDIS_URL = f"redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return self


settings = Settings()
