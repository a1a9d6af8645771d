from enum import Enum
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: Environment = Environment.PRODUCTION
    database_url: str = "sqlite:///users.db"
    api_title: str = "User Management API"
    log_level: str = "INFO"
    access_token_expire_minutes: int = 15
    jwt_secret: str = "secret"
    jwt_algorithm: str = "HS256"
    abuse_engine_key: Optional[str] = None

    @field_validator("environment", mode="before")
    @classmethod
    def strict_unless_development(cls, value):
        # anything that is not explicitly development runs with production rules
        if isinstance(value, str) and value.strip().lower() == Environment.DEVELOPMENT.value:
            return Environment.DEVELOPMENT
        return Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment is Environment.DEVELOPMENT


settings = Settings()
