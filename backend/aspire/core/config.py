from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional, Union
import secrets

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PredictionSettings(BaseModel):
    """External prediction service settings"""
    API_URL: str = Field(default="http://localhost:5080")
    ENABLED: bool = Field(default=True)
    MOCK_MODE: bool = Field(default=False)
    TIMEOUT_SECONDS: float = Field(default=10.0, ge=1, le=120)

    @field_validator("API_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def use_mock(self) -> bool:
        return self.MOCK_MODE or not self.ENABLED


class StorageSettings(BaseModel):
    """Case and job persistence settings"""
    BACKEND: Literal["local", "redis"] = Field(default="local")
    DATA_DIR: Path = Field(default=Path("data"))

    # Redis hash backend
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    CASES_HKEY: str = Field(default="aspire:cases")
    JOBS_HKEY: str = Field(default="aspire:jobs")

    @property
    def is_local(self) -> bool:
        return self.BACKEND == "local"


class FileStoreSettings(BaseModel):
    """Content-addressed file store used for payload archiving in non-local mode"""
    API_URL: str = Field(default="http://localhost:31234")
    TIMEOUT_SECONDS: float = Field(default=15.0, ge=1, le=300)

    @field_validator("API_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class SecuritySettings(BaseModel):
    """Security and authentication settings"""
    JWT_SECRET_KEY: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    JWT_ALGORITHM: str = Field(default="HS256")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=60 * 24, ge=1, le=60 * 24 * 7)
    ADMIN_USERNAMES: List[str] = Field(default=["admin"])


class Settings(BaseSettings):
    """Main application settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=True,
        extra="ignore",
    )

    # Basic application settings
    ENVIRONMENT: Literal["development", "staging", "production"] = Field(default="development")
    DEBUG: bool = Field(default=False)
    API_VERSION: str = Field(default="v1")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    LOG_FORMAT: Literal["console", "json"] = Field(default="console")

    # CORS settings
    CORS_ORIGINS: Union[List[str], str] = Field(default=["http://localhost:3000"])
    CORS_ALLOW_CREDENTIALS: bool = Field(default=True)

    # Monitoring
    PROMETHEUS_ENABLED: bool = Field(default=True)

    # Case identifiers
    CASE_ID_PREFIX: str = Field(default="R1", min_length=1, max_length=8)

    # Nested configuration objects
    prediction: PredictionSettings = Field(default_factory=PredictionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    file_store: FileStoreSettings = Field(default_factory=FileStoreSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> List[str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",") if i.strip()]
        return v

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate critical settings for production environment"""
        if self.ENVIRONMENT == "production" and self.DEBUG:
            raise ValueError("DEBUG must be False in production")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class AppConstants:
    """Application-wide constants"""

    # Pagination
    DEFAULT_PAGE_SIZE = 10
    MAX_PAGE_SIZE = 100

    # Prediction labels
    LABEL_ASD = "ASD"
    LABEL_HEALTHY = "Healthy"

    # Risk buckets (probability lower bounds)
    HIGH_RISK_THRESHOLD = 0.7
    MEDIUM_RISK_THRESHOLD = 0.4
    DECISION_THRESHOLD = 0.5

    # Mock predictor
    MOCK_PROBABILITY_FLOOR = 0.05
    MOCK_PROBABILITY_CEILING = 0.95
    MOCK_JITTER = 0.1
    MOCK_PROCESSOR_VERSION = "0.1.0-mock"

    # Health check
    HEALTH_CHECK_TIMEOUT = 5


__all__ = [
    "Settings",
    "PredictionSettings",
    "StorageSettings",
    "FileStoreSettings",
    "SecuritySettings",
    "get_settings",
    "AppConstants",
]
