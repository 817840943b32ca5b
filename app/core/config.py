"""
Service configuration.

Values come from environment variables (a local .env file is honoured).
The behavior engine classes never read the environment themselves; the
application factory passes these values in.
"""
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Logging
    LOG_LEVEL: str = Field("INFO", validation_alias="BEHAVIOR_LOG_LEVEL")

    # Storage: unset -> in-memory, otherwise JSON documents rooted here
    STORAGE_DIR: Optional[str] = Field(None, validation_alias="BEHAVIOR_STORAGE_DIR")

    # Sample buffering and prediction cadence
    SAMPLE_BUFFER_SIZE: int = Field(100, gt=0)
    PREDICTION_WINDOW: int = Field(10, gt=0)
    PREDICTION_EVERY_N_SAMPLES: int = Field(5, gt=0)

    # Interventions
    DISPATCH_CONFIDENCE_THRESHOLD: float = Field(0.6, ge=0, le=1)
    INTERVENTION_COOLDOWN_SECONDS: float = Field(60.0, ge=0, allow_inf_nan=False)

    # Session history retention (number of sessions kept per student)
    SESSION_HISTORY_LIMIT: int = Field(10, ge=0)

    # CORS for the UI layer, comma separated
    CORS_ORIGINS: str = "http://localhost:3000"

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("STORAGE_DIR")
    @classmethod
    def _blank_is_unset(cls, value: Optional[str]) -> Optional[str]:
        return value or None

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
