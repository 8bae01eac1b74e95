from functools import lru_cache
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DOCTORS = "Dr. Smith,Dr. Johnson,Dr. Williams"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Comma-separated, avoids JSON parsing of list envs
    doctors: str = DEFAULT_DOCTORS

    # Store Settings
    appointment_store: str = "dynamodb"
    appointments_table: str = "appointments"
    aws_endpoint_url: Optional[str] = None
    store_connect_timeout: float = Field(default=2.0, gt=0)
    store_read_timeout: float = Field(default=5.0, gt=0)
    store_retry_attempts: int = Field(default=3, ge=1)
    store_retry_backoff_seconds: float = Field(default=0.1, ge=0)

    # Logging Settings
    log_level: str = "INFO"

    @field_validator("appointment_store")
    @classmethod
    def _known_store(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in ("dynamodb", "memory"):
            raise ValueError("must be 'dynamodb' or 'memory'")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def doctor_names(self) -> Tuple[str, ...]:
        return tuple(
            item.strip() for item in self.doctors.split(",") if item.strip()
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
