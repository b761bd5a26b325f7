from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'caja_user'
    POSTGRES_PASSWORD: str = 'caja_pass'
    POSTGRES_DB: str = 'caja_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    DATABASE_URL: Optional[str] = None  # Override completo (p.ej. sqlite para tests)

    # JWT settings
    APP_SECRET_STRING: str = 'your-super-secret-key-here-change-in-production-2024'
    ALGORITHM: str = 'HS256'

    # Pagination
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    # Caja
    CURRENCY: str = 'EUR'
    CASH_DISCREPANCY_TOLERANCE: Decimal = Decimal('0.00')
    TILL_OPTIMISTIC_RETRIES: int = 1
    TILL_READ_RETRIES: int = 1

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: Optional[str] = None

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def log_level(self) -> str:
        if self.LOG_LEVEL:
            return self.LOG_LEVEL.upper()
        return "INFO" if self.ENVIRONMENT == "production" else "DEBUG"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("CASH_DISCREPANCY_TOLERANCE")
    @classmethod
    def parse_tolerance(cls, v: Decimal) -> Decimal:
        if v < 0:
            raise ValueError("CASH_DISCREPANCY_TOLERANCE no puede ser negativa")
        return v

    @field_validator("TILL_OPTIMISTIC_RETRIES", "TILL_READ_RETRIES")
    @classmethod
    def parse_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("El número de reintentos no puede ser negativo")
        return v

settings = Settings()
