import dataclasses
from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://coop_admin:coop_secret@db:5432/coopledger"
    JWT_SECRET: str = "coopledger-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    AUDIT_STORAGE_PATH: str = "./audit_storage"

    # Ledger rules
    BALANCE_TOLERANCE: Decimal = Decimal("0.01")
    BALANCE_CACHE_TTL_SECONDS: int = 300
    RETAINED_EARNINGS_CODE: str = "3200"

    # Scheduler
    AUTO_CLOSE_PERIODS: bool = False
    AUTO_CLOSE_INTERVAL_HOURS: int = 24
    AUDIT_RETENTION_INTERVAL_HOURS: int = 24
    AUDIT_READ_RETENTION_DAYS: int = 90
    AUDIT_SYSTEM_RETENTION_DAYS: int = 30

    class Config:
        env_file = ".env"


settings = Settings()


@dataclasses.dataclass(frozen=True)
class LedgerConfig:
    """Ledger rules handed to the services at construction."""

    balance_tolerance: Decimal = Decimal("0.01")
    balance_cache_ttl_seconds: int = 300
    retained_earnings_code: str = "3200"

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "LedgerConfig":
        return cls(
            balance_tolerance=source.BALANCE_TOLERANCE,
            balance_cache_ttl_seconds=source.BALANCE_CACHE_TTL_SECONDS,
            retained_earnings_code=source.RETAINED_EARNINGS_CODE,
        )
