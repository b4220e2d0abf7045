from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List
from functools import lru_cache

from models import PointPolicy


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Point Balance API"
    app_version: str = "1.0.0"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Security settings
    rate_limit_per_minute: int = 120

    # CORS settings
    allowed_origins: List[str] = ["*"]
    allowed_methods: List[str] = ["GET", "PATCH", "OPTIONS"]
    allowed_headers: List[str] = ["*"]

    # Point policy
    min_charge_amount: int = 1000
    max_charge_amount: int = 100000
    min_use_amount: int = 1000
    max_use_amount: int = 500000
    max_balance: int = 1000000
    lock_timeout_seconds: float = 3.0

    # In-memory store latency, milliseconds per call
    store_latency_ms: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def point_policy(self) -> PointPolicy:
        """Build the policy the point service enforces."""
        return PointPolicy(
            min_charge_amount=self.min_charge_amount,
            max_charge_amount=self.max_charge_amount,
            min_use_amount=self.min_use_amount,
            max_use_amount=self.max_use_amount,
            max_balance=self.max_balance,
            lock_timeout_seconds=self.lock_timeout_seconds,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Environment-specific configurations
class DevelopmentSettings(Settings):
    debug: bool = True
    log_level: str = "DEBUG"
    log_format: str = "text"
    rate_limit_per_minute: int = 600


class ProductionSettings(Settings):
    debug: bool = False
    log_level: str = "INFO"
    allowed_origins: List[str] = []  # Must be specified in production


class TestingSettings(Settings):
    debug: bool = True
    log_level: str = "WARNING"
    rate_limit_per_minute: int = 10000
    lock_timeout_seconds: float = 0.5


def get_settings_for_environment(env: str = "development") -> Settings:
    """Get settings for specific environment."""
    settings_map = {
        "development": DevelopmentSettings,
        "production": ProductionSettings,
        "testing": TestingSettings,
    }

    settings_class = settings_map.get(env.lower(), Settings)
    return settings_class()
