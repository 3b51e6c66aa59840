"""
Application Settings
====================
All runtime configuration is read from the environment (or a local .env file)
through a single cached Settings object:
- Database location
- Token signing secret and lifetime
- CORS origins
- Stock shortage policy (ALLOW_NEGATIVE_STOCK)
"""

from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


PACKAGE_ROOT = Path(__file__).resolve().parents[1]


def default_database_url() -> str:
    """SQLite file in a `data/` folder next to the package."""
    data_dir = PACKAGE_ROOT / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{(data_dir / 'erp_core.db').as_posix()}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: Optional[str] = None
    environment: str = "development"
    log_level: str = "INFO"

    # Security
    secret_key: Optional[str] = None
    token_expire_minutes: int = 60

    # Comma separated; empty means the development defaults
    cors_origins: str = ""

    # Stock policy: False blocks any transition that would drive stock below zero,
    # True applies it and reports the shortage as a warning.
    allow_negative_stock: bool = False

    # Used to scale a recipe whose semi-finished product has no positive batch size
    default_recipe_batch_size: float = 100

    @field_validator("default_recipe_batch_size")
    @classmethod
    def positive_batch_size(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("DEFAULT_RECIPE_BATCH_SIZE must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    def resolved_database_url(self) -> str:
        return self.database_url or default_database_url()

    def cors_origin_list(self) -> List[str]:
        if self.cors_origins:
            return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return [
            "http://127.0.0.1:3000",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://localhost:5173",
        ]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
