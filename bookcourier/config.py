import os
import logging
from functools import lru_cache
from typing import List

from pydantic import BaseModel, Field


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: str = Field("mongodb://localhost:27017", description="MongoDB connection string")
    database_name: str = Field("bookcourier", description="Database name")
    secret_key: str = Field("dev-secret", description="Shared secret used to sign bearer tokens")
    token_ttl_hours: int = Field(24, ge=1)
    cors_origins: List[str] = Field(default_factory=list)
    debug: bool = False
    log_level: str = "INFO"
    max_pool_size: int = Field(10, ge=1)
    min_pool_size: int = Field(0, ge=0)
    timeout_ms: int = Field(5000, ge=1)
    use_transactions: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        client_url = os.getenv("CLIENT_URL", "http://localhost:3000")
        origins = [client_url, "http://localhost:3000", "http://localhost:5173", "http://localhost:5174"]
        extra = os.getenv("CORS_ORIGINS", "")
        origins.extend(o.strip() for o in extra.split(",") if o.strip())
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "bookcourier"),
            secret_key=os.getenv("SECRET_KEY", "dev-secret"),
            token_ttl_hours=int(os.getenv("TOKEN_TTL_HOURS", 24)),
            # dict.fromkeys keeps the first occurrence order
            cors_origins=list(dict.fromkeys(origins)),
            debug=_flag("DEBUG"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            max_pool_size=int(os.getenv("MONGO_MAX_POOL_SIZE", 10)),
            min_pool_size=int(os.getenv("MONGO_MIN_POOL_SIZE", 0)),
            timeout_ms=int(os.getenv("MONGO_TIMEOUT_MS", 5000)),
            use_transactions=_flag("MONGO_TRANSACTIONS"),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
