"""Application configuration management."""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import SecretStr, validator, root_validator


SSL_MODES = ("disable", "require", "verify-ca", "insecure")


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Database
    database_url: Optional[SecretStr] = None
    sqlite_db_path: str = "data/regulations.db"

    # Transport trust for the networked store
    database_ssl_mode: str = "require"
    database_ssl_root_cert: Optional[str] = None

    # Connection pool
    pool_min_size: int = 1
    pool_max_size: int = 10
    pool_idle_timeout: float = 30.0
    pool_acquire_timeout: float = 2.0
    query_timeout: float = 10.0

    # Rate limiting
    rate_limit_max_requests: int = 100
    rate_limit_window_seconds: int = 60
    rate_limit_cleanup_interval_seconds: int = 300

    # Query bounds
    search_max_limit: int = 50
    compare_max_regulations: int = 10

    # Application
    env: str = "development"
    log_level: str = "INFO"
    port: int = 8000

    # CORS
    allowed_origins: list[str] = [
        "http://localhost:3000",
    ]

    @validator("allowed_origins", pre=True)
    def parse_cors_origins(cls, v):
        """Parse comma-separated origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @validator("database_ssl_mode", pre=True)
    def parse_ssl_mode(cls, v):
        """Normalise and check the TLS mode."""
        if v is None:
            return "require"
        mode = str(v).strip().lower()
        if mode not in SSL_MODES:
            raise ValueError(f"database_ssl_mode must be one of {', '.join(SSL_MODES)}")
        return mode

    @validator("database_url", pre=True)
    def parse_database_url(cls, v):
        """Treat an empty DATABASE_URL as unset."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @root_validator(skip_on_failure=True)
    def check_timeouts(cls, values):
        """Pool acquisition must give up before a query would."""
        acquire = values.get("pool_acquire_timeout")
        query = values.get("query_timeout")
        if acquire is not None and query is not None and acquire >= query:
            raise ValueError("pool_acquire_timeout must be shorter than query_timeout")
        if values.get("pool_min_size", 0) > values.get("pool_max_size", 0):
            raise ValueError("pool_min_size cannot exceed pool_max_size")
        return values

    class Config:
        """Pydantic config."""
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


def use_postgres(config: Optional[Settings] = None) -> bool:
    """Check whether a networked store has been configured."""
    config = config or settings
    return config.database_url is not None


def is_production() -> bool:
    """Check if running in production environment."""
    return settings.env.lower() == "production"


def get_log_config() -> dict:
    """Get logging configuration."""
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
            },
            "detailed": {
                "format": "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
            },
        },
        "handlers": {
            "console": {
                "level": settings.log_level,
                "class": "logging.StreamHandler",
                "formatter": "standard" if is_production() else "detailed",
            },
        },
        "root": {
            "level": settings.log_level,
            "handlers": ["console"],
        },
    }
