"""Application configuration management using Pydantic Settings.

This module loads and validates environment variables using Pydantic Settings.
All configuration is loaded from environment variables or a .env file.
"""

from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        database_url: Database connection string (PostgreSQL in production)
        database_pool_size: Number of connections to maintain in pool
        database_max_overflow: Maximum overflow connections beyond pool_size
        database_statement_timeout_ms: Per-statement timeout (PostgreSQL only)
        database_connect_timeout_seconds: Connection timeout (PostgreSQL only)
        environment: Application environment (development, staging, production)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        questionnaires_dir: Directory containing questionnaire YAML files
        git_commit_sha: Git commit SHA reported by the root endpoint
        secret_key: Secret used to verify volunteer bearer tokens
        respondent_key_salt: Salt for one-way respondent key hashing
        allowed_origins: Comma-separated list of allowed CORS origins
        rate_limit_max: Submission attempts allowed per key per window
        rate_limit_window_seconds: Rate limit window length
        rate_limit_redis_url: Optional Redis URL for shared rate limit counters
        persistence_max_attempts: Attempts per durable store operation
        persistence_base_delay_ms: First retry delay
        persistence_max_delay_ms: Upper bound for a single retry delay
        answer_batch_size: Answers inserted per store operation
        telemetry_url: Optional analytics endpoint receiving JSON events
        telemetry_timeout_seconds: Timeout for one telemetry delivery
        location_bounds: Optional "min_lat,max_lat,min_lng,max_lng" box
    """

    # Database Configuration
    database_url: str = Field(
        description="Database connection string"
    )
    database_pool_size: int = Field(
        default=5,
        description="Number of database connections in pool"
    )
    database_max_overflow: int = Field(
        default=10,
        description="Maximum overflow connections beyond pool size"
    )
    database_statement_timeout_ms: int = Field(
        default=10000,
        ge=0,
        description="Statement timeout applied to every PostgreSQL connection"
    )
    database_connect_timeout_seconds: int = Field(
        default=5,
        ge=1,
        description="Connection timeout for PostgreSQL"
    )

    # Application Configuration
    environment: str = Field(
        default="development",
        description="Application environment"
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    questionnaires_dir: str = Field(
        default="./questionnaires",
        description="Path to questionnaires directory"
    )
    git_commit_sha: str = Field(
        default="local",
        description="Git commit SHA for versioning"
    )

    # Security Configuration
    secret_key: str = Field(
        description="Secret key for volunteer token verification"
    )
    respondent_key_salt: str = Field(
        description="Salt for one-way respondent key hashing (must be kept secret)"
    )
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8000",
        description="Comma-separated list of allowed CORS origins"
    )

    # Rate Limiting
    rate_limit_max: int = Field(
        default=50,
        ge=1,
        description="Submission attempts allowed per window"
    )
    rate_limit_window_seconds: int = Field(
        default=15 * 60,
        ge=1,
        description="Rate limit window length in seconds"
    )
    rate_limit_redis_url: Optional[str] = Field(
        default=None,
        description="Redis URL for shared rate limit counters (in-memory if unset)"
    )

    # Batch Upload
    batch_rate_limit_max: int = Field(
        default=5,
        ge=1,
        description="Batch uploads allowed per window"
    )
    batch_rate_limit_window_seconds: int = Field(
        default=30 * 60,
        ge=1,
        description="Batch upload rate limit window length in seconds"
    )
    batch_max_submissions: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Submissions accepted in one batch upload"
    )

    # Persistence Retry Policy
    persistence_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per durable store operation"
    )
    persistence_base_delay_ms: int = Field(
        default=200,
        ge=0,
        description="Delay before the first retry"
    )
    persistence_max_delay_ms: int = Field(
        default=5000,
        ge=0,
        description="Maximum delay between retries"
    )
    answer_batch_size: int = Field(
        default=25,
        ge=1,
        le=500,
        description="Answers inserted per store operation"
    )

    # Telemetry
    telemetry_url: Optional[str] = Field(
        default=None,
        description="Analytics endpoint receiving JSON events"
    )
    telemetry_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Timeout for a single telemetry delivery"
    )

    # Sanitizer
    location_bounds: Optional[str] = Field(
        default=None,
        description="Accepted geolocation box as min_lat,max_lat,min_lng,max_lng"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment is one of the allowed values."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Log level must be one of {allowed}")
        return v_upper

    @field_validator("location_bounds")
    @classmethod
    def validate_location_bounds(cls, v: Optional[str]) -> Optional[str]:
        """Validate the bounding box has four ordered numbers."""
        if v is None or not v.strip():
            return None
        parts = [p.strip() for p in v.split(",")]
        if len(parts) != 4:
            raise ValueError("location_bounds must be min_lat,max_lat,min_lng,max_lng")
        try:
            min_lat, max_lat, min_lng, max_lng = (float(p) for p in parts)
        except ValueError:
            raise ValueError("location_bounds must contain numbers")
        if min_lat > max_lat or min_lng > max_lng:
            raise ValueError("location_bounds minimums must not exceed maximums")
        return v

    def get_allowed_origins_list(self) -> List[str]:
        """Parse allowed_origins string into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]

    def get_location_bounds(self) -> Optional[Tuple[float, float, float, float]]:
        """Parse location_bounds into (min_lat, max_lat, min_lng, max_lng)."""
        if self.location_bounds is None:
            return None
        min_lat, max_lat, min_lng, max_lng = (
            float(p) for p in self.location_bounds.split(",")
        )
        return min_lat, max_lat, min_lng, max_lng

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings: Application settings singleton

    Note:
        Uses lru_cache to ensure settings are only loaded once
        and shared across the application.
    """
    return Settings()
