"""Application-level configuration."""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class AppConfig:
    """Configuration for the HTTP server, logging and rate limiting."""

    # Server settings
    environment: str = "development"
    host: str = "127.0.0.1"
    port: int = 3001
    cors_origin: str = "http://localhost:5173"

    # Rate limiting
    rate_limit_window_seconds: int = 60
    rate_limit_max_requests: int = 100
    login_rate_limit_max: int = 5
    login_rate_limit_window_minutes: int = 15

    # Batch operations
    batch_max_workers: int = 8

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_date_format: str = "%Y-%m-%d %H:%M:%S"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create config from environment variables."""
        return cls(
            environment=os.getenv("APP_ENV", "development"),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "3001")),
            cors_origin=os.getenv("CORS_ORIGIN", "http://localhost:5173"),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            rate_limit_max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100")),
            login_rate_limit_max=int(os.getenv("LOGIN_RATE_LIMIT_MAX", "5")),
            login_rate_limit_window_minutes=int(os.getenv("LOGIN_RATE_LIMIT_WINDOW_MINUTES", "15")),
            batch_max_workers=int(os.getenv("BATCH_MAX_WORKERS", "8")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    @property
    def is_production(self) -> bool:
        """Whether internal error messages must be hidden from clients."""
        return self.environment.lower() == "production"

    def validate(self) -> None:
        """Validate configuration."""
        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(
                f"Log level must be one of {valid_log_levels}, got {self.log_level}"
            )

        if not 0 < self.port < 65536:
            raise ValueError(f"Port must be between 1 and 65535, got {self.port}")

        if self.rate_limit_window_seconds <= 0:
            raise ValueError("Rate limit window must be positive")

        if self.rate_limit_max_requests <= 0:
            raise ValueError("Rate limit max requests must be positive")

        if self.login_rate_limit_max <= 0:
            raise ValueError("Login rate limit must be positive")

        if self.batch_max_workers <= 0:
            raise ValueError("Batch max workers must be positive")
