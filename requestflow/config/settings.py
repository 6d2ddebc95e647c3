"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional, Dict


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Database Configuration (workflow/request store)
    database_url_sqlite: str = Field(
        default="sqlite+aiosqlite:///./requestflow.db",
        description="SQLite database URL for the workflow and request store"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )

    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600  # Recycle connections after 1 hour

    # Target Databases
    # JSON mapping of connection name -> async SQLAlchemy URL, e.g.
    # TARGET_CONNECTIONS='{"crm": "sqlite+aiosqlite:///./crm.db"}'
    target_connections: Dict[str, str] = Field(
        default_factory=dict,
        description="Named target connections that approved requests are applied to"
    )
    target_pool_pre_ping: bool = True
    target_echo: bool = False

    # Application Configuration
    # MUST be set via environment variables - no insecure defaults
    secret_key: str = Field(
        ...,
        description="Secret used to sign outgoing notification payloads - MUST be set in .env"
    )

    # Actors and roles
    system_actor_id: str = "System"
    system_actor_name: str = "System"
    admin_role: str = "Admin"

    # Workflow Configuration
    workflow_stall_threshold_days: int = 7

    # Notification Webhook (Optional)
    notification_webhook_url: Optional[str] = None
    notification_timeout_seconds: float = 10.0

    # Retry Configuration
    max_retry_attempts: int = 3
    retry_backoff_multiplier: float = 2.0
    retry_initial_wait_seconds: float = 1.0
    retry_max_wait_seconds: float = 60.0

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5
    circuit_breaker_timeout_duration: int = 60

    # Event Bus Configuration
    event_bus_max_queue_size: int = 1000
    event_bus_max_retries: int = 3

    # Idempotency Configuration
    idempotency_key_expiry_hours: int = 24

    # Reconciliation sweep (stuck "workflow completed but not applied" requests)
    reconciliation_enabled: bool = False
    reconciliation_interval_seconds: int = 300

    # Environment
    environment: str = "development"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """
        Returns the SQLite database URL.
        """
        return self.database_url_sqlite

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment.lower() == "production"

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        import structlog
        logger = structlog.get_logger()

        errors = []

        if not self.database_url:
            errors.append("DATABASE_URL must be set")

        if not self.secret_key:
            errors.append("SECRET_KEY must be set in environment variables")

        for name, url in self.target_connections.items():
            if not url:
                errors.append(f"Target connection '{name}' has an empty URL")

        if not self.target_connections:
            logger.warning(
                "target_connections_not_configured",
                message="TARGET_CONNECTIONS not set - approved requests cannot be applied"
            )

        if not self.notification_webhook_url:
            logger.warning(
                "notifications_not_configured",
                message="NOTIFICATION_WEBHOOK_URL not set - notifications disabled"
            )

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def get_connection_args(self) -> dict:
        """Get SQLite-specific connection arguments"""
        return {
            "timeout": 10.0,
            "check_same_thread": False,
        }


# Global settings instance
settings = Settings()
