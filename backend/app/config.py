"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Workflow Execution Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Workflow engine
    WORKFLOW_MAX_CONCURRENT: int = 5
    WORKFLOW_RETRY_ATTEMPTS: int = 3

    # Step executor (milliseconds)
    STEP_DEFAULT_TIMEOUT_MS: int = 30000
    STEP_RETRY_DELAY_MS: int = 1000
    STEP_RETRY_POLICY: str = "fixed"  # fixed, exponential, linear, none
    STEP_RETRY_MAX_DELAY_MS: int = 60000

    # Built-in control handler
    CONTROL_MAX_DELAY_MS: int = 300000

    # Lifecycle event streams
    EVENT_QUEUE_SIZE: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
