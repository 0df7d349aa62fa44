"""
Application configuration using Pydantic Settings
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # API
    API_KEY: Optional[str] = None
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Job definitions (connections + jobs) loaded at startup
    DEFINITIONS_FILE: Optional[str] = None

    # Execution engine
    RESUME_ENABLED: bool = False
    MEMORY_THRESHOLD_MB: int = 1024
    MEMORY_CHECK_INTERVAL: int = 10  # connections between memory samples
    QUERY_TIMEOUT_MS: int = 300000
    CHECKPOINT_DIR: str = "logs/checkpoints"

    # Destination writes
    MAX_RETRIES: int = 3
    RETRY_DELAY_SECONDS: float = 1.0
    STREAM_FLUSH_INTERVAL_SECONDS: float = 10.0
    STREAM_BATCH_SIZE: int = 150  # rows

    # Connection health probing (0 disables the periodic probe)
    HEALTH_CHECK_INTERVAL_MINUTES: int = 15
    CONNECTION_TEST_TIMEOUT_SECONDS: int = 30

    # Progress events kept in memory for the operator API
    PROGRESS_HISTORY_SIZE: int = 500

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
