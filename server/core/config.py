"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=8010, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///./data/engine.db", env="DATABASE_URL")
    database_echo: bool = Field(default=False, env="DATABASE_ECHO")
    database_pool_size: int = Field(default=20, env="DATABASE_POOL_SIZE", ge=5, le=100)
    database_max_overflow: int = Field(default=30, env="DATABASE_MAX_OVERFLOW", ge=10, le=100)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Job Queue
    queue_max_pending_per_org: int = Field(default=100, env="QUEUE_MAX_PENDING_PER_ORG", ge=1)
    job_default_max_attempts: int = Field(default=4, env="JOB_DEFAULT_MAX_ATTEMPTS", ge=1, le=20)
    job_retention_days: int = Field(default=7, env="JOB_RETENTION_DAYS", ge=1)
    log_retention_days: int = Field(default=7, env="LOG_RETENTION_DAYS", ge=1)
    execution_retention_days: int = Field(default=30, env="EXECUTION_RETENTION_DAYS", ge=1)

    # Worker
    worker_enabled: bool = Field(default=False, env="WORKER_ENABLED")
    worker_poll_interval: float = Field(default=2.0, env="WORKER_POLL_INTERVAL", ge=0.05, le=300.0)
    worker_concurrency: int = Field(default=2, env="WORKER_CONCURRENCY", ge=1, le=64)
    worker_batch_max: int = Field(default=10, env="WORKER_BATCH_MAX", ge=1, le=10)
    branch_parallelism: int = Field(default=4, env="BRANCH_PARALLELISM", ge=1, le=64)

    # Visibility timeout sweep
    visibility_timeout: int = Field(default=300, env="VISIBILITY_TIMEOUT", ge=10)  # 5 minutes
    sweep_interval: int = Field(default=60, env="SWEEP_INTERVAL", ge=1)

    # Execution limits
    default_max_execution_time_ms: int = Field(default=300000, env="DEFAULT_MAX_EXECUTION_TIME_MS", ge=1000)
    default_node_timeout: float = Field(default=30.0, env="DEFAULT_NODE_TIMEOUT", ge=0.1, le=600.0)

    # Usage metering
    default_execution_limit: int = Field(default=1000, env="DEFAULT_EXECUTION_LIMIT", ge=0)

    # Worker endpoint protection
    cron_secret: Optional[str] = Field(default=None, env="CRON_SECRET")

    # Messaging
    smtp_host: Optional[str] = Field(default=None, env="SMTP_HOST")
    smtp_port: int = Field(default=587, env="SMTP_PORT")
    smtp_user: Optional[str] = Field(default=None, env="SMTP_USER")
    smtp_password: Optional[str] = Field(default=None, env="SMTP_PASSWORD")
    smtp_from_email: Optional[str] = Field(default=None, env="SMTP_FROM_EMAIL")
    smtp_use_tls: bool = Field(default=True, env="SMTP_USE_TLS")
    slack_webhook_url: Optional[str] = Field(default=None, env="SLACK_WEBHOOK_URL")

    # AI
    openai_api_key: Optional[str] = Field(default=None, env="OPENAI_API_KEY")
    ai_model: str = Field(default="gpt-4o-mini", env="AI_MODEL")
    ai_timeout: int = Field(default=30, env="AI_TIMEOUT", ge=5, le=300)

    # Outbound HTTP
    http_timeout: float = Field(default=30.0, env="HTTP_TIMEOUT", ge=1.0, le=300.0)

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":memory:" not in v:
            if ":///" in v:
                db_path = v.split("///")[1]
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
        "env_nested_delimiter": "__",
    }
