"""Configuration management for the Pipeline Engine."""

import os
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .core.exceptions import ConfigurationError


ENV_PREFIX = "PIPELINE_ENGINE_"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AppConfig(BaseModel):
    """Application configuration settings."""

    # Application settings
    app_name: str = Field(default="Pipeline Engine", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    reload: bool = Field(default=False, description="Enable auto-reload in development")

    # Database settings
    database_url: str = Field(
        default="sqlite:///./pipeline_engine.db",
        description="Database connection URL"
    )
    database_echo: bool = Field(default=False, description="Enable SQLAlchemy query logging")

    # Execution defaults, overridable per request
    max_concurrency: int = Field(default=4, description="Maximum nodes in flight per run")
    node_timeout: float = Field(default=120.0, description="Per-invocation node timeout in seconds")
    max_retries: int = Field(default=3, description="Maximum attempts per node, first attempt included")
    retry_base_delay: float = Field(default=1.0, description="Initial retry backoff in seconds")
    retry_max_delay: float = Field(default=30.0, description="Upper bound on retry backoff in seconds")
    retry_jitter: bool = Field(default=True, description="Randomize retry backoff")
    run_history_size: int = Field(default=100, description="Finished runs kept in memory")

    # External services
    service_base_url: Optional[str] = Field(default=None, description="Base URL of the generation service")
    service_api_key: Optional[str] = Field(default=None, description="API key sent to the generation service")
    service_timeout: float = Field(default=120.0, description="HTTP timeout for generation calls in seconds")
    download_dir: str = Field(default="./downloads", description="Directory for output_download nodes")

    # Logging settings
    log_level: LogLevel = Field(default=LogLevel.INFO, description="Logging level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )
    log_file: Optional[str] = Field(default=None, description="Log file path")
    log_max_size: int = Field(default=10485760, description="Maximum log file size in bytes")  # 10MB
    log_backup_count: int = Field(default=5, description="Number of log backup files to keep")
    structured_logging: bool = Field(default=False, description="Emit JSON log lines")

    # Performance settings
    slow_request_threshold: float = Field(default=5.0, description="Slow request threshold in seconds")

    # Security settings
    cors_origins: list = Field(
        default=["*"],
        description="CORS allowed origins"
    )

    @field_validator('database_url')
    @classmethod
    def validate_database_url(cls, v):
        """Validate database URL format."""
        if not v:
            raise ValueError("Database URL cannot be empty")

        supported_schemes = ['sqlite', 'postgresql', 'mysql']
        scheme = v.split('://')[0].split('+')[0].lower()

        if scheme not in supported_schemes:
            raise ValueError(f"Unsupported database scheme: {scheme}. Supported: {supported_schemes}")

        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        """Validate port number."""
        if not 1 <= v <= 65535:
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator('max_concurrency', 'max_retries', 'run_history_size')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator('node_timeout', 'service_timeout')
    @classmethod
    def validate_timeouts(cls, v):
        """Validate timeout values."""
        if v <= 0:
            raise ValueError("Timeout must be positive")
        return v

    @property
    def is_sqlite(self) -> bool:
        """Check if using SQLite database."""
        return self.database_url.lower().startswith("sqlite")

    def get_database_connect_args(self) -> Dict[str, Any]:
        """Get database connection arguments based on database type."""
        if self.is_sqlite:
            return {"check_same_thread": False}
        return {}

    def get_uvicorn_config(self) -> Dict[str, Any]:
        """Get Uvicorn server configuration."""
        return {
            "host": self.host,
            "port": self.port,
            "reload": self.reload,
            "log_level": self.log_level.lower(),
            "access_log": self.debug
        }

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from PIPELINE_ENGINE_* environment variables."""
        def get_env(key: str, default=None, type_func=str):
            """Get environment variable with type conversion."""
            value = os.getenv(f"{ENV_PREFIX}{key}")
            if value is None:
                return default
            if type_func == bool:
                return str(value).lower() in ('true', '1', 'yes', 'on')
            elif type_func == list:
                return [item.strip() for item in value.split(',') if item.strip()] if value else default
            return type_func(value)

        defaults = cls()
        return cls(
            app_name=get_env("APP_NAME", defaults.app_name),
            app_version=get_env("APP_VERSION", defaults.app_version),
            debug=get_env("DEBUG", False, bool),
            host=get_env("HOST", defaults.host),
            port=get_env("PORT", defaults.port, int),
            reload=get_env("RELOAD", False, bool),
            database_url=get_env("DATABASE_URL", defaults.database_url),
            database_echo=get_env("DATABASE_ECHO", False, bool),
            max_concurrency=get_env("MAX_CONCURRENCY", defaults.max_concurrency, int),
            node_timeout=get_env("NODE_TIMEOUT", defaults.node_timeout, float),
            max_retries=get_env("MAX_RETRIES", defaults.max_retries, int),
            retry_base_delay=get_env("RETRY_BASE_DELAY", defaults.retry_base_delay, float),
            retry_max_delay=get_env("RETRY_MAX_DELAY", defaults.retry_max_delay, float),
            retry_jitter=get_env("RETRY_JITTER", True, bool),
            run_history_size=get_env("RUN_HISTORY_SIZE", defaults.run_history_size, int),
            service_base_url=get_env("SERVICE_BASE_URL", None),
            service_api_key=get_env("SERVICE_API_KEY", None),
            service_timeout=get_env("SERVICE_TIMEOUT", defaults.service_timeout, float),
            download_dir=get_env("DOWNLOAD_DIR", defaults.download_dir),
            log_level=LogLevel(get_env("LOG_LEVEL", "INFO").upper()),
            log_format=get_env("LOG_FORMAT", defaults.log_format),
            log_file=get_env("LOG_FILE", None),
            log_max_size=get_env("LOG_MAX_SIZE", defaults.log_max_size, int),
            log_backup_count=get_env("LOG_BACKUP_COUNT", defaults.log_backup_count, int),
            structured_logging=get_env("STRUCTURED_LOGGING", False, bool),
            slow_request_threshold=get_env("SLOW_REQUEST_THRESHOLD", defaults.slow_request_threshold, float),
            cors_origins=get_env("CORS_ORIGINS", ["*"], list),
        )


# Global configuration instance
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def load_config(config_file: Optional[str] = None) -> AppConfig:
    """Load configuration from a .env file (if any) and environment variables."""
    global _config

    from dotenv import load_dotenv

    if config_file and os.path.exists(config_file):
        load_dotenv(config_file)
    elif os.path.exists('.env'):
        load_dotenv('.env')

    _config = AppConfig.from_env()

    return _config


def reset_config():
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    _config = None


def validate_config(config: AppConfig) -> None:
    """Validate configuration settings that depend on the environment."""
    errors = []

    if config.is_sqlite and ":memory:" not in config.database_url:
        db_path = config.database_url.split(":///", 1)[-1]
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            try:
                os.makedirs(db_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create database directory {db_dir}: {e}")

    if config.log_file:
        log_dir = os.path.dirname(config.log_file)
        if log_dir and not os.path.exists(log_dir):
            try:
                os.makedirs(log_dir, exist_ok=True)
            except OSError as e:
                errors.append(f"Cannot create log directory {log_dir}: {e}")

    if config.retry_base_delay < 0 or config.retry_max_delay < config.retry_base_delay:
        errors.append("Retry delays must satisfy 0 <= retry_base_delay <= retry_max_delay")

    if errors:
        raise ConfigurationError(f"Configuration validation failed: {'; '.join(errors)}")


# Environment-specific configurations
def get_development_config() -> AppConfig:
    """Get development configuration."""
    return AppConfig(
        debug=True,
        reload=True,
        log_level=LogLevel.DEBUG,
        database_echo=True,
    )


def get_testing_config() -> AppConfig:
    """Get testing configuration."""
    return AppConfig(
        debug=True,
        database_url="sqlite:///:memory:",
        log_level=LogLevel.WARNING,
        max_concurrency=2,
        node_timeout=5.0,
        retry_base_delay=0.01,
        retry_max_delay=0.05,
        retry_jitter=False,
    )
