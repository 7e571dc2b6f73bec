"""
budget_runtime/core/config.py
Configuration management using Pydantic Settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import AliasChoices, Field, field_validator, model_validator
from typing import Optional, Literal
from pathlib import Path


class Settings(BaseSettings):
    """
    Runtime Supervisor Configuration
    Environment variables can override these defaults
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ========================================================================
    # Application Settings
    # ========================================================================
    APP_NAME: str = "Budget-Runtime"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # Install root: holds data/ (database, backups, PID file) and the web build
    APP_DIR: Path = Field(default_factory=Path.cwd)

    # ========================================================================
    # Embedded Database Settings
    # ========================================================================
    # Defaults to <APP_DIR>/data/budget-local when unset
    DB_PATH: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("DB_PATH", "PGLITE_DB_LOCATION"),
    )

    # ========================================================================
    # API Process Settings
    # ========================================================================
    API_HOST: str = "127.0.0.1"
    API_PORT: int = Field(default=3401, ge=1, le=65535)

    # ========================================================================
    # Web Client Process Settings
    # ========================================================================
    WEB_PORT: int = Field(
        default=3400,
        ge=1,
        le=65535,
        validation_alias=AliasChoices("WEB_PORT", "SERVER_PORT"),
    )
    WEB_COMMAND: str = "node server.js"  # run from APP_DIR

    # ========================================================================
    # Supervisor Settings
    # ========================================================================
    HEALTH_TIMEOUT: float = Field(default=20.0, gt=0)  # seconds
    HEALTH_INTERVAL: float = Field(default=0.5, gt=0)
    HEALTH_REQUEST_TIMEOUT: float = Field(default=2.0, gt=0)
    MAX_RESTARTS: int = Field(default=3, ge=0)
    RESTART_DELAY: float = Field(default=1.0, ge=0)
    SHUTDOWN_GRACE: float = Field(default=5.0, gt=0)
    OPEN_BROWSER: bool = True
    BROWSER_DELAY: float = 2.0  # let the web client finish booting

    # ========================================================================
    # Logging Settings
    # ========================================================================
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    LOG_FORMAT: str = "console"  # "json" or "console"

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator("APP_DIR")
    def resolve_app_dir(cls, v):
        """Anchor relative paths at the install root"""
        return v.expanduser().resolve()

    @model_validator(mode="after")
    def default_db_path(self):
        if self.DB_PATH is None:
            self.DB_PATH = self.data_dir / "budget-local"
        else:
            self.DB_PATH = self.DB_PATH.expanduser()
            if not self.DB_PATH.is_absolute():
                self.DB_PATH = self.APP_DIR / self.DB_PATH
        return self

    # ========================================================================
    # Properties
    # ========================================================================

    @property
    def data_dir(self) -> Path:
        return self.APP_DIR / "data"

    @property
    def pid_file_path(self) -> Path:
        """PID file read by `budget-runtime stop`"""
        return self.data_dir / ".pid"

    @property
    def health_url(self) -> str:
        return f"http://{self.API_HOST}:{self.API_PORT}/health"

    @property
    def web_url(self) -> str:
        return f"http://localhost:{self.WEB_PORT}"


# ============================================================================
# Singleton Pattern - Global Settings Instance
# ============================================================================

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get or create settings instance (Singleton)
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Re-read environment and .env (tests, CLI overrides)"""
    global _settings
    _settings = Settings()
    return _settings


# ============================================================================
# Export
# ============================================================================

__all__ = ["Settings", "get_settings", "reload_settings"]
