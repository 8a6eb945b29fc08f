# backend/chatline/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


logger = logging.getLogger(__name__)

# Load .env file only if not in CI
if not os.getenv("CI"):
    env_path = Path(__file__).parent.parent.parent / ".env"  # Goes up to backend/.env
    logger.debug(f"[CONFIG] Looking for .env at: {env_path}")
    load_dotenv(env_path)

_DEFAULT_SECRET_KEY = SecretStr("chatline-development-secret-change-me")


class Settings(BaseSettings):
    environment: str = Field(default="development", description="Deployment environment name")
    is_testing: bool = Field(default=False, description="Set by the test suite")
    log_level: str = Field(default="INFO", description="Root log level")

    # Token validation (issuance lives in the identity service)
    secret_key: SecretStr = Field(
        default=_DEFAULT_SECRET_KEY,
        description="Shared secret used to verify JWT bearer tokens",
    )
    algorithm: str = "HS256"

    # Directory store
    storage_backend: Literal["memory", "sql"] = Field(
        default="memory",
        description="Directory store implementation selected at startup",
    )
    database_url: str = Field(
        default="sqlite+pysqlite:///./chatline.db",
        description="SQLAlchemy URL used when storage_backend=sql",
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements to the log")

    # Realtime
    ws_token_query_param: str = Field(
        default="token", description="Query parameter carrying the bearer token on /ws"
    )
    ws_outbound_queue_size: int = Field(
        default=256,
        description="Per-connection outbound frame buffer; frames beyond it are dropped",
    )
    membership_cache_enabled: bool = Field(
        default=True, description="Cache conversation participant sets in memory"
    )
    notification_preview_length: int = Field(
        default=50, description="Text notification bodies are truncated past this length"
    )
    conversation_history_limit: int = Field(
        default=50, description="Default page size for conversation history"
    )

    # Monitoring
    slow_operation_threshold_seconds: float = Field(
        default=1.0, description="Service operations slower than this are logged as warnings"
    )

    model_config = SettingsConfigDict(
        env_file=".env" if not os.getenv("CI") else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("ws_outbound_queue_size", "notification_preview_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return (value or "INFO").strip().upper()


settings = Settings()
