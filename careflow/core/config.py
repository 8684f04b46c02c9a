"""
Configuration for the careflow workflow backend.

Settings cover the database connection, the MQTT change feed, reconnect
backoff for realtime channels, and the rule engine worker pool. Values are
loaded from environment variables or a `.env` file; field names map to the
upper-case variable of the same name (``database_url`` -> ``DATABASE_URL``).
Defaults are suitable for local development.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pathlib import Path
from dotenv import load_dotenv
import logging
import os

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_PATH, override=False)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Database connection string. Production deployments point this at PostgreSQL.
    database_url: str = Field(default="sqlite+pysqlite:///./careflow.db")
    # MQTT broker carrying the per-tenant change feed
    mqtt_broker_host: str = Field(default="localhost")
    mqtt_broker_port: int = Field(default=1883)
    mqtt_username: str | None = Field(default=None)
    mqtt_password: str | None = Field(default=None)
    mqtt_protocol: str = Field(default="v311")
    change_feed_topic_prefix: str = Field(default="careflow")
    enable_change_publisher: bool = Field(default=True)
    # Realtime channel reconnect policy
    reconnect_base_delay_sec: float = Field(default=1.0)
    reconnect_max_delay_sec: float = Field(default=30.0)
    reconnect_max_attempts: int = Field(default=5)
    channel_connect_timeout_sec: float = Field(default=10.0)
    # Rule engine
    workflow_worker_threads: int = Field(default=4)
    action_max_attempts: int = Field(default=1)
    action_retry_base_delay_sec: float = Field(default=5.0)
    # Server-side functions reachable by InvokeExternalFunction actions
    functions_base_url: str | None = Field(default=None)
    functions_token: str | None = Field(default=None)
    functions_timeout_sec: float = Field(default=10.0)
    auto_create_db: bool = Field(default=True)
    auto_run_migrations: bool = Field(default=False)
    # Recovery worker
    reprocess_grace_sec: int = Field(default=300)
    worker_interval_sec: int = Field(default=30)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()


def get_app_env() -> str:
    raw = os.getenv("CAREFLOW_ENV") or os.getenv("APP_ENV") or "dev"
    env = raw.strip().lower()
    if env not in {"dev", "prod"}:
        logging.getLogger("config").warning("Unknown CAREFLOW_ENV=%s; defaulting to dev", raw)
        env = "dev"
    return env


def validate_runtime_settings(current: Settings | None = None) -> None:
    current = current or settings
    env = get_app_env()
    logger = logging.getLogger("config")

    if current.reconnect_base_delay_sec <= 0:
        raise RuntimeError("RECONNECT_BASE_DELAY_SEC must be positive.")
    if current.reconnect_max_delay_sec < current.reconnect_base_delay_sec:
        raise RuntimeError("RECONNECT_MAX_DELAY_SEC must not be lower than RECONNECT_BASE_DELAY_SEC.")
    if current.reconnect_max_attempts < 0:
        raise RuntimeError("RECONNECT_MAX_ATTEMPTS must be zero or positive.")
    if current.action_max_attempts < 1:
        logger.warning("ACTION_MAX_ATTEMPTS=%s is below 1; actions will run once.", current.action_max_attempts)

    if env == "prod":
        if current.database_url.startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must point at a server database in prod.")
        if current.auto_create_db:
            logger.warning("AUTO_CREATE_DB is enabled in prod. Consider running migrations instead.")
        if not current.functions_base_url:
            logger.error("FUNCTIONS_BASE_URL missing in prod; trigger_function actions will fail.")
    elif not current.functions_base_url:
        logger.info("FUNCTIONS_BASE_URL not set; trigger_function actions will fail until configured.")
