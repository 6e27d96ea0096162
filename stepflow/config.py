from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_HTTP_TIMEOUT, DEFAULT_MAX_DELAY_MS, DEFAULT_STEP_TIMEOUT


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "stepflow"


class TransportConfig(BaseModel):
    """Event transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine tuning."""

    max_delay_ms: float = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    default_step_timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    retry_unknown_errors: bool = True


class HttpConfig(BaseModel):
    """Defaults for the http step executor."""

    timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0)
    follow_redirects: bool = True


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    http: HttpConfig = HttpConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
