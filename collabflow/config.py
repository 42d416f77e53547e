from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Connection settings for the Redis notification sink."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotificationConfig(BaseModel):
    """Notification sink settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class CollabFlowConfig(BaseModel):
    """Top-level configuration model."""

    notifications: NotificationConfig = NotificationConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CollabFlowConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the COLLABFLOW_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("COLLABFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CollabFlowConfig(**data)
    else:
        config = CollabFlowConfig()

    env_db_url = os.getenv("COLLABFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_notifier = os.getenv("COLLABFLOW_NOTIFIER")
    if env_notifier:
        config.notifications.backend = env_notifier.lower()
    env_level = os.getenv("COLLABFLOW_LOG_LEVEL")
    if env_level:
        config.log_level = env_level.upper()
    return config
