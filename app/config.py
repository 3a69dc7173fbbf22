"""
Configuration
=============
YAML file first, environment variables on top.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./partnerships.db"
DEFAULT_SIGNATURE = "---\nCom os melhores cumprimentos,\nEquipa VecinoCustom\nwww.vecinocustom.com"


class EmailConfig(BaseModel):
    """Settings for step notification emails."""

    enabled: bool = True
    sender_name: str = "VecinoCustom"
    signature: str = DEFAULT_SIGNATURE
    max_attempts: int = 5


class AppConfig(BaseModel):
    """Top-level configuration model."""

    database_url: str = DEFAULT_DATABASE_URL
    database_echo: bool = False
    admin_tokens: dict[str, str] = Field(default_factory=dict)
    email: EmailConfig = EmailConfig()
    log_level: str = "INFO"
    create_tables: bool = True


def _parse_tokens(raw: str) -> dict[str, str]:
    """Parse ``token:user,token2:user2`` into a mapping."""
    tokens = {}
    for pair in raw.split(","):
        pair = pair.strip()
        if not pair:
            continue
        token, _, user = pair.partition(":")
        tokens[token.strip()] = user.strip() or "admin"
    return tokens


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PARTNERSHIP_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PARTNERSHIP_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AppConfig(**data)
    else:
        config = AppConfig()

    env_db_url = os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_tokens = os.getenv("ADMIN_API_TOKENS")
    if env_tokens:
        config.admin_tokens = _parse_tokens(env_tokens)

    env_level = os.getenv("LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
