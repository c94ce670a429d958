"""Server configuration loaded from the environment (``WORKFLOWY_*``) or ``.env``."""

from __future__ import annotations

import logging
import sys
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import DEFAULT_API_URL, APIConfiguration


class ServerConfig(BaseSettings):
    """WorkFlowy MCP server settings."""

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOWY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    username: str | None = None
    # WorkFlowy API key; sent as the bearer credential.
    password: SecretStr | None = None
    api_url: str = DEFAULT_API_URL
    timeout: float = Field(default=30.0, gt=0)
    rate_limit_delay: float = Field(default=0.25, ge=0)
    log_level: str = "INFO"
    environment: Literal["production", "preview"] = "production"

    def get_api_config(self) -> APIConfiguration:
        return APIConfiguration(
            base_url=self.api_url,
            timeout=self.timeout,
            rate_limit_delay=self.rate_limit_delay,
        )

    def password_value(self) -> str | None:
        return self.password.get_secret_value() if self.password else None


def setup_logging(level: str = "INFO") -> None:
    """Send stdlib logging to stderr; stdout carries the MCP stdio stream."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    has_console = any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in root.handlers
    )
    if not has_console:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root.addHandler(handler)
