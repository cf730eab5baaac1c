"""
Runtime configuration

Loaded from environment variables (prefix ``SANDBOX_BRIDGE_``) and an
optional ``.env`` file using pydantic-settings. The worker process inherits
the controller's environment, so both sides read the same values.
"""

import sys
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SANDBOX_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["text", "json"] = Field(default="text")

    # Timeouts
    default_timeout_ms: int = Field(default=5000, gt=0, description="Dispatcher timeout when a request omits one")
    timeout_margin_ms: int = Field(default=1000, ge=0, description="Added to timeoutMs for the controller's outer timeout")

    # Worker process
    worker_python: str = Field(default=sys.executable, description="Interpreter used to launch the worker")
    worker_shutdown_timeout: float = Field(default=2.0, gt=0, description="Seconds to wait for a clean worker exit")
    max_frame_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)

    # Language interpreters
    python_binary: str = Field(default=sys.executable)
    node_binary: str = Field(default="node")
    lua_binary: str = Field(default="lua")


@lru_cache
def get_settings() -> Settings:
    return Settings()
