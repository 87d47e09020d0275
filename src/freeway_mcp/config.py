"""Configuration loading for freeway-mcp server."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_DIR = Path.home() / ".freeway-mcp"
DEFAULT_CLAIMS_SERVICE_URL = "https://claims.web3.storage"

# 2MB (max safe libp2p block size) + typical block header length + some leeway
MAX_ENCODED_BLOCK_LENGTH = (1024 * 1024 * 2) + 39 + 61

CLAIMS_URL_ENV = "CONTENT_CLAIMS_SERVICE_URL"


class ServerConfig(BaseModel):
    """Server-level configuration."""
    claims_service_url: str = DEFAULT_CLAIMS_SERVICE_URL

    # HTTP behaviour for claims, index and block fetches
    http_timeout_seconds: float = Field(default=30.0, gt=0)
    max_frame_length: int = Field(default=MAX_ENCODED_BLOCK_LENGTH, ge=1)
    verify_blocks: bool = True

    # Default session limits (can be overridden per-session)
    default_max_tool_calls: int = 500
    default_max_chars_per_response: int = 4_000_000

    # Tool naming: strict by default (fail if SDK doesn't support canonical names)
    allow_noncanonical_tool_names: bool = False

    # Logging configuration
    log_level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR
    structured_logging: bool = True  # JSON format vs human-readable
    log_file: str | None = None


def load_config(config_path: Path | None = None) -> ServerConfig:
    """Load server configuration from YAML file.

    The ``CONTENT_CLAIMS_SERVICE_URL`` environment variable, when set,
    takes precedence over the file.

    Args:
        config_path: Path to config file. Defaults to ~/.freeway-mcp/config.yaml

    Returns:
        ServerConfig instance
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_DIR / "config.yaml"

    data = {}
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

    env_url = os.environ.get(CLAIMS_URL_ENV)
    if env_url:
        data["claims_service_url"] = env_url

    return ServerConfig(**data)
