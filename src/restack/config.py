"""Configuration management for restack."""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


class Config(BaseModel):
    """Application configuration."""

    model: str = Field(default="gemini-2.0-flash", description="Model used to suggest commit messages")
    api_key: str | None = Field(default=None, description="Google API key")
    base_branch: str | None = Field(default=None, description="Base branch used instead of auto-detection")
    probe_concurrency: int = Field(default=4, ge=1, description="Conflict probes run at once per repository")
    verbose: bool = Field(default=False, description="Enable debug logging")
    log_file: str | None = Field(default=None, description="Optional file receiving debug logs")

    @classmethod
    def get_config_path(cls) -> Path:
        """Get the path to the config file."""
        # Check for XDG config directory first (Linux/macOS)
        if xdg_config := os.getenv("XDG_CONFIG_HOME"):
            return Path(xdg_config) / "restack" / "config.toml"
        # Fall back to ~/.config on Unix or APPDATA on Windows
        if os.name == "nt":
            base = Path(os.getenv("APPDATA", Path.home()))
        else:
            base = Path.home() / ".config"
        return base / "restack" / "config.toml"


def load_env_local(path: Path | None = None) -> None:
    """Export variables from ``.env.local`` that are not already set."""
    env_local = path or Path.cwd() / ".env.local"
    if not env_local.exists():
        return
    try:
        with open(env_local) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    key = key.strip()
                    value = value.strip().strip('"').strip("'")
                    if key and key not in os.environ:
                        os.environ[key] = value
    except OSError as e:
        logger.warning("Could not read %s: %s", env_local, e)


def load_config() -> Config:
    """Load configuration from environment variables and config file.

    Priority: Environment variables > .env.local > Config file > Defaults
    """
    load_env_local()

    config_data: dict[str, object] = {}

    # 1. Load from config file if it exists
    config_path = Config.get_config_path()
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                file_config = tomllib.load(f)
            # Get settings from [default] section
            config_data.update(file_config.get("default", {}))
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning("Ignoring unreadable config file %s: %s", config_path, e)

    # 2. Environment variables override config file
    if api_key := os.getenv("GOOGLE_API_KEY"):
        config_data["api_key"] = api_key
    if model := os.getenv("RESTACK_MODEL"):
        config_data["model"] = model
    if base_branch := os.getenv("RESTACK_BASE_BRANCH"):
        config_data["base_branch"] = base_branch
    if verbose := os.getenv("RESTACK_VERBOSE"):
        config_data["verbose"] = verbose.strip().lower() in _TRUTHY

    try:
        return Config(**config_data)
    except ValidationError as e:
        logger.warning("Invalid configuration, using defaults: %s", e)
        return Config()
