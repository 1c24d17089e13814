"""Bot configuration.

Settings live in ``config.json`` in the user config directory. A ``.env`` file
next to it (or in the working directory) is loaded first, and
``SHELLBOT_AUTH_TOKEN`` / ``SHELLBOT_OWNER`` override the file values.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shellbot.errors import ConfigError
from shellbot.paths import config_file

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.telegram.org"
TELEGRAM_MESSAGE_LIMIT = 4096


class PtySizeConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    columns: int = Field(40, ge=1, le=1000)
    rows: int = Field(20, ge=1, le=1000)


class BotConfig(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    auth_token: str = Field(..., min_length=1, alias="authToken")
    owner: int
    api_url: str = DEFAULT_API_URL
    message_size_limit: int = Field(TELEGRAM_MESSAGE_LIMIT, ge=16)
    edit_interval: float = Field(1.0, ge=0)
    final_flush_attempts: int = Field(5, ge=1)
    max_editor_size: int | None = Field(None, ge=1)
    poll_timeout: int = Field(30, ge=0)
    http_timeout: float = Field(40.0, gt=0)
    default_size: PtySizeConfig = Field(default_factory=PtySizeConfig)

    @property
    def editor_limit(self) -> int:
        """Largest file body the editor will project."""
        if self.max_editor_size is None:
            return self.message_size_limit
        return min(self.max_editor_size, self.message_size_limit)


def _load_env(path: Path) -> None:
    env_file = path.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)
    load_dotenv(override=False)


def load_config(path: Path | None = None) -> BotConfig:
    """Read and validate the configuration, applying environment overrides."""

    path = path or config_file()
    _load_env(path)

    data: dict = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Couldn't read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")

    token = os.getenv("SHELLBOT_AUTH_TOKEN")
    if token:
        data["auth_token"] = token
        data.pop("authToken", None)
    owner = os.getenv("SHELLBOT_OWNER")
    if owner:
        data["owner"] = owner

    if not data:
        raise ConfigError(f"No configuration found at {path}")
    try:
        config = BotConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc
    logger.info("Loaded configuration from %s", path)
    return config


def save_config(config: BotConfig, path: Path | None = None) -> Path:
    path = path or config_file()
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json", exclude_defaults=True)
    payload["auth_token"] = config.auth_token
    payload["owner"] = config.owner
    path.write_text(json.dumps(payload, indent=4) + "\n", encoding="utf-8")
    return path
