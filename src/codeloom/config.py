"""
Settings: read once at startup from the environment.

An optional .env file is loaded first (python-dotenv); values already present
in the real environment win. Every missing or malformed value is collected
and reported together as one ConfigError.

    BOT_TOKEN          bot credential                      (required)
    CODE_CHANNEL_ID    fragment channel id(s), comma list  (required)
    LOG_CHANNEL_ID     operator error channel id           (required)
    PROGRAMMER_IDS     trusted author ids, comma list      (required)
    MAX_CODE_MESSAGES  fragment store bound                (default 100)
    FRAGMENT_TIMEOUT   seconds allowed per awaited block   (default: none)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError
from .kernel.store import DEFAULT_CAPACITY


REQUIRED_VARIABLES = ("BOT_TOKEN", "CODE_CHANNEL_ID", "LOG_CHANNEL_ID", "PROGRAMMER_IDS")


class Settings(BaseModel):
    bot_token: str = Field(min_length=1, repr=False)
    code_channel_ids: List[str] = Field(min_length=1)
    log_channel_id: str = Field(min_length=1)
    programmer_ids: List[str] = Field(min_length=1)
    max_code_messages: int = Field(default=DEFAULT_CAPACITY, ge=1)
    fragment_timeout: Optional[float] = Field(default=None, gt=0)


def split_ids(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def settings_from_mapping(env: Mapping[str, str]) -> Settings:
    """Build Settings from an environment-like mapping."""
    problems = [f"{name} is not set" for name in REQUIRED_VARIABLES if not env.get(name, "").strip()]
    if problems:
        raise ConfigError(problems)

    raw = {
        "bot_token": env["BOT_TOKEN"].strip(),
        "code_channel_ids": split_ids(env["CODE_CHANNEL_ID"]),
        "log_channel_id": env["LOG_CHANNEL_ID"].strip(),
        "programmer_ids": split_ids(env["PROGRAMMER_IDS"]),
    }
    if env.get("MAX_CODE_MESSAGES", "").strip():
        raw["max_code_messages"] = env["MAX_CODE_MESSAGES"].strip()
    if env.get("FRAGMENT_TIMEOUT", "").strip():
        raw["fragment_timeout"] = env["FRAGMENT_TIMEOUT"].strip()

    try:
        return Settings(**raw)
    except ValidationError as exc:
        raise ConfigError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        ) from exc


def load_settings(env_file: Optional[str] = None) -> Settings:
    """
    Load settings from `env_file` (or ./.env if present) plus os.environ.

    Raises:
        ConfigError: a required value is missing or a value is invalid.
    """
    if env_file is not None:
        if not Path(env_file).exists():
            raise ConfigError([f"env file not found: {env_file}"])
        load_dotenv(env_file, override=False)
    elif (Path.cwd() / ".env").exists():
        load_dotenv(Path.cwd() / ".env", override=False)
    return settings_from_mapping(os.environ)
