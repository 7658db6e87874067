"""Load configuration from environment variables (and an optional .env file)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from loguru import logger

from lettacord.config.schema import Config

# env var -> (section, field); section None means a root field
ENV_MAP: dict[str, tuple[str | None, str]] = {
    "DISCORD_BOT_TOKEN": ("discord", "token"),
    "CHANNEL_ID": ("discord", "channel_id"),
    "IGNORE_CHANNEL_ID": ("discord", "ignore_channel_id"),
    "TYPING_TIMEOUT_SECONDS": ("discord", "typing_timeout"),
    "LETTA_TOKEN": ("letta", "token"),
    "LETTA_BASE_URL": ("letta", "base_url"),
    "LETTA_AGENT_ID": ("letta", "agent_id"),
    "LETTA_USE_CONVERSATIONS": ("letta", "use_conversations"),
    "MESSAGE_DEBOUNCE_SECONDS": ("queue", "initial_debounce"),
    "BATCH_WINDOW_SECONDS": ("queue", "batch_window"),
    "TYPING_PAUSE_SECONDS": ("queue", "typing_pause"),
    "BACKEND_TIMEOUT_SECONDS": ("queue", "backend_timeout"),
    "EMERGENCY_MULTIPLIER": ("queue", "emergency_multiplier"),
    "ENABLE_TIMER": ("heartbeat", "enabled"),
    "TIMER_INTERVAL_MINUTES": ("heartbeat", "interval_minutes"),
    "FIRING_PROBABILITY": ("heartbeat", "firing_probability"),
    "ELEVENLABS_API_KEY": ("media", "elevenlabs_api_key"),
    "DATA_DIR": (None, "data_dir"),
    "LOG_DIR": (None, "log_dir"),
    "LOG_LEVEL": (None, "log_level"),
}


def _config_data(env: Mapping[str, str]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for var, (section, key) in ENV_MAP.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        if section is None:
            data[key] = value
        else:
            data.setdefault(section, {})[key] = value

    app_env = env.get("APP_ENV") or env.get("NODE_ENV") or ""
    data["production"] = app_env.lower() == "production"
    return data


def load_config(env: Mapping[str, str] | None = None, env_file: Path | None = None) -> Config:
    """Build a Config from ``env`` (defaults to os.environ after loading .env).

    Pydantic coerces strings ("true", "30", "0.1") into the field types and
    raises ``ValidationError`` for out-of-range values.
    """
    if env is None:
        load_dotenv(env_file)
        env = os.environ

    config = Config.model_validate(_config_data(env))
    if not config.letta.agent_id:
        logger.warning("LETTA_AGENT_ID is not set, every message will get an empty reply")
    if not config.discord.token:
        logger.warning("DISCORD_BOT_TOKEN is not set")
    return config
