"""Load configuration from ~/.insightsbot/config.json and the environment."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from insightsbot.bot.errors import ConfigError
from insightsbot.config.schema import Config


def get_data_dir() -> Path:
    return Path.home() / ".insightsbot"


def get_config_path() -> Path:
    return get_data_dir() / "config.json"


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    first, *rest = name.split("_")
    return first + "".join(part.capitalize() for part in rest)


def convert_keys(data: Any) -> Any:
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def load_config(path: Path | None = None) -> Config:
    """Load config from JSON (if present); environment variables override it."""
    path = path or get_config_path()
    data: dict[str, Any] = {}

    if path.exists():
        try:
            data = convert_keys(json.loads(path.read_text(encoding="utf-8")))
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e
        logger.debug(f"Loaded config from {path}")
    else:
        logger.debug(f"No config file at {path}, using defaults and environment")

    try:
        # pydantic-settings gives init values priority; environment must win
        env = Config()
        merged = _deep_merge(data, env.model_dump(exclude_unset=True))
        return Config(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result
