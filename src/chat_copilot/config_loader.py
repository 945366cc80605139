# config_loader.py
import os
import re
from pathlib import Path
from typing import Any, Dict, Union

import chardet
import yaml
from loguru import logger
from pydantic import ValidationError

from .config import CopilotConfig

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


def load_text_file_with_guess_encoding(file_path: str) -> str | None:
    """
    Load a text file, trying common encodings before asking chardet.

    Returns:
        The file content, or None if it could not be decoded.
    """
    for encoding in ("utf-8", "utf-8-sig"):
        try:
            with open(file_path, "r", encoding=encoding) as file:
                return file.read()
        except UnicodeDecodeError:
            continue

    with open(file_path, "rb") as file:
        raw_data = file.read()
    detected = chardet.detect(raw_data)
    if detected["encoding"]:
        try:
            return raw_data.decode(detected["encoding"])
        except (UnicodeDecodeError, LookupError) as e:
            logger.error(f"Error decoding {file_path} as {detected['encoding']}: {e}")
    return None


def substitute_env(content: str) -> str:
    """Replace ``${NAME}`` with the environment value; unknown names are kept."""

    def replacer(match):
        return os.getenv(match.group(1), match.group(0))

    return _ENV_PATTERN.sub(replacer, content)


def read_yaml(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read a YAML configuration file with environment variable substitution.

    Raises:
        FileNotFoundError: If the configuration file is not found.
        IOError: If the configuration file cannot be read.
        yaml.YAMLError: If the file is not valid YAML.
    """
    config_path = str(config_path)
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    content = load_text_file_with_guess_encoding(config_path)
    if content is None:
        raise IOError(f"Failed to read configuration file: {config_path}")

    try:
        return yaml.safe_load(substitute_env(content)) or {}
    except yaml.YAMLError as e:
        logger.critical(f"Error parsing YAML file: {e}")
        raise e


def validate_config(config_data: Dict[str, Any]) -> CopilotConfig:
    """Validate raw configuration data, logging each problem before re-raising."""
    try:
        return CopilotConfig(**config_data)
    except ValidationError as e:
        for err in e.errors():
            location = " -> ".join(str(loc) for loc in err["loc"])
            logger.critical(f"Invalid configuration at '{location}': {err['msg']}")
        raise e


def load_config(config_path: Union[str, Path]) -> CopilotConfig:
    return validate_config(read_yaml(config_path))
