# config_loader.py

import os
import re
import yaml
from typing import Dict, Any

from sandbox_keeper.utils.logging_config import get_logger
logger = get_logger(__name__)

config_cache: Dict[str, Dict[str, Any]] = {}

def load_config(config_path: str) -> Dict[str, Any]:
    """
    Loads a YAML configuration file, replaces environment variables, and caches the result.

    Parameters:
    - config_path (str): Path to the YAML configuration file.

    Returns:
    - Dict[str, Any]: Parsed configuration dictionary (empty for an empty file).
    """
    config_path = str(config_path)
    if config_path in config_cache:
        logger.debug(f"Configuration loaded from cache: {config_path}")
        return config_cache[config_path]

    try:
        with open(config_path, 'r', encoding='utf-8') as file:
            content = file.read()
            # Replace environment variables like ${VAR_NAME} with their actual values
            content = re.sub(r'\$\{(\w+)\}', lambda m: os.environ.get(m.group(1), ''), content)
            config = yaml.safe_load(content) or {}
            config_cache[config_path] = config
            logger.info(f"Configuration loaded and cached: {config_path}")
            return config
    except Exception as e:
        logger.error(f"Failed to load configuration from {config_path}: {e}")
        raise


def load_config_section(config_path: str, section: str) -> Dict[str, Any]:
    """
    Returns one top-level mapping from a YAML config file.

    A missing or non-mapping section yields an empty dict.
    """
    config = load_config(config_path)
    if not isinstance(config, dict):
        logger.warning(f"Config {config_path} is not a mapping, ignoring it")
        return {}

    section_cfg = config.get(section) or {}
    if not isinstance(section_cfg, dict):
        logger.warning(f"Section '{section}' in {config_path} is not a mapping, ignoring it")
        return {}
    return section_cfg


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into a copy of base; nested dicts are merged key by key."""
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def clear_config_cache() -> None:
    config_cache.clear()
