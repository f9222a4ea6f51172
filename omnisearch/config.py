"""
Search Configuration

Loads config/search.yaml and merges it over hardcoded defaults.

IMPORTANT: The embedding model and dimensions here MUST match the model used
by the ingestion pipeline that writes content_records.embedding. Vector
similarity is only meaningful between vectors from the same model. Changing
the model changes the embedding cache's model version, so cached vectors from
the old model are never served.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# Path: this file → omnisearch/ → project_root/
CONFIG_PATH = Path(__file__).parent.parent / "config" / "search.yaml"

DEFAULT_CONFIG = {
    "embedding": {
        "model": "text-embedding-3-small",
        "dimensions": 1536,
        "ttl_hours": 24,
        "max_entries": 1000,
        "max_concurrency": 4,
        "max_retries": 3,
        "backoff_base_seconds": 0.5,
        "request_timeout_seconds": 1.5,
        "batch_size": 20,
        "max_input_chars": 8000,
    },
    "search": {
        "default_limit": 20,
        "max_limit": 100,
        "default_threshold": 0.7,
        "deadline_seconds": 3.0,
    },
    "ranking": {
        "preview_chars": 200,
        "highlight_window": 100,
        "score_precision": 4,
    },
    "query_cache": {
        "enabled": True,
        "ttl_seconds": 300,
        "max_entries": 500,
        "cache_degraded_results": False,
    },
    "adapters": {
        "gmail": {"enabled": True, "proxy_ceiling": 0.88, "proxy_floor": 0.7},
        "drive": {"enabled": True, "proxy_ceiling": 0.85, "proxy_floor": 0.7},
        "calendar": {"enabled": True, "proxy_ceiling": 0.8, "proxy_floor": 0.7},
    },
}


def get_config_path() -> Path:
    """Config path, overridable with OMNISEARCH_CONFIG."""
    override = os.getenv("OMNISEARCH_CONFIG")
    return Path(override) if override else CONFIG_PATH


def load_config(path: Optional[Path] = None) -> dict:
    """
    Load configuration from YAML file.

    Merges loaded config with defaults section by section. If the file is
    missing or malformed, falls back to hardcoded defaults.

    Args:
        path: Path to configuration YAML (defaults to get_config_path())

    Returns:
        Config dict with every default section present
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    path = path or get_config_path()

    if not path.exists():
        logger.info(f"No search config at {path}, using defaults")
        return config

    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error(
            f"Failed to load config from {path}: {e}. "
            f"Using hardcoded defaults. Check config file format."
        )
        return config

    if not loaded:
        return config
    if not isinstance(loaded, dict):
        logger.warning(f"Config root should be a mapping, got {type(loaded).__name__}")
        return config

    for key in config:
        if key not in loaded:
            continue
        if not isinstance(loaded[key], dict):
            logger.warning(
                f"Config key '{key}' should be a dict, got {type(loaded[key]).__name__}"
            )
            continue
        if key == "adapters":
            # One level deeper: adapters.<provider>.<setting>
            for provider, settings in loaded[key].items():
                if isinstance(settings, dict):
                    config[key].setdefault(provider, {}).update(settings)
                else:
                    logger.warning(f"Adapter config '{provider}' should be a dict")
        else:
            config[key].update(loaded[key])

    return config
