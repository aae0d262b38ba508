import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import ClipQueueConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")

# Shared store override, so every instance on a host can point at one file
DB_ENV_VAR = "CLIP_QUEUE_DB"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> ClipQueueConfig:
    """
    Resolve config: Default < Local < Environment < CLI

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(default_path)
    config_data = merge_dicts(config_data, load_yaml(local_path))

    env_db = os.getenv(DB_ENV_VAR)
    if env_db:
        config_data = merge_dicts(config_data, {"store": {"db_path": env_db}})

    config = ClipQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
