"""Config manager for ~/.memrefine/config.json."""

import json
import os
from typing import Any, Dict, Optional

from memrefine.configs.base import MemRefineConfig, RefinementConfig

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".memrefine")
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.json")

ENV_DB_PATH = "MEMREFINE_DB_PATH"
ENV_THRESHOLD = "MEMREFINE_THRESHOLD"


def get_default_config() -> Dict[str, Any]:
    """Return default config structure."""
    return {
        "version": "1",
        **MemRefineConfig().model_dump(),
    }


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load config from ~/.memrefine/config.json or return defaults."""
    path = path or CONFIG_PATH
    if os.path.exists(path):
        with open(path, "r") as f:
            return json.load(f)
    return get_default_config()


def save_config(config: Dict[str, Any], path: Optional[str] = None) -> None:
    """Write config to ~/.memrefine/config.json."""
    path = path or CONFIG_PATH
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w") as f:
        json.dump(config, f, indent=2)
        f.write("\n")


def build_config(path: Optional[str] = None, db_path: Optional[str] = None) -> MemRefineConfig:
    """File config, then environment overrides, then explicit arguments."""
    raw = load_config(path)
    data = {k: v for k, v in raw.items() if k in MemRefineConfig.model_fields}
    config = MemRefineConfig(**data)

    env_db = os.environ.get(ENV_DB_PATH)
    if env_db:
        config.store.db_path = env_db
    env_threshold = os.environ.get(ENV_THRESHOLD)
    if env_threshold:
        config.refinement = RefinementConfig(
            **{**config.refinement.model_dump(), "default_threshold": float(env_threshold)}
        )
    if db_path:
        config.store.db_path = db_path
    return config
