"""
Configuration for ConvoStack.

Settings come from, in increasing priority: defaults, a ``.env`` file,
``CONVOSTACK_*`` environment variables, and an optional YAML file.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "CONVOSTACK_"

# Free tier limits per collection and entity; None means unlimited.
DEFAULT_QUOTAS: Dict[str, Dict[str, Optional[int]]] = {
    "bookmarks": {"folders": 5, "items": 30},
    "prompts": {"folders": None, "items": None},
}


def get_default_db_path() -> str:
    """Get default database path."""
    data_dir = Path.home() / ".convostack"
    data_dir.mkdir(exist_ok=True)
    return str(data_dir / "convostack.db")


class EngineConfig(BaseModel):
    """Engine settings."""
    request_timeout: float = Field(10.0, gt=0)
    page_size: int = Field(30, ge=1, le=1000)
    folder_fetch_throttle: float = Field(2.0, ge=0)
    database_path: Optional[str] = None
    log_level: str = "WARNING"
    quotas: Dict[str, Dict[str, Optional[int]]] = Field(
        default_factory=lambda: {kind: dict(limits) for kind, limits in DEFAULT_QUOTAS.items()}
    )

    def quota(self, collection: str, entity: str) -> Optional[int]:
        return self.quotas.get(collection, {}).get(entity)


def _from_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key in ("request_timeout", "page_size", "folder_fetch_throttle", "database_path", "log_level"):
        raw = os.environ.get(ENV_PREFIX + key.upper())
        if raw:
            values[key] = raw
    return values


def load_config(path: Optional[Union[str, Path]] = None, dotenv: bool = True) -> EngineConfig:
    """Build an EngineConfig from .env, environment and an optional YAML file."""
    if dotenv:
        load_dotenv()

    values = _from_env()

    if path is None:
        env_path = os.environ.get(ENV_PREFIX + "CONFIG")
        path = Path(env_path) if env_path else None
    if path is not None:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        quotas = data.pop("quotas", None)
        values.update(data)
        if quotas:
            merged = {kind: dict(limits) for kind, limits in DEFAULT_QUOTAS.items()}
            for kind, limits in quotas.items():
                merged.setdefault(kind, {}).update(limits or {})
            values["quotas"] = merged

    return EngineConfig.model_validate(values)


def configure_logging(level: str = "WARNING"):
    """Send log records to stderr so they never mix with command output."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        stream=sys.stderr,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
