from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


DEFAULT_DENYLIST: List[str] = [
    "DROP TABLE",
    "ALTER TABLE",
]

DEFAULT_DATA_DIR = os.path.join("~", ".local", "share", "mediacat")


@dataclass
class CatalogConfig:
    # Storage
    data_dir: str = DEFAULT_DATA_DIR
    db_filename: str = "database.db"

    # Pool
    pool_size: int = 10
    pool_timeout_s: float = 30.0

    # Raw query gateway
    raw_query_denylist: List[str] = field(default_factory=lambda: list(DEFAULT_DENYLIST))

    # Logging
    log_level: str = "INFO"

    @property
    def db_path(self) -> str:
        return os.path.join(self.data_dir, self.db_filename)


class AllowedConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: str = DEFAULT_DATA_DIR
    db_filename: str = "database.db"

    pool_size: int = 10
    pool_timeout_s: float = 30.0

    raw_query_denylist: List[str] = list(DEFAULT_DENYLIST)

    log_level: str = "INFO"

    @field_validator("db_filename")
    @classmethod
    def validate_db_filename(cls, value: str) -> str:
        if not value or os.path.basename(value) != value:
            raise ValueError("db_filename must be a bare file name")
        return value

    @field_validator("pool_size")
    @classmethod
    def validate_pool_size(cls, value: int) -> int:
        if int(value) < 1:
            raise ValueError("pool_size must be at least 1")
        return value

    @field_validator("pool_timeout_s")
    @classmethod
    def validate_pool_timeout(cls, value: float) -> float:
        if float(value) <= 0:
            raise ValueError("pool_timeout_s must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = str(value).upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log_level: {value}")
        return level


def load_config(path: Optional[str] = None) -> CatalogConfig:
    """Load config from YAML.

    Default path: ~/.config/mediacat/mediacat.yaml

    Example:

        data_dir: ~/Media/catalog
        pool_size: 4
        raw_query_denylist:
          - DELETE FROM
    """

    if path is None:
        env_path = os.environ.get("MEDIACAT_CONFIG_PATH")
        if env_path:
            path = env_path
        else:
            path = os.path.join(
                os.path.expanduser("~"), ".config", "mediacat", "mediacat.yaml"
            )

    data = {}
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    else:
        logging.debug("No config file at %s; using defaults.", path)

    # User entries extend the built-in denylist, never replace it.
    if isinstance(data, dict) and isinstance(data.get("raw_query_denylist"), list):
        denylist = [str(p) for p in data["raw_query_denylist"]]
        data["raw_query_denylist"] = list(DEFAULT_DENYLIST) + [
            p for p in denylist if p.upper() not in DEFAULT_DENYLIST
        ]

    try:
        validated = AllowedConfig.model_validate(data or {})
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    cfg = CatalogConfig(**validated.model_dump())
    cfg.data_dir = os.path.abspath(os.path.expanduser(cfg.data_dir))
    return cfg
