"""Configuration loading for Conveyor.

Reads an optional engine config YAML file and pipeline definition files.
Pydantic models validate both; environment variables override engine
settings for deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from conveyor.pipeline.errors import CompileError, CompileErrorKind

logger = logging.getLogger(__name__)


# ── Config Models ────────────────────────────────────────────────────────────


class NotificationConfig(BaseModel):
    """A named notification sink. Without ``webhook_url`` messages are only logged."""

    webhook_url: str | None = None
    headers: dict[str, str] = {}
    timeout: float = 10.0


class EngineConfig(BaseModel):
    db_path: str = ".conveyor/runs.db"
    max_parallel: int | None = None
    log_level: str = "INFO"

    # Modules exposing register_actions(executor)
    action_plugins: list[str] = []
    notifications: dict[str, NotificationConfig] = Field(default_factory=dict)

    artifact_dir: str | None = None
    workspace_dir: str | None = None
    secret_env_prefix: str = ""

    @field_validator("max_parallel")
    @classmethod
    def _validate_max_parallel(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError(f"max_parallel must be >= 1, got {v}")
        return v

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError(f"Unknown log level: {v!r}")
        return level


def load_config(config_path: Path | None = None) -> EngineConfig:
    """Load engine configuration, applying environment overrides.

    Args:
        config_path: YAML file to read. ``None`` starts from the defaults.

    Raises:
        FileNotFoundError: If ``config_path`` is given but doesn't exist.
        ValueError: If config validation fails.
    """
    raw: dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Conveyor config not found: {config_path}")
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    # Environment variable overrides for deployment
    db_path = os.environ.get("CONVEYOR_DB_PATH")
    if db_path:
        raw["db_path"] = db_path

    max_parallel = os.environ.get("CONVEYOR_MAX_PARALLEL")
    if max_parallel:
        try:
            raw["max_parallel"] = int(max_parallel)
        except ValueError:
            raise ValueError(f"CONVEYOR_MAX_PARALLEL must be an integer, got {max_parallel!r}") from None

    log_level = os.environ.get("CONVEYOR_LOG_LEVEL")
    if log_level:
        raw["log_level"] = log_level

    plugins = os.environ.get("CONVEYOR_ACTION_PLUGINS")
    if plugins:
        raw["action_plugins"] = [p.strip() for p in plugins.split(",") if p.strip()]

    try:
        config = EngineConfig(**raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid Conveyor config: {exc}") from exc

    logger.debug("Loaded Conveyor config: db=%s max_parallel=%s", config.db_path, config.max_parallel)
    return config


def load_pipeline_definition(path: Path) -> dict[str, Any]:
    """Read a pipeline definition YAML file into a mapping for the builder.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        CompileError: If the file is not valid YAML or not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {path}")
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise CompileError(CompileErrorKind.INVALID_OPTION, str(path), f"Invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise CompileError(
            CompileErrorKind.INVALID_OPTION,
            str(path),
            f"Pipeline file must contain a mapping, got {type(raw).__name__}",
        )
    return raw
