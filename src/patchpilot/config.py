"""YAML configuration for the pipeline, validated with pydantic."""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ErrorCode, PipelineError

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "config.yaml"

_TRUE_FLAGS = {"1", "true", "yes", "on", "enabled"}
_FALSE_FLAGS = {"0", "false", "no", "off", "disabled"}


class ConfigModel(BaseModel):
    """Base model that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ProjectSettings(ConfigModel):
    name: str = ""
    repo_root: str = "."


class PipelineSettings(ConfigModel):
    directory: str = "dev_pipeline"
    always_allowed: List[str] = Field(default_factory=lambda: ["dev_pipeline/"])
    max_retries: int = 3
    max_diff_bytes: int = 200_000
    keep_failed_branch: bool = False
    frontend_extensions: List[str] = Field(
        default_factory=lambda: [".js", ".mjs", ".cjs", ".ts", ".tsx", ".jsx", ".vue", ".html"]
    )
    test_dirs: List[str] = Field(default_factory=lambda: ["tests", "test"])

    @field_validator("max_retries")
    @classmethod
    def _positive_retries(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("max_retries must be positive")
        return value


class ValidationSettings(ConfigModel):
    command: str = "pytest -q"
    timeout: Optional[float] = None


class ModelSettings(ConfigModel):
    default: str = "gpt-5-mini"
    timeout: float = 120.0
    max_attempts: int = 3
    retry_delay: float = 0.5
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    offline_diff: Optional[str] = None

    @property
    def offline(self) -> bool:
        name = self.default.strip().lower()
        return name in {"offline", "gpt-5-offline"} or name.endswith("-offline")


class MetaSettings(ConfigModel):
    self_heal: bool = True
    max_self_heal_attempts: int = 5
    stall_threshold: int = 3
    context_threshold: int = 50_000


class PatchPilotConfig(ConfigModel):
    """Top-level configuration document."""

    project: ProjectSettings = Field(default_factory=ProjectSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    models: ModelSettings = Field(default_factory=ModelSettings)
    meta: MetaSettings = Field(default_factory=MetaSettings)

    def resolve_repo_root(self, config_path: Path) -> Path:
        root = Path(self.project.repo_root)
        if not root.is_absolute():
            root = (config_path.resolve().parent / root).resolve()
        return root


def default_config_data() -> Dict[str, Any]:
    """Return the default configuration as a plain mapping."""
    return copy.deepcopy(PatchPilotConfig().model_dump(mode="json"))


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def parse_positive_int(value: Any, fallback: int) -> int:
    raw = str(value if value is not None else "").strip()
    if not raw:
        return fallback
    try:
        parsed = int(raw)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def parse_boolean_flag(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalised = str(value).strip().lower()
    if normalised in _TRUE_FLAGS:
        return True
    if normalised in _FALSE_FLAGS:
        return False
    return fallback


def resolve_max_retries(value: Any) -> int:
    """Parse a retry bound, raising ``INVALID_MAX_RETRIES`` for bad input."""
    try:
        parsed = int(str(value).strip())
    except ValueError as error:
        raise PipelineError(ErrorCode.INVALID_MAX_RETRIES, f"Invalid max retries: {value!r}") from error
    if parsed <= 0:
        raise PipelineError(ErrorCode.INVALID_MAX_RETRIES, f"Max retries must be positive: {parsed}")
    return parsed


def apply_env_overrides(config: PatchPilotConfig, env: Mapping[str, str] | None = None) -> PatchPilotConfig:
    """Overlay environment overrides on top of ``config``."""
    env_mapping = os.environ if env is None else env
    updated = config.model_copy(deep=True)

    raw_retries = env_mapping.get("ORCHESTRATOR_MAX_RETRIES")
    if raw_retries is not None and raw_retries.strip():
        updated.pipeline.max_retries = resolve_max_retries(raw_retries)
    if env_mapping.get("ORCHESTRATOR_KEEP_FAILED_BRANCH") == "1":
        updated.pipeline.keep_failed_branch = True
    model_override = env_mapping.get("ORCHESTRATOR_MODEL")
    if model_override and model_override.strip():
        updated.models.default = model_override.strip()

    updated.meta.self_heal = parse_boolean_flag(env_mapping.get("META_SELF_HEAL_ENABLED"), updated.meta.self_heal)
    updated.meta.max_self_heal_attempts = parse_positive_int(
        env_mapping.get("META_MAX_SELF_HEAL_ATTEMPTS"), updated.meta.max_self_heal_attempts
    )
    updated.meta.stall_threshold = parse_positive_int(
        env_mapping.get("META_SELF_HEAL_STALL_THRESHOLD"), updated.meta.stall_threshold
    )
    return updated


def load_config(config_path: Path, *, env: Mapping[str, str] | None = None) -> PatchPilotConfig:
    """Load ``config_path`` (defaults when missing) and apply env overrides."""
    data: Any = {}
    if config_path.exists():
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping at the top level.")
    else:
        LOGGER.info("Config file %s not found; using defaults", config_path)
    config = PatchPilotConfig.model_validate(data)
    return apply_env_overrides(config, env)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "MetaSettings",
    "ModelSettings",
    "PatchPilotConfig",
    "PipelineSettings",
    "ValidationSettings",
    "apply_env_overrides",
    "default_config_data",
    "load_config",
    "parse_boolean_flag",
    "parse_positive_int",
    "resolve_max_retries",
    "write_config",
]
