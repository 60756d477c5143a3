"""Engine configuration: ``<kata_dir>/config.yaml`` plus environment overrides.

Resolution order (later wins): model defaults, the YAML document, then
``KATA_*`` environment variables. Every directory not set explicitly is
derived from ``kata_dir``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from kata_engine.errors import ConfigError
from kata_engine.synthesis import SynthesisDepth

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"
DEFAULT_KATA_DIR = ".kata"

_DERIVED_DIRS = {
    "runs_dir": "runs",
    "cycles_dir": "cycles",
    "synthesis_dir": "synthesis",
    "knowledge_dir": "knowledge",
    "flavors_dir": "flavors",
    "steps_dir": "stages",
    "decisions_dir": "decisions",
    "history_dir": "history",
}

_ENV_OVERRIDES = {
    "KATA_GATE_TIMEOUT": "gate_command_timeout_seconds",
    "KATA_SYNTHESIS_DEPTH": "synthesis_depth",
    "KATA_MAX_PARALLEL_FLAVORS": "max_parallel_flavors",
    "KATA_ADAPTER": "adapter",
}


class EngineConfig(BaseModel):
    project_dir: Path = Path(".")
    kata_dir: Path = Path(DEFAULT_KATA_DIR)
    runs_dir: Path | None = None
    cycles_dir: Path | None = None
    synthesis_dir: Path | None = None
    knowledge_dir: Path | None = None
    flavors_dir: Path | None = None
    steps_dir: Path | None = None
    decisions_dir: Path | None = None
    history_dir: Path | None = None

    gate_command_timeout_seconds: int = Field(default=30, ge=1)
    gate_output_limit: int = Field(default=500, ge=0)
    max_parallel_flavors: int = 3
    synthesis_depth: SynthesisDepth = "standard"
    cooldown_reserve_percent: int = 10
    adapter: str = Field(default="manual", min_length=1)

    @model_validator(mode="after")
    def _derive_and_clamp(self) -> EngineConfig:
        """Fill unset directories from ``kata_dir``; keep numbers in range."""
        for field, name in _DERIVED_DIRS.items():
            if getattr(self, field) is None:
                setattr(self, field, self.kata_dir / name)
        self.max_parallel_flavors = max(1, self.max_parallel_flavors)
        self.cooldown_reserve_percent = max(0, min(100, self.cooldown_reserve_percent))
        return self

    @property
    def catalog_path(self) -> Path:
        """Project catalog override merged over the built-in catalog."""
        return self.kata_dir / "catalog.yaml"

    def directories(self) -> list[Path]:
        return [self.kata_dir, *(getattr(self, field) for field in _DERIVED_DIRS)]

    def ensure_dirs(self) -> None:
        for directory in self.directories():
            directory.mkdir(parents=True, exist_ok=True)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")
    return data


def _resolve(project_dir: Path, value: Any) -> Path:
    path = Path(value)
    return path if path.is_absolute() else project_dir / path


def load_config(project_dir: str | Path = ".") -> EngineConfig:
    """Load the engine configuration for *project_dir*.

    Relative paths in the file and in ``KATA_DIR`` are resolved against
    *project_dir*. Raises :class:`ConfigError` for malformed YAML or
    invalid values.
    """
    project_dir = Path(project_dir)
    kata_dir = _resolve(project_dir, os.getenv("KATA_DIR", "").strip() or DEFAULT_KATA_DIR)
    data = _read_yaml(kata_dir / CONFIG_FILE)

    for field in _DERIVED_DIRS:
        if data.get(field):
            data[field] = _resolve(project_dir, data[field])
    data["kata_dir"] = kata_dir
    data["project_dir"] = project_dir

    for env_name, field in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name, "").strip()
        if raw:
            logger.debug("Config override %s=%s", env_name, raw)
            data[field] = raw

    try:
        return EngineConfig.model_validate(data)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration in {kata_dir / CONFIG_FILE}: {exc}") from exc
