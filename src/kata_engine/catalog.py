"""Stage vocabulary and named kata catalog.

Loads ``catalog.yaml`` (next to this module) and merges an optional
project override file on top, so a project can add kata patterns or tune
the keywords the stage orchestrator scores flavors with.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from kata_engine.errors import NotFoundError
from kata_engine.schemas import StageCategory

logger = logging.getLogger(__name__)

_BUILTIN_YAML = Path(__file__).resolve().parent / "catalog.yaml"

SynthesisApproach = Literal["merge-all", "cascade", "first-wins"]


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, returning an empty dict on failure."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is %s, expected a mapping", path, type(data).__name__)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


class BoostRule(BaseModel):
    artifact_pattern: str = Field(min_length=1)
    magnitude: float = Field(ge=0.0, le=1.0)


class StageVocabulary(BaseModel):
    """Keywords and synthesis preferences for one stage category."""

    category: StageCategory
    keywords: list[str] = Field(min_length=1)
    boost_rules: list[BoostRule] = Field(default_factory=list)
    synthesis_preference: SynthesisApproach = "merge-all"
    synthesis_alternatives: list[SynthesisApproach] = Field(
        default_factory=lambda: ["merge-all", "first-wins", "cascade"]
    )
    reasoning_template: str | None = None


class SavedKata(BaseModel):
    name: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_-]+$")
    description: str | None = None
    stages: list[StageCategory] = Field(min_length=1)


class KataCatalog:
    """Serves stage vocabularies and named kata patterns.

    Usage::

        catalog = KataCatalog(Path(".kata/catalog.yaml"))
        vocab = catalog.vocabulary("build")
        stages = catalog.kata("full-feature").stages
    """

    def __init__(self, extra_path: Path | None = None) -> None:
        self._extra_path = extra_path
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        self._data = load_yaml(_BUILTIN_YAML)
        extra_path = self._extra_path
        if extra_path and extra_path.exists():
            extra = load_yaml(extra_path)
            if extra:
                self._data = _deep_merge(self._data, extra)
                logger.info("Loaded catalog overrides from %s", extra_path)

    def reload(self) -> None:
        """Re-read all YAML files from disk."""
        self._load()

    # ── Vocabularies ─────────────────────────────────────────────

    def vocabulary(self, category: StageCategory | str) -> StageVocabulary | None:
        """Return the vocabulary for *category*, or ``None`` when absent or invalid."""
        key = StageCategory(category).value
        entry = self._data.get("vocabularies", {}).get(key)
        if not entry:
            return None
        try:
            return StageVocabulary(category=key, **entry)
        except (ValidationError, TypeError) as exc:
            logger.warning("Invalid vocabulary for %s: %s", key, exc)
            return None

    # ── Kata patterns ────────────────────────────────────────────

    def kata(self, name: str) -> SavedKata:
        entry = self._data.get("katas", {}).get(name)
        if not entry:
            available = ", ".join(self.list_katas()) or "(none)"
            raise NotFoundError(f'Kata pattern not found: "{name}". Available: {available}')
        return SavedKata(name=name, **entry)

    def has_kata(self, name: str) -> bool:
        return bool(self._data.get("katas", {}).get(name))

    def list_katas(self) -> list[str]:
        return sorted(self._data.get("katas", {}))
