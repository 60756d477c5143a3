"""Step and flavor definitions with their filesystem-backed registries.

Steps are persisted as ``<type>.json`` or ``<type>.<flavor>.json``;
flavors as ``<category>.<name>.json``. Built-in definitions may be
shipped as JSON or YAML and are copied into the registry directory by
``load_builtins``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from kata_engine.catalog import load_yaml
from kata_engine.errors import (
    FlavorNotFoundError,
    KataError,
    NotFoundError,
    StepNotFoundError,
    StoreError,
)
from kata_engine.gates import Gate
from kata_engine.schemas import StageCategory
from kata_engine.stores import JsonStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Artifact(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    schema_ref: str | None = None
    required: bool = True
    extension: str | None = None


class ToolResource(BaseModel):
    name: str = Field(min_length=1)
    purpose: str
    command: str | None = None


class AgentResource(BaseModel):
    name: str = Field(min_length=1)
    when: str | None = None


class SkillResource(BaseModel):
    name: str = Field(min_length=1)
    when: str | None = None


class StepResources(BaseModel):
    """Tools, agents and skills suggested to whoever executes a step."""

    tools: list[ToolResource] = Field(default_factory=list)
    agents: list[AgentResource] = Field(default_factory=list)
    skills: list[SkillResource] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.tools or self.agents or self.skills)


class Step(BaseModel):
    """Atomic unit of work with gates, artifacts and resources."""

    type: str = Field(min_length=1)
    flavor: str | None = None
    stage_category: StageCategory | None = None
    description: str | None = None
    entry_gate: Gate | None = None
    exit_gate: Gate | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    prompt_template: str | None = None
    learning_hooks: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    resources: StepResources | None = None


class FlavorStepRef(BaseModel):
    step_name: str = Field(min_length=1)
    step_type: str = Field(min_length=1)


class Flavor(BaseModel):
    """Named, ordered composition of steps implementing one stage category."""

    name: str = Field(min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    description: str | None = None
    stage_category: StageCategory
    steps: list[FlavorStepRef] = Field(min_length=1)
    overrides: dict[str, dict[str, Any]] | None = None
    resources: StepResources | None = None
    synthesis_artifact: str = Field(min_length=1)
    agent_id: str | None = None
    isolation: Literal["worktree", "shared"] = "shared"

    @model_validator(mode="after")
    def _unique_step_names(self) -> Flavor:
        names = [ref.step_name for ref in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate step names: {', '.join(duplicates)}")
        return self


class FlavorValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


StepResolver = Callable[[str, str], "Step | None"]


def _read_definition(path: Path) -> Any:
    if path.suffix in {".yaml", ".yml"}:
        return load_yaml(path)
    return JsonStore.read(path, dict)


def _load_definitions(directory: Path, model: type[BaseModel]) -> list[Any]:
    if not directory.is_dir():
        return []
    items: list[Any] = []
    for path in sorted(directory.iterdir()):
        if path.suffix not in {".json", ".yaml", ".yml"}:
            continue
        try:
            items.append(model.model_validate(_read_definition(path)))
        except (StoreError, PydanticValidationError) as exc:
            logger.warning("Skip invalid definition %s: %s", path.name, exc)
    return items


# ---------------------------------------------------------------------------
# Step registry
# ---------------------------------------------------------------------------

class StepRegistry:
    """Step definitions keyed by ``(type, flavor)``."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self._steps: dict[tuple[str, str | None], Step] = {}

    def _path(self, step_type: str, flavor: str | None) -> Path:
        name = f"{step_type}.{flavor}.json" if flavor else f"{step_type}.json"
        return self.base_path / name

    def _load_from_disk(self) -> None:
        for step in JsonStore.list(self.base_path, Step):
            self._steps.setdefault((step.type, step.flavor), step)

    def register(self, step: Step) -> Step:
        step = JsonStore.write(self._path(step.type, step.flavor), step, Step)
        self._steps[(step.type, step.flavor)] = step
        return step

    def get(self, step_type: str, flavor: str | None = None) -> Step:
        key = (step_type, flavor)
        if key in self._steps:
            return self._steps[key]
        try:
            step = JsonStore.read(self._path(step_type, flavor), Step)
        except NotFoundError:
            raise StepNotFoundError(step_type, flavor) from None
        self._steps[key] = step
        return step

    def list(self, step_type: str | None = None) -> list[Step]:
        """Cached steps plus any written to disk by another registry."""
        self._load_from_disk()
        steps = list(self._steps.values())
        if step_type is not None:
            steps = [s for s in steps if s.type == step_type]
        return steps

    def list_flavors(self, step_type: str) -> list[str]:
        return sorted(s.flavor for s in self.list(step_type) if s.flavor)

    def delete(self, step_type: str, flavor: str | None = None) -> Step:
        step = self.get(step_type, flavor)
        try:
            self._path(step_type, flavor).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise KataError(f'Failed to delete step "{step_type}": {exc}') from exc
        self._steps.pop((step_type, flavor), None)
        return step

    def load_builtins(self, builtin_dir: Path) -> int:
        """Copy valid built-in definitions into the registry; returns how many loaded."""
        loaded = 0
        for step in _load_definitions(Path(builtin_dir), Step):
            self.register(step)
            loaded += 1
        return loaded

    def resolver(self) -> StepResolver:
        """Return a resolver usable by :meth:`FlavorRegistry.validate`."""

        def _resolve(step_name: str, step_type: str) -> Step | None:
            try:
                return self.get(step_type)
            except StepNotFoundError:
                return None

        return _resolve


# ---------------------------------------------------------------------------
# Flavor registry
# ---------------------------------------------------------------------------

class FlavorRegistry:
    """Flavor definitions keyed by ``(stage category, name)``."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self._flavors: dict[tuple[StageCategory, str], Flavor] = {}

    def _path(self, category: StageCategory | str, name: str) -> Path:
        return self.base_path / f"{StageCategory(category).value}.{name}.json"

    def register(self, flavor: Flavor) -> Flavor:
        flavor = JsonStore.write(self._path(flavor.stage_category, flavor.name), flavor, Flavor)
        self._flavors[(flavor.stage_category, flavor.name)] = flavor
        return flavor

    def get(self, category: StageCategory | str, name: str) -> Flavor:
        key = (StageCategory(category), name)
        if key in self._flavors:
            return self._flavors[key]
        try:
            flavor = JsonStore.read(self._path(category, name), Flavor)
        except NotFoundError:
            raise FlavorNotFoundError(key[0].value, name) from None
        self._flavors[key] = flavor
        return flavor

    def list(self, category: StageCategory | str | None = None) -> list[Flavor]:
        for flavor in JsonStore.list(self.base_path, Flavor):
            self._flavors.setdefault((flavor.stage_category, flavor.name), flavor)
        flavors = list(self._flavors.values())
        if category is not None:
            wanted = StageCategory(category)
            flavors = [f for f in flavors if f.stage_category == wanted]
        return flavors

    def delete(self, category: StageCategory | str, name: str) -> Flavor:
        flavor = self.get(category, name)
        try:
            self._path(category, name).unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise KataError(f'Failed to delete flavor "{category}/{name}": {exc}') from exc
        self._flavors.pop((flavor.stage_category, name), None)
        return flavor

    def load_builtins(self, builtin_dir: Path) -> int:
        loaded = 0
        for flavor in _load_definitions(Path(builtin_dir), Flavor):
            self.register(flavor)
            loaded += 1
        return loaded

    def validate(
        self,
        flavor: Flavor,
        step_resolver: StepResolver | None = None,
        stage_input_artifacts: list[str] | None = None,
    ) -> FlavorValidationResult:
        """Check overrides and, with a resolver, the artifact dependency order.

        Without *step_resolver* only structural checks run, so ``valid`` does
        not guarantee the synthesis artifact is reachable.
        """
        errors: list[str] = []
        step_names = [ref.step_name for ref in flavor.steps]

        for key in (flavor.overrides or {}):
            if key not in step_names:
                errors.append(
                    f'Override key "{key}" does not match any step name in this flavor. '
                    f"Available step names: {', '.join(step_names)}."
                )

        if step_resolver is None:
            return FlavorValidationResult(valid=not errors, errors=errors)

        resolved: dict[str, Step | None] = {}
        for ref in flavor.steps:
            try:
                resolved[ref.step_name] = step_resolver(ref.step_name, ref.step_type)
            except KataError as exc:
                logger.warning("Step resolver failed for %s (%s): %s", ref.step_name, ref.step_type, exc)
                resolved[ref.step_name] = None

        available = set(stage_input_artifacts or [])
        synthesis_produced = False
        all_resolved = True
        for index, ref in enumerate(flavor.steps):
            step = resolved[ref.step_name]
            if step is None:
                all_resolved = False
                errors.append(f'Step "{ref.step_name}" (type: "{ref.step_type}") could not be resolved.')
                continue
            conditions = step.entry_gate.conditions if step.entry_gate else []
            for condition in conditions:
                name = condition.artifact_name
                if condition.type != "artifact-exists" or not name or name in available:
                    continue
                later = [
                    later_ref.step_name
                    for later_ref in flavor.steps[index + 1:]
                    if (resolved.get(later_ref.step_name) is not None)
                    and any(a.name == name for a in resolved[later_ref.step_name].artifacts)
                ]
                if later:
                    errors.append(
                        f'Step "{ref.step_name}" requires artifact "{name}" which is only '
                        f'produced by later step "{later[0]}".'
                    )
                else:
                    errors.append(
                        f'Step "{ref.step_name}" requires artifact "{name}" which no preceding '
                        "step or stage input provides."
                    )
            for artifact in step.artifacts:
                available.add(artifact.name)
                if artifact.name == flavor.synthesis_artifact:
                    synthesis_produced = True

        if all_resolved and not synthesis_produced:
            errors.append(
                f'Synthesis artifact "{flavor.synthesis_artifact}" is not produced by any step.'
            )
        return FlavorValidationResult(valid=not errors, errors=errors)
