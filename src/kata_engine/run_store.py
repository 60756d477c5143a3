"""Run tree persistence: state documents plus per-level append-only logs.

Layout under ``runs_dir``::

    <runId>/run.json
    <runId>/observations.jsonl, reflections.jsonl
    <runId>/decisions.jsonl, decision-outcomes.jsonl, artifact-index.jsonl
    <runId>/stages/<category>/state.json (+ observations/reflections)
    <runId>/stages/<category>/flavors/<flavor>/state.json (+ logs, artifact-index.jsonl)
    <runId>/stages/<category>/flavors/<flavor>/steps/<step>/state.json (+ logs)

Each level owns its own observation and reflection logs; reads never merge
across levels.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, model_validator

from kata_engine.errors import NotFoundError, RunNotFoundError, StoreError, ValidationError
from kata_engine.schemas import (
    OBSERVATION_ADAPTER,
    REFLECTION_ADAPTER,
    ArtifactIndexEntry,
    DecisionEntry,
    DecisionOutcomeEntry,
    DecisionWithOutcome,
    FlavorState,
    Observation,
    Reflection,
    Run,
    StageCategory,
    StageState,
    StepState,
)
from kata_engine.stores import JsonlStore, JsonStore

logger = logging.getLogger(__name__)

RUN_FILE = "run.json"
STATE_FILE = "state.json"
OBSERVATIONS_FILE = "observations.jsonl"
REFLECTIONS_FILE = "reflections.jsonl"
DECISIONS_FILE = "decisions.jsonl"
DECISION_OUTCOMES_FILE = "decision-outcomes.jsonl"
ARTIFACT_INDEX_FILE = "artifact-index.jsonl"


def _segment(value: str, label: str) -> str:
    if not value or value in {".", ".."} or "/" in value or "\\" in value:
        raise ValidationError(f"Invalid {label} name for run tree path: {value!r}", [label])
    return value


class ObservationTarget(BaseModel):
    """Address of one log level inside a run tree."""

    level: Literal["run", "stage", "flavor", "step"] = "run"
    category: StageCategory | None = None
    flavor: str | None = None
    step: str | None = None

    @model_validator(mode="after")
    def _check_fields_for_level(self) -> ObservationTarget:
        needs_category = self.level in {"stage", "flavor", "step"}
        needs_flavor = self.level in {"flavor", "step"}
        if needs_category and self.category is None:
            raise ValueError(f"{self.level} target requires a category")
        if needs_flavor and not self.flavor:
            raise ValueError(f"{self.level} target requires a flavor")
        if self.level == "step" and not self.step:
            raise ValueError("step target requires a step")
        return self

    @classmethod
    def run(cls) -> ObservationTarget:
        return cls(level="run")

    @classmethod
    def stage(cls, category: StageCategory | str) -> ObservationTarget:
        return cls(level="stage", category=category)

    @classmethod
    def for_flavor(cls, category: StageCategory | str, flavor: str) -> ObservationTarget:
        return cls(level="flavor", category=category, flavor=flavor)

    @classmethod
    def for_step(cls, category: StageCategory | str, flavor: str, step: str) -> ObservationTarget:
        return cls(level="step", category=category, flavor=flavor, step=step)


class RunStore:
    """Filesystem-backed run tree.

    Parameters
    ----------
    runs_dir:
        Root directory holding one sub-directory per run id.
    """

    def __init__(self, runs_dir: str | Path) -> None:
        self.runs_dir = Path(runs_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        return self.runs_dir / _segment(run_id, "run")

    def stage_dir(self, run_id: str, category: StageCategory | str) -> Path:
        return self.run_dir(run_id) / "stages" / StageCategory(category).value

    def flavor_dir(self, run_id: str, category: StageCategory | str, flavor: str) -> Path:
        return self.stage_dir(run_id, category) / "flavors" / _segment(flavor, "flavor")

    def step_dir(self, run_id: str, category: StageCategory | str, flavor: str, step: str) -> Path:
        return self.flavor_dir(run_id, category, flavor) / "steps" / _segment(step, "step")

    def target_dir(self, run_id: str, target: ObservationTarget) -> Path:
        if target.level == "run":
            return self.run_dir(run_id)
        if target.level == "stage":
            return self.stage_dir(run_id, target.category)
        if target.level == "flavor":
            return self.flavor_dir(run_id, target.category, target.flavor)
        return self.step_dir(run_id, target.category, target.flavor, target.step)

    # ------------------------------------------------------------------
    # Run documents
    # ------------------------------------------------------------------

    def create_run_tree(self, run: Run) -> Run:
        """Write ``run.json`` and a pending state document for every stage."""
        run = JsonStore.write(self.run_dir(run.id) / RUN_FILE, run, Run)
        for category in run.stage_sequence:
            self.write_stage_state(run.id, StageState(category=category))
        logger.info("Created run tree %s (%s)", run.id, " -> ".join(c.value for c in run.stage_sequence))
        return run

    def read_run(self, run_id: str) -> Run:
        try:
            return JsonStore.read(self.run_dir(run_id) / RUN_FILE, Run)
        except NotFoundError:
            raise RunNotFoundError(run_id) from None

    def write_run(self, run: Run) -> Run:
        path = self.run_dir(run.id) / RUN_FILE
        if path.is_file():
            existing = JsonStore.read(path, Run)
            if list(existing.stage_sequence) != list(run.stage_sequence):
                raise ValidationError(
                    f"Run {run.id} stage sequence is immutable once created",
                    ["stage_sequence"],
                )
        return JsonStore.write(path, run, Run)

    def list_runs(self) -> list[Run]:
        if not self.runs_dir.is_dir():
            return []
        runs: list[Run] = []
        for child in sorted(self.runs_dir.iterdir()):
            path = child / RUN_FILE
            if not path.is_file():
                continue
            try:
                runs.append(JsonStore.read(path, Run))
            except StoreError as exc:
                logger.warning("Skip unreadable run %s: %s", child.name, exc)
        return runs

    # ------------------------------------------------------------------
    # Stage / flavor / step documents
    # ------------------------------------------------------------------

    def read_stage_state(self, run_id: str, category: StageCategory | str) -> StageState:
        return JsonStore.read(self.stage_dir(run_id, category) / STATE_FILE, StageState)

    def write_stage_state(self, run_id: str, state: StageState) -> StageState:
        return JsonStore.write(self.stage_dir(run_id, state.category) / STATE_FILE, state, StageState)

    def read_flavor_state(self, run_id: str, category: StageCategory | str, flavor: str) -> FlavorState:
        return JsonStore.read(self.flavor_dir(run_id, category, flavor) / STATE_FILE, FlavorState)

    def write_flavor_state(self, run_id: str, state: FlavorState) -> FlavorState:
        path = self.flavor_dir(run_id, state.stage_category, state.name) / STATE_FILE
        return JsonStore.write(path, state, FlavorState)

    def read_step_state(
        self, run_id: str, category: StageCategory | str, flavor: str, step: str
    ) -> StepState:
        return JsonStore.read(self.step_dir(run_id, category, flavor, step) / STATE_FILE, StepState)

    def write_step_state(
        self, run_id: str, category: StageCategory | str, flavor: str, state: StepState
    ) -> StepState:
        path = self.step_dir(run_id, category, flavor, state.type) / STATE_FILE
        return JsonStore.write(path, state, StepState)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def append_decision(self, run_id: str, decision: DecisionEntry) -> DecisionEntry:
        return JsonlStore.append(self.run_dir(run_id) / DECISIONS_FILE, decision, DecisionEntry)

    def read_decisions(self, run_id: str) -> list[DecisionEntry]:
        return JsonlStore.read_all(self.run_dir(run_id) / DECISIONS_FILE, DecisionEntry)

    def append_decision_outcome(self, run_id: str, outcome: DecisionOutcomeEntry) -> DecisionOutcomeEntry:
        path = self.run_dir(run_id) / DECISION_OUTCOMES_FILE
        return JsonlStore.append(path, outcome, DecisionOutcomeEntry)

    def read_decision_outcomes(self, run_id: str) -> list[DecisionOutcomeEntry]:
        return JsonlStore.read_all(self.run_dir(run_id) / DECISION_OUTCOMES_FILE, DecisionOutcomeEntry)

    def read_decisions_with_outcomes(self, run_id: str) -> list[DecisionWithOutcome]:
        """Join decisions with their latest outcome (by ``updated_at``)."""
        latest: dict[str, DecisionOutcomeEntry] = {}
        for outcome in self.read_decision_outcomes(run_id):
            current = latest.get(outcome.decision_id)
            if current is None or outcome.updated_at >= current.updated_at:
                latest[outcome.decision_id] = outcome
        return [
            DecisionWithOutcome(**decision.model_dump(), outcome=latest.get(decision.id))
            for decision in self.read_decisions(run_id)
        ]

    # ------------------------------------------------------------------
    # Artifact index
    # ------------------------------------------------------------------

    def append_artifact(self, run_id: str, entry: ArtifactIndexEntry) -> ArtifactIndexEntry:
        """Record an artifact at run level and, for flavor artifacts, in the flavor index."""
        entry = JsonlStore.append(self.run_dir(run_id) / ARTIFACT_INDEX_FILE, entry, ArtifactIndexEntry)
        if entry.flavor:
            path = self.flavor_dir(run_id, entry.stage_category, entry.flavor) / ARTIFACT_INDEX_FILE
            JsonlStore.append(path, entry, ArtifactIndexEntry)
        return entry

    def read_artifact_index(
        self,
        run_id: str,
        category: StageCategory | str | None = None,
        flavor: str | None = None,
    ) -> list[ArtifactIndexEntry]:
        if category is not None and flavor:
            path = self.flavor_dir(run_id, category, flavor) / ARTIFACT_INDEX_FILE
            return JsonlStore.read_all(path, ArtifactIndexEntry)
        entries = JsonlStore.read_all(self.run_dir(run_id) / ARTIFACT_INDEX_FILE, ArtifactIndexEntry)
        if category is not None:
            wanted = StageCategory(category)
            entries = [e for e in entries if e.stage_category == wanted]
        return entries

    # ------------------------------------------------------------------
    # Observations / reflections
    # ------------------------------------------------------------------

    def append_observation(
        self, run_id: str, observation: Observation, target: ObservationTarget | None = None
    ) -> Observation:
        path = self.target_dir(run_id, target or ObservationTarget.run()) / OBSERVATIONS_FILE
        return JsonlStore.append(path, observation, OBSERVATION_ADAPTER)

    def read_observations(self, run_id: str, target: ObservationTarget | None = None) -> list[Observation]:
        path = self.target_dir(run_id, target or ObservationTarget.run()) / OBSERVATIONS_FILE
        return JsonlStore.read_all(path, OBSERVATION_ADAPTER)

    def append_reflection(
        self, run_id: str, reflection: Reflection, target: ObservationTarget | None = None
    ) -> Reflection:
        path = self.target_dir(run_id, target or ObservationTarget.run()) / REFLECTIONS_FILE
        return JsonlStore.append(path, reflection, REFLECTION_ADAPTER)

    def read_reflections(self, run_id: str, target: ObservationTarget | None = None) -> list[Reflection]:
        path = self.target_dir(run_id, target or ObservationTarget.run()) / REFLECTIONS_FILE
        return JsonlStore.read_all(path, REFLECTION_ADAPTER)

    def read_run_and_stage_observations(self, run_id: str) -> list[Observation]:
        """Run-level observations followed by each stage category's log."""
        collected = list(self.read_observations(run_id))
        for category in StageCategory:
            collected.extend(self.read_observations(run_id, ObservationTarget.stage(category)))
        return collected
