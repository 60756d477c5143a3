"""Pydantic models for the run-state tree and its append-only logs."""

from __future__ import annotations

import datetime as dt
import uuid
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class StageCategory(str, Enum):
    """The four macro phases a bet's pipeline is made of."""

    RESEARCH = "research"
    PLAN = "plan"
    BUILD = "build"
    REVIEW = "review"


STAGE_CATEGORIES: tuple[StageCategory, ...] = tuple(StageCategory)


# ---------------------------------------------------------------------------
# Run / stage / flavor / step state documents
# ---------------------------------------------------------------------------

RunStatus = Literal["pending", "running", "completed", "failed"]
StageStatus = Literal["pending", "running", "completed", "failed", "skipped"]


class Run(BaseModel):
    """One execution of a bet; persisted as ``<runId>/run.json``."""

    id: str = Field(default_factory=new_id)
    cycle_id: str
    bet_id: str
    bet_prompt: str
    kata_pattern: str | None = None
    stage_sequence: list[StageCategory] = Field(min_length=1)
    current_stage: StageCategory | None = None
    status: RunStatus = "pending"
    started_at: str = Field(default_factory=utc_now)
    completed_at: str | None = None
    agent_id: str | None = None


class Gap(BaseModel):
    description: str
    severity: Literal["low", "medium", "high"]


class StageState(BaseModel):
    """Per-stage execution state inside a run."""

    category: StageCategory
    status: StageStatus = "pending"
    selected_flavors: list[str] = Field(default_factory=list)
    execution_mode: Literal["sequential", "parallel"] | None = None
    gaps: list[Gap] = Field(default_factory=list)
    synthesis_artifact: str | None = None
    decisions: list[str] = Field(default_factory=list)
    pending_gate: str | None = None
    approved_gates: list[str] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None


class StepState(BaseModel):
    """State of one step inside a flavor."""

    type: str
    status: StageStatus = "pending"
    artifacts: list[str] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None


class FlavorState(BaseModel):
    name: str
    stage_category: StageCategory
    status: StageStatus = "pending"
    steps: list[StepState] = Field(default_factory=list)
    current_step: int | None = None


# ---------------------------------------------------------------------------
# Decision / artifact logs
# ---------------------------------------------------------------------------

class DecisionEntry(BaseModel):
    """Immutable record of a choice made during a run."""

    id: str = Field(default_factory=new_id)
    stage_category: StageCategory
    flavor: str | None = None
    step: str | None = None
    decision_type: str
    context: dict[str, Any] = Field(default_factory=dict)
    options: list[str] = Field(default_factory=list)
    selection: str
    reasoning: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    decided_at: str = Field(default_factory=utc_now)
    low_confidence: bool | None = None


class DecisionOutcomeEntry(BaseModel):
    """Post-facto outcome for a decision; the latest ``updated_at`` wins."""

    decision_id: str
    outcome: Literal["good", "partial", "poor", "unknown"]
    notes: str | None = None
    user_overrides: str | None = None
    updated_at: str = Field(default_factory=utc_now)


class DecisionWithOutcome(DecisionEntry):
    outcome: DecisionOutcomeEntry | None = None


class ArtifactIndexEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    stage_category: StageCategory
    flavor: str | None = None
    step: str
    file_name: str
    file_path: str
    summary: str = ""
    type: Literal["artifact", "synthesis"] = "artifact"
    recorded_at: str = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _artifact_requires_flavor(self) -> ArtifactIndexEntry:
        if self.type == "artifact" and not self.flavor:
            raise ValueError("flavor is required when type is 'artifact'")
        return self


# ---------------------------------------------------------------------------
# Observations (7 kinds)
# ---------------------------------------------------------------------------

FrictionTaxonomy = Literal[
    "stale-learning",
    "config-drift",
    "convention-clash",
    "tool-mismatch",
    "scope-creep",
]


class _ObservationBase(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: str = Field(default_factory=utc_now)
    content: str = Field(min_length=1)
    agent_id: str | None = None


class QuantitativePrediction(BaseModel):
    metric: str
    predicted: float
    unit: str


class QualitativePrediction(BaseModel):
    expected: str


class DecisionObservation(_ObservationBase):
    kind: Literal["decision"] = "decision"
    options: list[str] = Field(default_factory=list)
    selection: str | None = None


class PredictionObservation(_ObservationBase):
    kind: Literal["prediction"] = "prediction"
    quantitative: QuantitativePrediction | None = None
    qualitative: QualitativePrediction | None = None
    timeframe: str | None = None


class FrictionObservation(_ObservationBase):
    kind: Literal["friction"] = "friction"
    taxonomy: FrictionTaxonomy
    contradicts: str | None = None


class GapObservation(_ObservationBase):
    kind: Literal["gap"] = "gap"
    severity: Literal["critical", "major", "minor"]


class OutcomeObservation(_ObservationBase):
    kind: Literal["outcome"] = "outcome"
    prediction_id: str | None = None


class AssumptionObservation(_ObservationBase):
    kind: Literal["assumption"] = "assumption"
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class InsightObservation(_ObservationBase):
    kind: Literal["insight"] = "insight"


Observation = Annotated[
    Union[
        DecisionObservation,
        PredictionObservation,
        FrictionObservation,
        GapObservation,
        OutcomeObservation,
        AssumptionObservation,
        InsightObservation,
    ],
    Field(discriminator="kind"),
]

OBSERVATION_ADAPTER: TypeAdapter = TypeAdapter(Observation)


# ---------------------------------------------------------------------------
# Reflections (5 kinds)
# ---------------------------------------------------------------------------

CalibrationBias = Literal[
    "overconfidence",
    "estimation-drift",
    "predictor-divergence",
    "domain-bias",
]
ResolutionPath = Literal["invalidate", "scope", "synthesize", "escalate"]


class _ReflectionBase(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: str = Field(default_factory=utc_now)
    observation_ids: list[str] = Field(default_factory=list)


class CalibrationReflection(_ReflectionBase):
    kind: Literal["calibration"] = "calibration"
    domain: str
    agent_id: str | None = None
    total_predictions: int = Field(ge=0)
    correct_predictions: int = Field(ge=0)
    accuracy_rate: float = Field(ge=0.0, le=1.0)
    bias: CalibrationBias | None = None


class ValidationReflection(_ReflectionBase):
    kind: Literal["validation"] = "validation"
    prediction_id: str
    outcome_id: str
    correct: bool
    notes: str | None = None


class ResolutionReflection(_ReflectionBase):
    kind: Literal["resolution"] = "resolution"
    friction_id: str
    path: ResolutionPath
    summary: str


class UnmatchedReflection(_ReflectionBase):
    kind: Literal["unmatched"] = "unmatched"
    prediction_id: str
    reason: str | None = None


class SynthesisReflection(_ReflectionBase):
    kind: Literal["synthesis"] = "synthesis"
    source_reflection_ids: list[str] = Field(default_factory=list)
    insight: str


Reflection = Annotated[
    Union[
        CalibrationReflection,
        ValidationReflection,
        ResolutionReflection,
        UnmatchedReflection,
        SynthesisReflection,
    ],
    Field(discriminator="kind"),
]

REFLECTION_ADAPTER: TypeAdapter = TypeAdapter(Reflection)
