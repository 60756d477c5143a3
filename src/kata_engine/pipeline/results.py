"""Pipeline data models: stage context, flavor/stage results, reflections."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from kata_engine.decisions import Decision, DecisionOutcome
from kata_engine.schemas import StageCategory, new_id

ExecutionMode = Literal["sequential", "parallel"]
Quality = Literal["good", "partial", "poor"]

DEFAULT_MAX_PARALLEL_FLAVORS = 3


class ArtifactValue(BaseModel):
    name: str
    value: Any = None


class FlavorHint(BaseModel):
    """Per-category flavor steering supplied by a kata or caller."""

    pinned: list[str] = Field(default_factory=list)
    excluded: list[str] = Field(default_factory=list)


class StageSpec(BaseModel):
    """What a stage orchestrator is asked to run."""

    category: StageCategory
    available_flavors: list[str] = Field(default_factory=list)
    pinned_flavors: list[str] = Field(default_factory=list)
    excluded_flavors: list[str] = Field(default_factory=list)
    max_parallel_flavors: int = Field(default=DEFAULT_MAX_PARALLEL_FLAVORS, ge=1)


class OrchestratorContext(BaseModel):
    """Inputs visible to one stage: prior artifacts, bet, learnings."""

    pipeline_id: str = Field(default_factory=new_id)
    stage_index: int = Field(default=0, ge=0)
    available_artifacts: list[str] = Field(default_factory=list)
    completed_stages: list[str] = Field(default_factory=list)
    bet: dict[str, Any] | None = None
    learnings: list[str] = Field(default_factory=list)
    agent_id: str | None = None
    yolo: bool = False


class FlavorExecutionResult(BaseModel):
    flavor_name: str
    artifacts: dict[str, Any] = Field(default_factory=dict)
    synthesis_artifact: ArtifactValue


class MatchReport(BaseModel):
    flavor_name: str
    score: float
    keyword_hits: int = 0
    learning_boost: float = 0.0
    reasoning: str = ""


class DecisionOutcomeRecord(BaseModel):
    decision_id: str
    outcome: DecisionOutcome


class ReflectionResult(BaseModel):
    decision_outcomes: list[DecisionOutcomeRecord] = Field(default_factory=list)
    learnings: list[str] = Field(default_factory=list)
    overall_quality: Quality = "good"


class StageResult(BaseModel):
    stage_category: StageCategory
    available_artifacts: list[str] = Field(default_factory=list)
    selected_flavors: list[str] = Field(min_length=1)
    decisions: list[Decision] = Field(default_factory=list)
    flavor_results: list[FlavorExecutionResult] = Field(default_factory=list)
    stage_artifact: ArtifactValue
    execution_mode: ExecutionMode = "sequential"
    match_reports: list[MatchReport] = Field(default_factory=list)
    reflection: ReflectionResult = Field(default_factory=ReflectionResult)


class PipelineResult(BaseModel):
    pipeline_id: str
    stage_results: list[StageResult] = Field(default_factory=list)
    pipeline_reflection: ReflectionResult = Field(default_factory=ReflectionResult)
