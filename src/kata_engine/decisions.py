"""Decision registry: choices made by stage orchestrators, with outcomes.

Decisions are persisted to ``<base>/<stageCategory>.<id>.json``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from kata_engine.errors import DecisionNotFoundError
from kata_engine.schemas import StageCategory, new_id, utc_now
from kata_engine.stores import JsonStore

logger = logging.getLogger(__name__)

DECISION_TYPES = frozenset(
    {
        "capability-analysis",
        "flavor-selection",
        "execution-mode",
        "synthesis-approach",
        "retry",
        "confidence-gate",
    }
)


class DecisionOutcome(BaseModel):
    artifact_quality: Literal["good", "partial", "poor"] | None = None
    gate_result: Literal["passed", "failed"] | None = None
    rework_required: bool | None = None
    notes: str | None = None


class Decision(BaseModel):
    id: str = Field(default_factory=new_id)
    stage_category: StageCategory
    decision_type: str
    context: dict[str, Any] = Field(default_factory=dict)
    options: list[str] = Field(min_length=1)
    selection: str
    reasoning: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    decided_at: str = Field(default_factory=utc_now)
    outcome: DecisionOutcome | None = None


class DecisionStats(BaseModel):
    count: int = 0
    avg_confidence: float = 0.0
    count_by_type: dict[str, int] = Field(default_factory=dict)
    outcome_distribution: dict[str, int] = Field(default_factory=dict)


class DecisionRegistry:
    """Filesystem-backed decision log with an in-memory cache."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self._decisions: dict[str, Decision] = {}

    def _path(self, decision: Decision) -> Path:
        return self.base_path / f"{decision.stage_category.value}.{decision.id}.json"

    def _load_from_disk(self) -> None:
        for decision in JsonStore.list(self.base_path, Decision):
            self._decisions.setdefault(decision.id, decision)

    def record(self, **fields: Any) -> Decision:
        """Validate, assign a fresh id, and persist a decision."""
        fields.pop("id", None)
        decision = Decision.model_validate(fields)
        if decision.decision_type not in DECISION_TYPES:
            logger.debug("Recording non-standard decision type %s", decision.decision_type)
        decision = JsonStore.write(self._path(decision), decision, Decision)
        self._decisions[decision.id] = decision
        return decision

    def get(self, decision_id: str) -> Decision:
        if decision_id not in self._decisions:
            self._load_from_disk()
        try:
            return self._decisions[decision_id]
        except KeyError:
            raise DecisionNotFoundError(decision_id) from None

    def list(
        self,
        *,
        stage_category: StageCategory | str | None = None,
        decision_type: str | None = None,
        min_confidence: float | None = None,
        max_confidence: float | None = None,
    ) -> list[Decision]:
        """Filtered decisions sorted by ``decided_at`` ascending."""
        self._load_from_disk()
        results = list(self._decisions.values())
        if stage_category is not None:
            wanted = StageCategory(stage_category)
            results = [d for d in results if d.stage_category == wanted]
        if decision_type is not None:
            results = [d for d in results if d.decision_type == decision_type]
        if min_confidence is not None:
            results = [d for d in results if d.confidence >= min_confidence]
        if max_confidence is not None:
            results = [d for d in results if d.confidence <= max_confidence]
        return sorted(results, key=lambda d: d.decided_at)

    def update_outcome(self, decision_id: str, outcome: DecisionOutcome) -> Decision:
        """Merge *outcome* into the decision's existing outcome fields."""
        existing = self.get(decision_id)
        merged = (existing.outcome or DecisionOutcome()).model_dump(exclude_none=True)
        merged.update(outcome.model_dump(exclude_none=True))
        updated = existing.model_copy(update={"outcome": DecisionOutcome(**merged)})
        updated = JsonStore.write(self._path(updated), updated, Decision)
        self._decisions[decision_id] = updated
        return updated

    def stats(self, stage_category: StageCategory | str | None = None) -> DecisionStats:
        subset = self.list(stage_category=stage_category)
        by_type: dict[str, int] = {}
        distribution = {"good": 0, "partial": 0, "poor": 0, "no_outcome": 0}
        for decision in subset:
            by_type[decision.decision_type] = by_type.get(decision.decision_type, 0) + 1
            quality = decision.outcome.artifact_quality if decision.outcome else None
            distribution[quality or "no_outcome"] += 1
        count = len(subset)
        return DecisionStats(
            count=count,
            avg_confidence=sum(d.confidence for d in subset) / count if count else 0.0,
            count_by_type=by_type,
            outcome_distribution=distribution,
        )
