"""Resolve friction observations against the learnings they contradict.

Resolution only starts once friction crosses the override threshold
(three or more frictions, or more than 30% of the run's observations).
Each contradicted learning is resolved at most once per pass, along one
of four paths chosen by a diagnostic confidence score:

- ``invalidate``: archive the contradicted learning;
- ``scope``: archive it and capture an "In most cases: ..." variant;
- ``synthesize``: capture a learning reconciling friction and learning;
- ``escalate``: record the friction for user review, no store mutation.

Every resolution is recorded as a run-level resolution reflection.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from kata_engine.knowledge import KnowledgeBackend, Learning
from kata_engine.reflection.keywords import keyword_overlap_ratio
from kata_engine.run_store import RunStore
from kata_engine.schemas import FrictionObservation, FrictionTaxonomy, ResolutionPath, ResolutionReflection

logger = logging.getLogger(__name__)

FRICTION_COUNT_THRESHOLD = 3
FRICTION_RATE_THRESHOLD = 0.3
TAXONOMY_RECURRENCE = 3
SCOPED_PREFIX = "In most cases:"


class FrictionResolution(BaseModel):
    friction_id: str
    taxonomy: FrictionTaxonomy
    path: ResolutionPath
    diagnostic_confidence: float
    summary: str
    learning_affected: str | None = None


class FrictionAnalysisResult(BaseModel):
    run_id: str
    friction_count: int = 0
    total_observations: int = 0
    override_threshold_met: bool = False
    resolutions: list[FrictionResolution] = Field(default_factory=list)
    reflections_written: int = 0


def select_path(confidence: float, has_contradiction: bool) -> ResolutionPath:
    if not has_contradiction:
        return "escalate"
    if confidence >= 0.8:
        return "invalidate"
    if confidence >= 0.7:
        return "scope"
    if confidence >= 0.6:
        return "synthesize"
    return "escalate"


def _escalation(friction: FrictionObservation) -> str:
    return f"Friction escalated for user review: {friction.content[:80]}"


class FrictionAnalyzer:
    """Turn recurring friction into knowledge-store changes.

    Parameters
    ----------
    run_store:
        Source of observations and sink for resolution reflections.
    knowledge:
        Store whose learnings frictions may contradict.
    """

    def __init__(self, run_store: RunStore, knowledge: KnowledgeBackend) -> None:
        self.run_store = run_store
        self.knowledge = knowledge

    def analyze(self, run_id: str) -> FrictionAnalysisResult:
        observations = self.run_store.read_run_and_stage_observations(run_id)
        frictions = [o for o in observations if isinstance(o, FrictionObservation)]
        total = len(observations)
        threshold_met = len(frictions) >= FRICTION_COUNT_THRESHOLD or (
            total > 0 and len(frictions) / total > FRICTION_RATE_THRESHOLD
        )
        result = FrictionAnalysisResult(
            run_id=run_id,
            friction_count=len(frictions),
            total_observations=total,
            override_threshold_met=threshold_met,
        )
        if not threshold_met:
            return result

        active = {learning.id: learning for learning in self.knowledge.query(include_archived=False)}
        taxonomy_counts: dict[str, int] = {}
        for friction in frictions:
            taxonomy_counts[friction.taxonomy] = taxonomy_counts.get(friction.taxonomy, 0) + 1

        processed: set[str] = set()
        for friction in frictions:
            if friction.contradicts:
                if friction.contradicts in processed:
                    continue
                processed.add(friction.contradicts)
            confidence = self.diagnostic_confidence(friction, taxonomy_counts, active)
            path = select_path(confidence, bool(friction.contradicts))
            result.resolutions.append(self._resolve(run_id, friction, path, confidence, active))

        result.reflections_written = len(result.resolutions)
        logger.info(
            "Run %s: resolved %d friction(s) of %d", run_id, len(result.resolutions), len(frictions)
        )
        return result

    @staticmethod
    def diagnostic_confidence(
        friction: FrictionObservation,
        taxonomy_counts: dict[str, int],
        active: dict[str, Learning],
    ) -> float:
        confidence = 0.5
        contradicted = active.get(friction.contradicts) if friction.contradicts else None
        if contradicted is not None:
            confidence += 0.2
            if contradicted.permanence == "operational":
                confidence += 0.1
            if keyword_overlap_ratio(friction.content, contradicted.content) > 0.6:
                confidence += 0.1
        if taxonomy_counts.get(friction.taxonomy, 0) >= TAXONOMY_RECURRENCE:
            confidence += 0.1
        return round(min(1.0, max(0.0, confidence)), 2)

    def _resolve(
        self,
        run_id: str,
        friction: FrictionObservation,
        path: ResolutionPath,
        confidence: float,
        active: dict[str, Learning],
    ) -> FrictionResolution:
        learning_id = friction.contradicts
        existing = active.get(learning_id) if learning_id else None
        affected: str | None = None

        if path == "invalidate" and learning_id:
            self.knowledge.archive_learning(learning_id, "friction-invalidated")
            summary = f'Archived learning "{learning_id}" (invalidated by friction: {friction.content[:60]})'
            affected = learning_id
        elif path == "scope" and existing is not None:
            self.knowledge.archive_learning(existing.id, "scoped")
            content = (
                existing.content
                if existing.content.startswith(SCOPED_PREFIX)
                else f"{SCOPED_PREFIX} {existing.content}"
            )
            narrowed = self.knowledge.capture(
                existing.tier,
                existing.category,
                content,
                confidence=existing.confidence,
                source="extracted",
                derived_from=[friction.id, existing.id],
            )
            summary = f'Scoped learning "{existing.id}" to add qualifier (narrowed by friction)'
            affected = narrowed.id
        elif path == "scope":
            summary = (
                "Friction escalated for user review (contradicted learning not found): "
                f"{friction.content[:60]}"
            )
        elif path == "synthesize":
            if existing is not None:
                content = f"Synthesized: {friction.content} (reconciled with: {existing.content[:60]})"
            else:
                content = f"Synthesized from friction: {friction.content}"
            merged = self.knowledge.capture(
                existing.tier if existing else "category",
                existing.category if existing else "friction-synthesis",
                content,
                confidence=0.6,
                source="extracted",
                derived_from=[friction.id, *([learning_id] if learning_id else [])],
            )
            summary = "Synthesized new learning from friction + contradicted learning"
            affected = merged.id
        else:
            summary = _escalation(friction)

        self.run_store.append_reflection(
            run_id,
            ResolutionReflection(
                observation_ids=[friction.id],
                friction_id=friction.id,
                path=path,
                summary=summary,
            ),
        )
        return FrictionResolution(
            friction_id=friction.id,
            taxonomy=friction.taxonomy,
            path=path,
            diagnostic_confidence=confidence,
            summary=summary,
            learning_affected=affected,
        )
