"""Pipeline orchestrator: drive a sequence of stage categories.

Stages run strictly in order. Each stage sees the synthesis artifacts of
every earlier stage in this pipeline and nothing from later ones; an
executor failure aborts the remaining stages and propagates unchanged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from kata_engine.catalog import KataCatalog
from kata_engine.decisions import DecisionRegistry
from kata_engine.errors import OrchestratorError
from kata_engine.pipeline.executor import FlavorExecutor
from kata_engine.pipeline.results import (
    DEFAULT_MAX_PARALLEL_FLAVORS,
    FlavorHint,
    OrchestratorContext,
    PipelineResult,
    ReflectionResult,
    StageResult,
    StageSpec,
)
from kata_engine.pipeline.stage import StageOrchestrator
from kata_engine.schemas import StageCategory, new_id
from kata_engine.steps import FlavorRegistry

logger = logging.getLogger(__name__)

StageOrchestratorFactory = Callable[[StageCategory], StageOrchestrator]


class PipelineOrchestrator:
    """Run ``research → plan → build → review`` (or any subsequence) for a bet.

    Usage::

        orchestrator = PipelineOrchestrator(flavors, decisions, executor, catalog=catalog)
        result = orchestrator.run_pipeline(["plan", "build"], bet={"title": "Add export"})
        for stage in result.stage_results:
            print(stage.stage_category, stage.stage_artifact.name)

    Parameters
    ----------
    flavor_registry:
        Source of the flavors available to each stage.
    decision_registry:
        Receives every stage decision.
    executor:
        Runs flavors; its failures propagate verbatim.
    catalog:
        Optional vocabulary source for flavor scoring.
    max_parallel_flavors:
        Upper bound for running selected flavors of one stage in parallel.
    stage_factory:
        Override for building stage orchestrators (tests, custom phases).
    """

    def __init__(
        self,
        flavor_registry: FlavorRegistry,
        decision_registry: DecisionRegistry,
        executor: FlavorExecutor,
        *,
        catalog: KataCatalog | None = None,
        max_parallel_flavors: int = DEFAULT_MAX_PARALLEL_FLAVORS,
        stage_factory: StageOrchestratorFactory | None = None,
    ) -> None:
        self.flavor_registry = flavor_registry
        self.decision_registry = decision_registry
        self.executor = executor
        self.catalog = catalog
        self.max_parallel_flavors = max_parallel_flavors
        self._stage_factory = stage_factory or self._default_stage

    def _default_stage(self, category: StageCategory) -> StageOrchestrator:
        return StageOrchestrator(
            category,
            self.flavor_registry,
            self.decision_registry,
            self.executor,
            vocabulary=self.catalog.vocabulary(category) if self.catalog else None,
        )

    def run_pipeline(
        self,
        categories: Sequence[StageCategory | str],
        bet: dict[str, Any] | None = None,
        *,
        yolo: bool = False,
        flavor_hints: dict[str, FlavorHint] | None = None,
        agent_id: str | None = None,
        learnings: list[str] | None = None,
    ) -> PipelineResult:
        """Execute *categories* in order and return every stage result.

        ``yolo`` is handed to the executor through the stage context and
        has no effect on orchestration.
        """
        if not categories:
            raise OrchestratorError("Cannot run an empty pipeline. Provide at least one stage category.")
        sequence = [StageCategory(c) for c in categories]

        available: dict[StageCategory, list[str]] = {}
        for category in sequence:
            if category in available:
                continue
            names = [f.name for f in self.flavor_registry.list(category)]
            if not names:
                raise OrchestratorError(
                    f'No flavors registered for category "{category.value}". '
                    "Ensure flavors are loaded before running the pipeline."
                )
            available[category] = names

        pipeline_id = new_id()
        hints = flavor_hints or {}
        accumulated: list[str] = []
        completed: list[str] = []
        stage_results: list[StageResult] = []
        for index, category in enumerate(sequence):
            logger.info(
                "Pipeline %s: starting stage %s (%d prior artifact(s))",
                pipeline_id, category.value, len(accumulated),
            )
            hint = hints.get(category.value) or FlavorHint()
            stage = StageSpec(
                category=category,
                available_flavors=available[category],
                pinned_flavors=hint.pinned,
                excluded_flavors=hint.excluded,
                max_parallel_flavors=self.max_parallel_flavors,
            )
            context = OrchestratorContext(
                pipeline_id=pipeline_id,
                stage_index=index,
                available_artifacts=list(accumulated),
                completed_stages=list(completed),
                bet=bet,
                learnings=list(learnings or []),
                agent_id=agent_id,
                yolo=yolo,
            )
            result = self._stage_factory(category).run(stage, context)
            stage_results.append(result)
            accumulated.append(result.stage_artifact.name)
            completed.append(category.value)
            logger.info(
                "Pipeline %s: completed stage %s (%s, flavors=%s)",
                pipeline_id, category.value, result.execution_mode, ", ".join(result.selected_flavors),
            )

        return PipelineResult(
            pipeline_id=pipeline_id,
            stage_results=stage_results,
            pipeline_reflection=self._reflect(stage_results),
        )

    @staticmethod
    def _reflect(stage_results: list[StageResult]) -> ReflectionResult:
        qualities = [r.reflection.overall_quality for r in stage_results]
        if all(q == "good" for q in qualities):
            overall = "good"
        elif any(q == "poor" for q in qualities):
            overall = "poor"
        else:
            overall = "partial"
        chain = " → ".join(r.stage_category.value for r in stage_results)
        return ReflectionResult(
            decision_outcomes=[o for r in stage_results for o in r.reflection.decision_outcomes],
            learnings=[
                f"Pipeline completed {len(stage_results)} stage(s): {chain}.",
                *(learning for r in stage_results for learning in r.reflection.learnings),
            ],
            overall_quality=overall,
        )
