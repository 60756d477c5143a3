"""Multi-stage pipeline orchestration.

Usage::

    from kata_engine.pipeline import PipelineOrchestrator, StepFlavorExecutor

    executor = StepFlavorExecutor(step_registry, adapter)
    orchestrator = PipelineOrchestrator(flavor_registry, decision_registry, executor)
    result = orchestrator.run_pipeline(["research", "plan", "build", "review"])
"""

from kata_engine.pipeline.executor import FlavorExecutor, StepFlavorExecutor
from kata_engine.pipeline.orchestrator import PipelineOrchestrator
from kata_engine.pipeline.results import (
    ArtifactValue,
    FlavorExecutionResult,
    FlavorHint,
    OrchestratorContext,
    PipelineResult,
    ReflectionResult,
    StageResult,
    StageSpec,
)
from kata_engine.pipeline.stage import StageOrchestrator

__all__ = [
    "ArtifactValue",
    "FlavorExecutionResult",
    "FlavorExecutor",
    "FlavorHint",
    "OrchestratorContext",
    "PipelineOrchestrator",
    "PipelineResult",
    "ReflectionResult",
    "StageOrchestrator",
    "StageResult",
    "StageSpec",
    "StepFlavorExecutor",
]
