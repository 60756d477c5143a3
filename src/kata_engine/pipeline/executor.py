"""Flavor executors: run one flavor's steps and report its artifacts."""

from __future__ import annotations

import abc
import logging
import time
from typing import Any

from kata_engine.adapters import ExecutionAdapter, resolve_adapter
from kata_engine.errors import OrchestratorError, StepNotFoundError
from kata_engine.gates import (
    DEFAULT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_OUTPUT_LIMIT,
    Gate,
    GateContext,
    GateResult,
    evaluate_gate,
)
from kata_engine.history import ExecutionHistory, ExecutionHistoryEntry
from kata_engine.knowledge import Learning
from kata_engine.manifest import ExecutionContext, ManifestBuilder
from kata_engine.pipeline.results import ArtifactValue, FlavorExecutionResult, OrchestratorContext
from kata_engine.schemas import utc_now
from kata_engine.steps import Flavor, Step, StepRegistry

logger = logging.getLogger(__name__)


class FlavorExecutor(abc.ABC):
    """Runs one flavor for a stage orchestrator."""

    @abc.abstractmethod
    def execute(self, flavor: Flavor, context: OrchestratorContext) -> FlavorExecutionResult:
        """Execute *flavor* and return its artifacts plus synthesis value."""


def _gate_summary(result: GateResult) -> str:
    return "; ".join(r.detail for r in result.failed_conditions()) or "no conditions"


class StepFlavorExecutor(FlavorExecutor):
    """Execute a flavor step by step through an :class:`ExecutionAdapter`.

    Parameters
    ----------
    step_registry:
        Resolves each step reference (flavor-specific definition first).
    adapter:
        Performs the work of each step. A string is looked up in the
        adapter registry; ``None`` selects the manual adapter.
    history:
        Optional ledger receiving one entry per executed step.
    gate_timeout:
        Seconds allowed for ``command-passes`` gate conditions.
    cwd:
        Working directory for gate commands.
    """

    def __init__(
        self,
        step_registry: StepRegistry,
        adapter: ExecutionAdapter | str | None = None,
        *,
        history: ExecutionHistory | None = None,
        gate_timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
        gate_output_limit: int = DEFAULT_OUTPUT_LIMIT,
        cwd: str | None = None,
    ) -> None:
        self.step_registry = step_registry
        self.adapter = adapter if isinstance(adapter, ExecutionAdapter) else resolve_adapter(adapter)
        self.history = history
        self.gate_timeout = gate_timeout
        self.gate_output_limit = gate_output_limit
        self.cwd = cwd

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_step(self, flavor: Flavor, step_name: str, step_type: str) -> Step:
        try:
            step = self.step_registry.get(step_type, flavor.name)
        except StepNotFoundError:
            step = self.step_registry.get(step_type)
        override = (flavor.overrides or {}).get(step_name)
        if override:
            step = Step.model_validate({**step.model_dump(), **override})
        return step

    def _evaluate(
        self,
        gate: Gate | None,
        available: list[str],
        context: OrchestratorContext,
        *,
        human_approved: bool = False,
    ) -> GateResult | None:
        if gate is None:
            return None
        return evaluate_gate(
            gate,
            GateContext(
                available_artifacts=available,
                completed_stages=list(context.completed_stages),
                human_approved=human_approved,
                cwd=self.cwd,
            ),
            timeout=self.gate_timeout,
            output_limit=self.gate_output_limit,
        )

    @staticmethod
    def _learnings(context: OrchestratorContext) -> list[Learning]:
        return [
            Learning(tier="stage", category="execution", content=content, confidence=0.7)
            for content in context.learnings
        ]

    # ------------------------------------------------------------------
    # FlavorExecutor
    # ------------------------------------------------------------------

    def execute(self, flavor: Flavor, context: OrchestratorContext) -> FlavorExecutionResult:
        steps = {ref.step_name: self._resolve_step(flavor, ref.step_name, ref.step_type) for ref in flavor.steps}
        flavor_resources = ManifestBuilder.aggregate_flavor_resources(flavor, steps)
        learnings = self._learnings(context)
        bet = context.bet or {}

        produced: dict[str, Any] = {}
        last_completed_at: str | None = None
        for ref in flavor.steps:
            step = steps[ref.step_name]
            available = [*context.available_artifacts, *produced]

            entry = self._evaluate(step.entry_gate, available, context)
            if entry is not None and not entry.passed:
                raise OrchestratorError(
                    f'Entry gate blocked step "{ref.step_name}" in flavor "{flavor.name}": '
                    f"{_gate_summary(entry)}"
                )

            manifest = ManifestBuilder.build(
                step,
                ExecutionContext(
                    pipeline_id=context.pipeline_id,
                    stage_index=context.stage_index,
                    metadata={
                        **bet,
                        "flavorName": flavor.name,
                        "stepName": ref.step_name,
                        "yolo": context.yolo,
                    },
                ),
                learnings or None,
                flavor_resources,
            )

            started = time.monotonic()
            started_at = utc_now()
            result = self.adapter.execute(manifest)
            if not result.success:
                raise OrchestratorError(
                    f'Step "{ref.step_name}" (type: {ref.step_type}) in flavor "{flavor.name}" '
                    f"failed: {result.notes or 'execution returned success=false'}"
                )
            for artifact in result.artifacts:
                produced[artifact.name] = artifact.path or True
            last_completed_at = result.completed_at

            exit_result = self._evaluate(
                step.exit_gate,
                [*context.available_artifacts, *produced],
                context,
                human_approved=result.human_approved,
            )
            self._record_history(
                flavor, ref.step_name, context, result.token_usage, started, started_at,
                artifact_names=[a.name for a in result.artifacts],
                entry_passed=entry.passed if entry else None,
                exit_passed=exit_result.passed if exit_result else None,
            )
            if exit_result is not None and not exit_result.passed:
                raise OrchestratorError(
                    f'Exit gate failed for step "{ref.step_name}" in flavor "{flavor.name}": '
                    f"{_gate_summary(exit_result)}"
                )

        value = produced.get(flavor.synthesis_artifact)
        if value is None:
            value = {"artifacts": dict(produced), "completed_at": last_completed_at or utc_now()}
        return FlavorExecutionResult(
            flavor_name=flavor.name,
            artifacts=produced,
            synthesis_artifact=ArtifactValue(name=flavor.synthesis_artifact, value=value),
        )

    def _record_history(
        self,
        flavor: Flavor,
        step_name: str,
        context: OrchestratorContext,
        token_usage,
        started: float,
        started_at: str,
        *,
        artifact_names: list[str],
        entry_passed: bool | None,
        exit_passed: bool | None,
    ) -> None:
        if self.history is None:
            return
        bet = context.bet or {}
        self.history.record(
            ExecutionHistoryEntry(
                pipeline_id=context.pipeline_id,
                stage_type=flavor.stage_category.value,
                stage_flavor=f"{flavor.name}/{step_name}",
                stage_index=context.stage_index,
                adapter=self.adapter.name,
                token_usage=token_usage,
                duration_ms=int((time.monotonic() - started) * 1000),
                artifact_names=artifact_names,
                entry_gate_passed=entry_passed,
                exit_gate_passed=exit_passed,
                cycle_id=bet.get("cycle_id"),
                bet_id=bet.get("bet_id") or bet.get("id"),
                started_at=started_at,
            )
        )
