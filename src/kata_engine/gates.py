"""Gate models and the gate evaluator.

A gate is an ordered bundle of declarative conditions. Evaluation never
short-circuits: every condition is evaluated so callers always get the
full per-condition diagnostics. ``passed`` is ``not gate.required or
all(condition passed)``.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from kata_engine.errors import GateEvaluationError
from kata_engine.schemas import utc_now

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 30
DEFAULT_OUTPUT_LIMIT = 500

ConditionType = Literal[
    "artifact-exists",
    "schema-valid",
    "human-approved",
    "predecessor-complete",
    "command-passes",
]


class GateCondition(BaseModel):
    type: ConditionType
    description: str | None = None
    artifact_name: str | None = None
    source_stage: str | None = None
    predecessor_type: str | None = None
    command: str | None = None


class Gate(BaseModel):
    type: Literal["entry", "exit"]
    conditions: list[GateCondition] = Field(default_factory=list)
    required: bool = True


class GateContext(BaseModel):
    """Facts a gate is evaluated against."""

    available_artifacts: list[str] = Field(default_factory=list)
    completed_stages: list[str] = Field(default_factory=list)
    human_approved: bool = False
    cwd: str | None = None


class ConditionResult(BaseModel):
    condition: GateCondition
    passed: bool
    detail: str


class GateResult(BaseModel):
    gate: Gate
    passed: bool
    results: list[ConditionResult] = Field(default_factory=list)
    evaluated_at: str = Field(default_factory=utc_now)

    def failed_conditions(self) -> list[ConditionResult]:
        return [r for r in self.results if not r.passed]


def _truncate(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


def _run_command(
    condition: GateCondition,
    context: GateContext,
    *,
    timeout: float,
    output_limit: int,
) -> ConditionResult:
    command = (condition.command or "").strip()
    if not command:
        return ConditionResult(
            condition=condition,
            passed=False,
            detail="command-passes condition missing command",
        )

    cwd = Path(context.cwd) if context.cwd else None
    logger.info("Gate command: %s (cwd=%s)", command, cwd or ".")
    try:
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return ConditionResult(
            condition=condition,
            passed=False,
            detail=f"Command timed out after {timeout:g}s: {command}",
        )
    except OSError as exc:
        raise GateEvaluationError(f"Could not spawn gate command {command!r}: {exc}") from exc

    if proc.returncode == 0:
        return ConditionResult(condition=condition, passed=True, detail=f"Command passed: {command}")

    combined = "\n".join(part for part in (proc.stdout, proc.stderr) if part)
    excerpt = _truncate(combined, output_limit)
    if proc.returncode < 0:
        detail = f"Command killed by signal {-proc.returncode}: {excerpt}"
    else:
        detail = f"Command failed (exit {proc.returncode}): {excerpt}"
    return ConditionResult(condition=condition, passed=False, detail=detail.rstrip(": "))


def evaluate_condition(
    condition: GateCondition,
    context: GateContext,
    *,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    output_limit: int = DEFAULT_OUTPUT_LIMIT,
) -> ConditionResult:
    """Evaluate a single condition. Only an unspawnable command raises."""
    if condition.type == "artifact-exists":
        name = condition.artifact_name
        if not name:
            return ConditionResult(
                condition=condition,
                passed=False,
                detail="artifact-exists condition missing artifactName",
            )
        found = name in context.available_artifacts
        return ConditionResult(
            condition=condition,
            passed=found,
            detail=(
                f'Artifact "{name}" is available'
                if found
                else f'Artifact "{name}" not found in available artifacts'
            ),
        )

    if condition.type == "predecessor-complete":
        predecessor = condition.predecessor_type
        if not predecessor:
            return ConditionResult(
                condition=condition,
                passed=False,
                detail="predecessor-complete condition missing predecessorType",
            )
        done = predecessor in context.completed_stages
        return ConditionResult(
            condition=condition,
            passed=done,
            detail=(
                f'Predecessor "{predecessor}" is complete'
                if done
                else f'Predecessor "{predecessor}" has not been completed'
            ),
        )

    if condition.type == "human-approved":
        approved = context.human_approved is True
        return ConditionResult(
            condition=condition,
            passed=approved,
            detail="Human approval granted" if approved else "Human approval not yet granted",
        )

    if condition.type == "schema-valid":
        return ConditionResult(
            condition=condition,
            passed=True,
            detail="Schema validation deferred to capture time",
        )

    if condition.type == "command-passes":
        return _run_command(condition, context, timeout=timeout, output_limit=output_limit)

    raise ValueError(f"Unknown gate condition type: {condition.type!r}")


def evaluate_gate(
    gate: Gate,
    context: GateContext,
    *,
    timeout: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    output_limit: int = DEFAULT_OUTPUT_LIMIT,
) -> GateResult:
    """Evaluate every condition of *gate* and return a :class:`GateResult`.

    Parameters
    ----------
    gate:
        The gate to evaluate; it is never mutated.
    context:
        Available artifacts, completed stages, approval flag and working
        directory for command conditions.
    timeout:
        Seconds a ``command-passes`` process may run before it is reported
        as failed.
    output_limit:
        Maximum characters of command output kept in a failure detail.
    """
    results = [
        evaluate_condition(condition, context, timeout=timeout, output_limit=output_limit)
        for condition in gate.conditions
    ]
    passed = (not gate.required) or all(r.passed for r in results)
    return GateResult(gate=gate, passed=passed, results=results)
