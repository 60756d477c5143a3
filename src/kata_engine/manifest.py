"""Manifest builder: turns a step definition into one execution request."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from kata_engine.gates import Gate
from kata_engine.knowledge import Learning
from kata_engine.steps import (
    AgentResource,
    Artifact,
    Flavor,
    SkillResource,
    Step,
    StepResources,
    ToolResource,
)

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}")

R = TypeVar("R", ToolResource, AgentResource, SkillResource)


class ExecutionContext(BaseModel):
    pipeline_id: str
    stage_index: int = Field(default=0, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExecutionManifest(BaseModel):
    """Everything an execution adapter needs to perform one step."""

    stage_type: str
    stage_flavor: str | None = None
    prompt: str
    context: ExecutionContext
    entry_gate: Gate | None = None
    exit_gate: Gate | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    learnings: list[Learning] = Field(default_factory=list)
    resources: StepResources | None = None


def _dedupe(items: Iterable[R]) -> list[R]:
    seen: set[str] = set()
    unique: list[R] = []
    for item in items:
        if item.name in seen:
            continue
        seen.add(item.name)
        unique.append(item)
    return unique


def merge_resources(*sources: StepResources | None) -> StepResources:
    """Concatenate resources in order and keep the first entry per name."""
    present = [s for s in sources if s is not None]
    return StepResources(
        tools=_dedupe(t for s in present for t in s.tools),
        agents=_dedupe(a for s in present for a in s.agents),
        skills=_dedupe(k for s in present for k in s.skills),
    )


def _interpolate(template: str, context: ExecutionContext) -> str:
    values: dict[str, Any] = {
        "pipelineId": context.pipeline_id,
        "stageIndex": context.stage_index,
        **context.metadata,
    }

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        return str(values[key]) if key in values else match.group(0)

    return _PLACEHOLDER.sub(_sub, template)


def render_learnings(learnings: list[Learning]) -> str:
    lines = ["", "---", "", "## Learnings from Previous Executions", ""]
    for learning in learnings:
        lines.append(f"### [{learning.tier.upper()}] {learning.category}")
        lines.append(f"**Confidence**: {round(learning.confidence * 100)}%")
        lines.append("")
        lines.append(learning.content)
        if learning.evidence:
            lines.append("")
            lines.append("**Evidence**:")
            for ev in learning.evidence:
                lines.append(f"- {ev.observation} ({ev.stage_type}, {ev.recorded_at})")
        lines.append("")
    return "\n".join(lines)


def render_resources(resources: StepResources) -> str:
    lines = ["", "---", "", "## Suggested Resources", ""]
    if resources.tools:
        lines.append("**Tools**")
        for tool in resources.tools:
            suffix = f" — `{tool.command}`" if tool.command else ""
            lines.append(f"- {tool.name}: {tool.purpose}{suffix}")
        lines.append("")
    if resources.agents:
        lines.append("**Agents** (spawn when appropriate using the Task tool)")
        for agent in resources.agents:
            lines.append(f"- {agent.name}: {agent.when}" if agent.when else f"- {agent.name}")
        lines.append("")
    if resources.skills:
        lines.append("**Skills** (invoke when appropriate using the Skill tool)")
        for skill in resources.skills:
            lines.append(f"- {skill.name}: {skill.when}" if skill.when else f"- {skill.name}")
        lines.append("")
    return "\n".join(lines)


class ManifestBuilder:
    """Compose execution manifests from step definitions.

    Usage::

        manifest = ManifestBuilder.build(step, ExecutionContext(pipeline_id=pid))
    """

    @staticmethod
    def build(
        step: Step,
        context: ExecutionContext,
        learnings: list[Learning] | None = None,
        flavor_resources: StepResources | None = None,
    ) -> ExecutionManifest:
        if step.prompt_template:
            prompt = _interpolate(step.prompt_template, context)
        else:
            prompt = f'Execute the "{step.type}" stage.'

        if learnings:
            prompt += render_learnings(learnings)

        resources = merge_resources(step.resources, flavor_resources)
        if not resources.is_empty():
            prompt += render_resources(resources)

        return ExecutionManifest(
            stage_type=step.type,
            stage_flavor=step.flavor,
            prompt=prompt,
            context=context,
            entry_gate=step.entry_gate,
            exit_gate=step.exit_gate,
            artifacts=list(step.artifacts),
            learnings=list(learnings or []),
            resources=None if resources.is_empty() else resources,
        )

    @staticmethod
    def aggregate_flavor_resources(flavor: Flavor, step_defs: dict[str, Step]) -> StepResources:
        """Merge resources of the flavor's resolvable steps with the flavor's own.

        *step_defs* maps step names (falling back to step types) to their
        definitions; unresolvable references are skipped.
        """
        sources: list[StepResources | None] = []
        for ref in flavor.steps:
            step = step_defs.get(ref.step_name) or step_defs.get(ref.step_type)
            if step is None:
                logger.debug("Skip unresolved step %s in flavor %s", ref.step_name, flavor.name)
                continue
            sources.append(step.resources)
        sources.append(flavor.resources)
        return merge_resources(*sources)
