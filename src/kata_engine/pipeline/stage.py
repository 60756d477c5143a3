"""Stage orchestrator: analyze, match, plan, execute, synthesize, reflect.

One orchestrator runs one stage category. Every choice it makes is
recorded in the decision registry, and the reflect phase writes back an
outcome for each of those decisions.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from kata_engine.catalog import StageVocabulary
from kata_engine.decisions import Decision, DecisionOutcome, DecisionRegistry
from kata_engine.errors import FlavorNotFoundError, KataError, OrchestratorError
from kata_engine.pipeline.executor import FlavorExecutor
from kata_engine.pipeline.results import (
    ArtifactValue,
    DecisionOutcomeRecord,
    ExecutionMode,
    FlavorExecutionResult,
    MatchReport,
    OrchestratorContext,
    ReflectionResult,
    StageResult,
    StageSpec,
)
from kata_engine.schemas import StageCategory
from kata_engine.steps import Flavor, FlavorRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYNTHESIS_ALTERNATIVES = ["merge-all", "first-wins", "cascade"]
DEFAULT_REASONING_TEMPLATE = (
    "Merging all {count} flavor synthesis artifact(s) into a single keyed record "
    "for downstream stage consumption."
)


def bet_text(context: OrchestratorContext) -> str:
    """Lower-cased searchable text of the bet (title, description, tags)."""
    bet = context.bet or {}
    parts: list[str] = []
    for key in ("title", "description"):
        if isinstance(bet.get(key), str):
            parts.append(bet[key])
    tags = bet.get("tags")
    if isinstance(tags, list):
        parts.extend(tag for tag in tags if isinstance(tag, str))
    return " ".join(parts).lower()


def keyword_hits(flavor: Flavor, context: OrchestratorContext, keywords: list[str]) -> int:
    text = bet_text(context)
    name = flavor.name.lower()
    description = (flavor.description or "").lower()
    hits = 0
    for keyword in keywords:
        kw = keyword.lower()
        if kw in name or kw in description or kw in text:
            hits += 1
    return hits


def learning_boost(flavor: Flavor, context: OrchestratorContext) -> float:
    name = flavor.name.lower()
    return 0.1 if any(name in learning.lower() for learning in context.learnings) else 0.0


class StageOrchestrator:
    """Run one stage category through its six phases.

    Parameters
    ----------
    category:
        The stage category this orchestrator owns.
    flavor_registry:
        Lookup for the stage's flavors.
    decision_registry:
        Receives every decision the orchestrator makes.
    executor:
        Runs selected flavors.
    vocabulary:
        Optional keywords and synthesis preferences used for scoring.
    """

    def __init__(
        self,
        category: StageCategory | str,
        flavor_registry: FlavorRegistry,
        decision_registry: DecisionRegistry,
        executor: FlavorExecutor,
        *,
        vocabulary: StageVocabulary | None = None,
    ) -> None:
        self.category = StageCategory(category)
        self.flavor_registry = flavor_registry
        self.decision_registry = decision_registry
        self.executor = executor
        self.vocabulary = vocabulary

    def run(self, stage: StageSpec, context: OrchestratorContext) -> StageResult:
        decisions: list[Decision] = [self._analyze(stage, context)]

        candidates, pinned, reports = self._match(stage, context)
        selected, mode, plan_decisions = self._plan(stage, candidates, pinned, reports, context)
        decisions.extend(plan_decisions)

        flavor_results = self._execute(selected, mode, context)

        stage_artifact, synthesis_decision = self._synthesize(flavor_results)
        decisions.append(synthesis_decision)

        reflection = self._reflect(decisions, flavor_results)
        return StageResult(
            stage_category=self.category,
            available_artifacts=list(context.available_artifacts),
            selected_flavors=[f.name for f in selected],
            decisions=decisions,
            flavor_results=flavor_results,
            stage_artifact=stage_artifact,
            execution_mode=mode,
            match_reports=reports,
            reflection=reflection,
        )

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _record(self, decision_type: str, **fields: Any) -> Decision:
        try:
            return self.decision_registry.record(
                stage_category=self.category,
                decision_type=decision_type,
                **fields,
            )
        except KataError as exc:
            raise OrchestratorError(
                f'Stage "{self.category.value}" failed to record {decision_type} decision: {exc}'
            ) from exc

    def _analyze(self, stage: StageSpec, context: OrchestratorContext) -> Decision:
        return self._record(
            "capability-analysis",
            context={
                "available_artifacts": list(context.available_artifacts),
                "bet": context.bet,
                "learning_count": len(context.learnings),
                "available_flavor_count": len(stage.available_flavors),
            },
            options=["proceed", "insufficient-context"],
            selection="proceed",
            reasoning=(
                f"Analyzed context for {self.category.value} stage: "
                f"{len(context.available_artifacts)} artifact(s), "
                f"{len(context.learnings)} learning(s), "
                f"{len(stage.available_flavors)} available flavor(s)."
            ),
            confidence=0.95,
        )

    def _get_flavor(self, name: str) -> Flavor | None:
        try:
            return self.flavor_registry.get(self.category, name)
        except FlavorNotFoundError:
            logger.warning("Flavor %s/%s not found in registry; skipping", self.category.value, name)
            return None

    def _score(self, flavor: Flavor, context: OrchestratorContext) -> tuple[float, int]:
        if self.vocabulary is None:
            return 0.5, 0
        keywords = self.vocabulary.keywords
        hits = keyword_hits(flavor, context, keywords)
        base = min(1.0, hits / len(keywords)) if keywords else 0.5
        boost = 0.0
        for rule in self.vocabulary.boost_rules:
            if rule.artifact_pattern == "*":
                if context.available_artifacts:
                    boost += rule.magnitude
            elif any(rule.artifact_pattern in a for a in context.available_artifacts):
                boost += rule.magnitude
        return min(1.0, base + boost + learning_boost(flavor, context)), hits

    def _match(
        self, stage: StageSpec, context: OrchestratorContext
    ) -> tuple[list[Flavor], list[Flavor], list[MatchReport]]:
        excluded = set(stage.excluded_flavors)
        for name in stage.pinned_flavors:
            if name in excluded:
                logger.warning(
                    "Flavor %s/%s is both pinned and excluded; exclusion wins", self.category.value, name
                )

        pinned: list[Flavor] = []
        for name in stage.pinned_flavors:
            if name in excluded:
                continue
            flavor = self._get_flavor(name)
            if flavor is not None:
                pinned.append(flavor)

        pinned_names = {f.name for f in pinned}
        candidate_names = [n for n in stage.available_flavors if n not in excluded]
        if not candidate_names and not pinned:
            raise OrchestratorError(
                f'Stage "{self.category.value}" has no available flavors after applying exclusions.'
            )

        candidates: list[Flavor] = []
        for name in candidate_names:
            if name in pinned_names:
                continue
            flavor = self._get_flavor(name)
            if flavor is not None:
                candidates.append(flavor)
        if not candidates and not pinned:
            raise OrchestratorError(f'Stage "{self.category.value}" has no resolvable flavors.')

        reports: list[MatchReport] = []
        for flavor in candidates:
            score, hits = self._score(flavor, context)
            boost = learning_boost(flavor, context)
            reports.append(
                MatchReport(
                    flavor_name=flavor.name,
                    score=score,
                    keyword_hits=hits,
                    learning_boost=boost,
                    reasoning=f"Score {score:.2f}: {hits} keyword hit(s), learning boost {boost:.2f}.",
                )
            )
        return candidates, pinned, reports

    def _plan(
        self,
        stage: StageSpec,
        candidates: list[Flavor],
        pinned: list[Flavor],
        reports: list[MatchReport],
        context: OrchestratorContext,
    ) -> tuple[list[Flavor], ExecutionMode, list[Decision]]:
        scores = {r.flavor_name: r.score for r in reports}
        ranked = sorted(candidates, key=lambda f: scores.get(f.name, 0.0), reverse=True)

        selected: list[Flavor] = []
        for flavor in [*pinned, *ranked[:1]]:
            if flavor.name not in {f.name for f in selected}:
                selected.append(flavor)

        top_score = scores.get(ranked[0].name, 0.0) if ranked else 0.0
        primary = ranked[0].name if ranked else pinned[0].name
        options = [f.name for f in [*candidates, *pinned]]
        summary = ", ".join(f"{f.name}({scores.get(f.name, 0.0):.2f})" for f in ranked[:3])
        selection_decision = self._record(
            "flavor-selection",
            context={
                "available_artifacts": list(context.available_artifacts),
                "bet": context.bet,
                "candidate_count": len(candidates),
                "pinned_flavors": list(stage.pinned_flavors),
                "excluded_flavors": list(stage.excluded_flavors),
            },
            options=options,
            selection=primary,
            reasoning=(
                f"Scored candidates: [{summary or 'none (all pinned)'}]. "
                f'Selected "{primary}" as primary, with {len(pinned)} pinned flavor(s).'
            ),
            confidence=max(0.0, min(1.0, top_score)),
        )

        limit = stage.max_parallel_flavors
        count = len(selected)
        mode: ExecutionMode = "parallel" if 1 < count <= limit else "sequential"
        if count <= 1:
            mode_reason = "Only one flavor selected; sequential is optimal."
        elif count <= limit:
            mode_reason = f"{count} flavors fit within max_parallel_flavors={limit}; running in parallel."
        else:
            mode_reason = f"{count} flavors exceed max_parallel_flavors={limit}; running sequentially."
        mode_decision = self._record(
            "execution-mode",
            context={
                "flavor_count": count,
                "max_parallel_flavors": limit,
                "selected_flavors": [f.name for f in selected],
            },
            options=["sequential", "parallel"],
            selection=mode,
            reasoning=mode_reason,
            confidence=0.95,
        )
        return selected, mode, [selection_decision, mode_decision]

    def _execute(
        self, flavors: list[Flavor], mode: ExecutionMode, context: OrchestratorContext
    ) -> list[FlavorExecutionResult]:
        if mode == "sequential":
            return [self.executor.execute(flavor, context) for flavor in flavors]

        with ThreadPoolExecutor(max_workers=len(flavors)) as pool:
            futures = [pool.submit(self.executor.execute, flavor, context) for flavor in flavors]
        failures = [(f, fut.exception()) for f, fut in zip(flavors, futures) if fut.exception() is not None]
        if failures:
            names = ", ".join(f.name for f, _ in failures)
            logger.error(
                "Stage %s parallel execution failed (%d/%d flavors): %s",
                self.category.value, len(failures), len(flavors), names,
            )
            raise failures[0][1]
        return [fut.result() for fut in futures]

    def _synthesize(self, results: list[FlavorExecutionResult]) -> tuple[ArtifactValue, Decision]:
        missing = [r.flavor_name for r in results if r.synthesis_artifact.value is None]
        if missing:
            raise OrchestratorError(
                f'Stage "{self.category.value}" synthesis failed: synthesis artifact missing '
                f"from flavor(s): {', '.join(missing)}."
            )

        approach = self.vocabulary.synthesis_preference if self.vocabulary else "merge-all"
        alternatives = (
            list(self.vocabulary.synthesis_alternatives) if self.vocabulary else DEFAULT_SYNTHESIS_ALTERNATIVES
        )
        if approach not in alternatives:
            raise OrchestratorError(
                f'Stage "{self.category.value}" synthesis approach "{approach}" is not one of '
                f"[{', '.join(alternatives)}]."
            )
        template = (self.vocabulary.reasoning_template if self.vocabulary else None) or DEFAULT_REASONING_TEMPLATE

        merged = {r.flavor_name: r.synthesis_artifact.value for r in results}
        artifact = ArtifactValue(name=f"{self.category.value}-synthesis", value=merged)
        decision = self._record(
            "synthesis-approach",
            context={"flavor_count": len(results), "flavor_names": [r.flavor_name for r in results]},
            options=alternatives,
            selection=approach,
            reasoning=template.replace("{count}", str(len(results))),
            confidence=0.9,
        )
        return artifact, decision

    def _reflect(self, decisions: list[Decision], results: list[FlavorExecutionResult]) -> ReflectionResult:
        """Record a good outcome for every decision; only reached after synthesis succeeded."""
        outcome = DecisionOutcome(artifact_quality="good", gate_result="passed", rework_required=False)

        outcomes: list[DecisionOutcomeRecord] = []
        for decision in decisions:
            try:
                self.decision_registry.update_outcome(decision.id, outcome)
            except KataError as exc:
                logger.warning("Failed to update outcome for decision %s: %s", decision.id, exc)
                continue
            outcomes.append(DecisionOutcomeRecord(decision_id=decision.id, outcome=outcome))

        learning = f"{self.category.value} stage completed successfully with {len(results)} flavor(s)."
        return ReflectionResult(decision_outcomes=outcomes, learnings=[learning], overall_quality="good")
