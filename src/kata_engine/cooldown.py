"""Two-phase cooldown: ``prepare`` reviews a cycle, ``complete`` closes it.

``prepare`` moves the cycle into ``cooldown`` before doing anything else and
restores the exact prior state if any later step fails, so a failed
prepare can simply be retried. ``complete`` applies the synthesis
proposals the user accepted and marks the cycle ``complete``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from kata_engine.cycle_manager import CycleManager
from kata_engine.cycles import BetOutcomeRecord, CooldownReport, Cycle
from kata_engine.errors import KataError, StateTransitionError
from kata_engine.history import ExecutionHistory
from kata_engine.knowledge import KnowledgeBackend, LearningEvidence
from kata_engine.run_store import RunStore
from kata_engine.schemas import Observation, new_id, utc_now
from kata_engine.synthesis import (
    ArchiveProposal,
    NewLearningProposal,
    SynthesisDepth,
    SynthesisInput,
    SynthesisProposal,
    UpdateLearningProposal,
    read_result,
    write_input,
    write_result,
)

logger = logging.getLogger(__name__)

LEARNING_PROPOSAL_MIN_CONFIDENCE = 0.7


# ---------------------------------------------------------------------------
# Next-cycle proposals
# ---------------------------------------------------------------------------

ProposalPriority = Literal["high", "medium", "low"]
ProposalSource = Literal["unfinished", "dependency", "learning"]

_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}
_SOURCE_ORDER = {"unfinished": 0, "dependency": 1, "learning": 2}


class CycleProposal(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    rationale: str
    suggested_appetite: int = Field(ge=1, le=100)
    priority: ProposalPriority
    source: ProposalSource
    related_bet_ids: list[str] = Field(default_factory=list)
    related_learning_ids: list[str] = Field(default_factory=list)


def _notes_suffix(notes: str | None) -> str:
    return f" Notes: {notes}" if notes else ""


class ProposalGenerator:
    """Suggest work for the next cycle from what this one left behind.

    Unfinished bets come first, then follow-ups unblocked by completed
    spikes, then one proposal per category of high-confidence learnings.
    """

    def __init__(
        self,
        cycle_manager: CycleManager,
        knowledge: KnowledgeBackend,
        run_store: RunStore | None = None,
    ) -> None:
        self.cycle_manager = cycle_manager
        self.knowledge = knowledge
        self.run_store = run_store

    def generate(self, cycle_id: str) -> list[CycleProposal]:
        cycle = self.cycle_manager.get(cycle_id)
        proposals = [
            *self.unfinished_work(cycle),
            *self.dependencies(cycle),
            *self.learnings(),
        ]
        return self.prioritize(proposals)

    def unfinished_work(self, cycle: Cycle) -> list[CycleProposal]:
        label = cycle.name or cycle.id
        proposals: list[CycleProposal] = []
        for bet in cycle.bets:
            if bet.outcome == "partial":
                proposals.append(
                    CycleProposal(
                        description=f"Continue: {bet.description}",
                        rationale=(
                            f'Bet was partially completed in cycle "{label}". Carrying forward with '
                            f"reduced appetite since some work is done.{_notes_suffix(bet.outcome_notes)}"
                        ),
                        suggested_appetite=max(1, round(bet.appetite * 0.6)),
                        priority="high",
                        source="unfinished",
                        related_bet_ids=[bet.id],
                    )
                )
            elif bet.outcome == "abandoned":
                proposals.append(
                    CycleProposal(
                        description=f"Retry: {bet.description}",
                        rationale=(
                            f'Bet was abandoned in cycle "{label}". Consider re-scoping or breaking '
                            f"into smaller bets.{_notes_suffix(bet.outcome_notes)}"
                        ),
                        suggested_appetite=max(1, bet.appetite),
                        priority="medium",
                        source="unfinished",
                        related_bet_ids=[bet.id],
                    )
                )
        return proposals

    def dependencies(self, cycle: Cycle) -> list[CycleProposal]:
        """Completed spike bets usually unblock implementation work."""
        if self.run_store is None:
            return []
        proposals: list[CycleProposal] = []
        for bet in cycle.bets:
            if bet.outcome != "complete" or bet.run_id is None:
                continue
            try:
                run = self.run_store.read_run(bet.run_id)
            except KataError as exc:
                logger.warning("Skip dependency analysis for bet %s: %s", bet.id, exc)
                continue
            if run.kata_pattern != "spike":
                continue
            proposals.append(
                CycleProposal(
                    description=f'Follow-up: Implementation from "{bet.description}"',
                    rationale=(
                        f'Spike bet "{bet.description}" completed successfully. '
                        "This may unblock follow-up implementation work."
                    ),
                    suggested_appetite=max(1, min(100, round(bet.appetite * 1.5))),
                    priority="medium",
                    source="dependency",
                    related_bet_ids=[bet.id],
                )
            )
        return proposals

    def learnings(self) -> list[CycleProposal]:
        by_category: dict[str, list[Any]] = {}
        for learning in self.knowledge.query(min_confidence=LEARNING_PROPOSAL_MIN_CONFIDENCE):
            by_category.setdefault(learning.category, []).append(learning)

        proposals: list[CycleProposal] = []
        for category, learnings in by_category.items():
            best = max(learnings, key=lambda learning: learning.confidence)
            content = best.content if len(best.content) <= 80 else best.content[:80] + "..."
            proposals.append(
                CycleProposal(
                    description=f"Learning-driven: {content}",
                    rationale=(
                        f"High-confidence learning ({best.confidence * 100:.0f}%) in category "
                        f'"{category}" suggests process improvement. Based on '
                        f"{len(best.evidence)} evidence point(s)."
                    ),
                    suggested_appetite=10,
                    priority="low",
                    source="learning",
                    related_learning_ids=[learning.id for learning in learnings],
                )
            )
        return proposals

    @staticmethod
    def prioritize(proposals: list[CycleProposal]) -> list[CycleProposal]:
        """Drop duplicate descriptions, then order by priority and source."""
        seen: set[str] = set()
        unique: list[CycleProposal] = []
        for proposal in proposals:
            key = proposal.description.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            unique.append(proposal)
        return sorted(unique, key=lambda p: (_PRIORITY_ORDER[p.priority], _SOURCE_ORDER[p.source]))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class CooldownPrepareResult(BaseModel):
    report: CooldownReport
    bet_outcomes: list[BetOutcomeRecord] = Field(default_factory=list)
    proposals: list[CycleProposal] = Field(default_factory=list)
    learnings_captured: int = 0
    synthesis_input_id: str
    synthesis_input_path: str = ""


class CooldownCompleteResult(BaseModel):
    report: CooldownReport
    synthesis_proposals: list[SynthesisProposal] | None = None


class CooldownSession:
    """Drive a cycle through cooldown.

    Usage::

        session = CooldownSession(cycles, knowledge, history, synthesis_dir=kata / "synthesis")
        prepared = session.prepare(cycle.id, [{"bet_id": bet.id, "outcome": "partial"}])
        # ... synthesizer writes result-<id>.json ...
        session.complete(cycle.id, prepared.synthesis_input_id, accepted_proposal_ids=[...])

    Parameters
    ----------
    cycle_manager:
        Owner of the cycle documents and their state.
    knowledge:
        Store receiving cautionary learnings and accepted proposals.
    history:
        Token-usage ledger; the report's utilization comes from here.
    synthesis_dir:
        Where ``pending-<id>.json`` / ``result-<id>.json`` live. Without
        it, ``prepare`` still generates an id but writes nothing.
    synthesis_depth:
        Default depth recorded in the synthesis input.
    run_store:
        Optional source of run observations for the synthesis input and
        of kata patterns for dependency proposals.
    """

    def __init__(
        self,
        cycle_manager: CycleManager,
        knowledge: KnowledgeBackend,
        history: ExecutionHistory,
        *,
        synthesis_dir: str | Path | None = None,
        synthesis_depth: SynthesisDepth = "standard",
        run_store: RunStore | None = None,
    ) -> None:
        self.cycle_manager = cycle_manager
        self.knowledge = knowledge
        self.history = history
        self.synthesis_dir = Path(synthesis_dir) if synthesis_dir is not None else None
        self.synthesis_depth = synthesis_depth
        self.run_store = run_store
        self.proposal_generator = ProposalGenerator(cycle_manager, knowledge, run_store)

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    def prepare(
        self,
        cycle_id: str,
        bet_outcomes: Iterable[BetOutcomeRecord | dict[str, Any]] = (),
        depth: SynthesisDepth | None = None,
    ) -> CooldownPrepareResult:
        outcomes = [
            o if isinstance(o, BetOutcomeRecord) else BetOutcomeRecord.model_validate(o) for o in bet_outcomes
        ]
        previous_state = self.cycle_manager.get(cycle_id).state
        self.cycle_manager.update_state(cycle_id, "cooldown")

        try:
            if outcomes:
                self.record_bet_outcomes(cycle_id, outcomes)
            report = self.build_report(cycle_id)
            proposals = self.proposal_generator.generate(cycle_id)
            learnings_captured = self.capture_cooldown_learnings(report)
            input_id, input_path = self._write_synthesis_input(cycle_id, report, depth or self.synthesis_depth)
        except Exception:
            try:
                self.cycle_manager.restore_state(cycle_id, previous_state)
            except Exception as rollback_error:
                logger.error(
                    'Failed to roll back cycle "%s" from cooldown to "%s". Manual intervention '
                    "may be required: %s",
                    cycle_id, previous_state, rollback_error,
                )
            raise

        return CooldownPrepareResult(
            report=report,
            bet_outcomes=outcomes,
            proposals=proposals,
            learnings_captured=learnings_captured,
            synthesis_input_id=input_id,
            synthesis_input_path=input_path,
        )

    def record_bet_outcomes(self, cycle_id: str, outcomes: list[BetOutcomeRecord]) -> None:
        unmatched = self.cycle_manager.update_bet_outcomes(cycle_id, outcomes)
        if unmatched:
            logger.warning(
                'Bet outcome(s) for cycle "%s" referenced nonexistent bet IDs: %s',
                cycle_id, ", ".join(unmatched),
            )

    def build_report(self, cycle_id: str) -> CooldownReport:
        """Cooldown report with utilization taken from recorded token usage."""
        tokens_used = self.history.tokens_for_cycle(cycle_id)
        return self.cycle_manager.generate_cooldown(cycle_id, tokens_used=tokens_used)

    def capture_cooldown_learnings(self, report: CooldownReport) -> int:
        """Record cautionary learnings about the cycle itself. Never raises."""
        label = report.cycle_name or report.cycle_id
        candidates: list[tuple[str, str, float, str]] = []

        if report.bets and report.completion_rate < 50:
            candidates.append(
                (
                    "cycle-management",
                    f'Cycle "{label}" had low completion rate ({report.completion_rate:.1f}%). '
                    "Consider reducing scope or breaking bets into smaller chunks.",
                    0.6,
                    f"{len(report.bets)} bets, {report.completion_rate:.1f}% completion",
                )
            )

        if report.budget.token_budget:
            usage = f"{report.tokens_used} tokens used of {report.budget.token_budget} budget"
            if report.utilization_percent > 100:
                candidates.append(
                    (
                        "budget-management",
                        f'Cycle "{label}" exceeded token budget ({report.utilization_percent:.1f}% '
                        "utilization). Consider more conservative estimates.",
                        0.7,
                        usage,
                    )
                )
            elif report.utilization_percent < 30 and report.bets:
                candidates.append(
                    (
                        "budget-management",
                        f'Cycle "{label}" significantly under-utilized token budget '
                        f"({report.utilization_percent:.1f}%). Could have taken on more work.",
                        0.5,
                        usage,
                    )
                )

        captured = failed = 0
        for category, content, confidence, observation in candidates:
            try:
                self.knowledge.capture(
                    "category",
                    category,
                    content,
                    confidence=confidence,
                    evidence=[
                        LearningEvidence(
                            pipeline_id=report.cycle_id, stage_type="cooldown", observation=observation
                        ).model_dump()
                    ],
                )
                captured += 1
            except Exception as exc:
                failed += 1
                logger.warning("Failed to capture cooldown learning: %s", exc)
        if failed:
            logger.warning(
                "%d of %d cooldown learnings failed to capture. Check previous warnings for details.",
                failed, captured + failed,
            )
        return captured

    def _cycle_observations(self, cycle_id: str) -> list[Observation]:
        if self.run_store is None:
            return []
        observations: list[Observation] = []
        for bet in self.cycle_manager.get(cycle_id).bets:
            if bet.run_id is not None:
                observations.extend(self.run_store.read_run_and_stage_observations(bet.run_id))
        return observations

    def _write_synthesis_input(
        self, cycle_id: str, report: CooldownReport, depth: SynthesisDepth
    ) -> tuple[str, str]:
        input_id = new_id()
        if self.synthesis_dir is None:
            return input_id, ""
        synthesis_input = SynthesisInput(
            id=input_id,
            cycle_id=cycle_id,
            depth=depth,
            observations=self._cycle_observations(cycle_id),
            learnings=self.knowledge.query(),
            cycle_name=report.cycle_name,
            token_budget=report.budget.token_budget,
            tokens_used=report.tokens_used,
            report=report,
        )
        path = write_input(self.synthesis_dir, synthesis_input)
        logger.info("Wrote synthesis input %s for cycle %s (%s)", input_id, cycle_id, depth)
        return input_id, str(path)

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    def complete(
        self,
        cycle_id: str,
        synthesis_input_id: str | None = None,
        accepted_proposal_ids: Iterable[str] | None = None,
    ) -> CooldownCompleteResult:
        cycle = self.cycle_manager.get(cycle_id)
        if cycle.state != "cooldown":
            raise StateTransitionError(
                f'Cycle "{cycle_id}" must be in cooldown to complete (state "{cycle.state}")',
                current=cycle.state,
                requested="complete",
            )

        proposals: list[SynthesisProposal] = []
        result = None
        if synthesis_input_id and self.synthesis_dir is not None:
            result = read_result(self.synthesis_dir, synthesis_input_id)
            if result is None:
                logger.info("No synthesis result for %s; completing without proposals", synthesis_input_id)
            else:
                proposals = list(result.proposals)

        applied = list(result.applied_proposal_ids or ()) if result is not None else []
        accepted = set(accepted_proposal_ids or ()) - set(applied)
        to_apply = [p for p in proposals if p.id in accepted]
        # Every target must resolve before the first write.
        for proposal in to_apply:
            if isinstance(proposal, (ArchiveProposal, UpdateLearningProposal)):
                self.knowledge.get(proposal.target_learning_id)
        for proposal in to_apply:
            if not self._apply(proposal):
                continue
            applied.append(proposal.id)
            if result is not None:
                # Progress is recorded per proposal so a retried complete skips it.
                result = result.model_copy(update={"applied_at": utc_now(), "applied_proposal_ids": list(applied)})
                write_result(self.synthesis_dir, result)

        self.cycle_manager.update_state(cycle_id, "complete")
        return CooldownCompleteResult(
            report=self.build_report(cycle_id),
            synthesis_proposals=proposals or None,
        )

    def _apply(self, proposal: SynthesisProposal) -> bool:
        if isinstance(proposal, NewLearningProposal):
            self.knowledge.capture(
                proposal.proposed_tier,
                proposal.proposed_category,
                proposal.proposed_content,
                confidence=proposal.confidence,
                source="synthesized",
                derived_from=list(proposal.citations),
            )
            return True
        if isinstance(proposal, ArchiveProposal):
            self.knowledge.archive_learning(proposal.target_learning_id, proposal.reason)
            return True
        if isinstance(proposal, UpdateLearningProposal):
            current = self.knowledge.get(proposal.target_learning_id)
            self.knowledge.update(
                proposal.target_learning_id,
                content=proposal.proposed_content,
                confidence=max(0.0, min(1.0, current.confidence + proposal.confidence_delta)),
                change_reason=proposal.reasoning or "synthesis",
            )
            return True
        logger.info("Proposal %s (%s) is advisory; not applied", proposal.id, proposal.type)
        return False
