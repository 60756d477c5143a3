"""Tests for the two-phase cooldown session and next-cycle proposals."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from kata_engine.catalog import KataCatalog
from kata_engine.cooldown import CooldownSession, CycleProposal, ProposalGenerator
from kata_engine.cycle_manager import CycleManager
from kata_engine.errors import LearningNotFoundError, StateTransitionError
from kata_engine.history import ExecutionHistory, ExecutionHistoryEntry, TokenUsage
from kata_engine.knowledge import KnowledgeStore
from kata_engine.run_store import RunStore
from kata_engine.schemas import InsightObservation
from kata_engine.synthesis import (
    ArchiveProposal,
    MethodologyRecommendationProposal,
    NewLearningProposal,
    SynthesisResult,
    UpdateLearningProposal,
    pending_path,
    read_result,
    write_result,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def synthesis_dir(kata_dir: Path) -> Path:
    return kata_dir / "synthesis"


@pytest.fixture
def session(
    cycles: CycleManager,
    knowledge: KnowledgeStore,
    history: ExecutionHistory,
    run_store: RunStore,
    synthesis_dir: Path,
) -> CooldownSession:
    return CooldownSession(cycles, knowledge, history, synthesis_dir=synthesis_dir, run_store=run_store)


def _cycle_with_two_bets(cycles: CycleManager):
    cycle = cycles.create({"token_budget": 100_000}, name="Autumn")
    cycles.add_bet(cycle.id, "Bet A", 40)
    cycle = cycles.add_bet(cycle.id, "Bet B", 30)
    bet_a, bet_b = cycle.bets
    cycles.update_bet_outcomes(cycle.id, [{"bet_id": bet_a.id, "outcome": "complete"}])
    return cycle, bet_a, bet_b


class TestPrepare:
    def test_overrides_outcomes_and_reports(self, session: CooldownSession, cycles: CycleManager) -> None:
        cycle, _, bet_b = _cycle_with_two_bets(cycles)

        prepared = session.prepare(cycle.id, [{"bet_id": bet_b.id, "outcome": "partial", "notes": "API done"}])

        assert prepared.report.completion_rate == 50.0
        assert prepared.report.bets[1].outcome == "partial"
        assert cycles.get(cycle.id).state == "cooldown"
        assert [p.description for p in prepared.proposals] == ["Continue: Bet B"]
        assert prepared.proposals[0].suggested_appetite == 18
        assert prepared.proposals[0].priority == "high"
        assert "Notes: API done" in prepared.proposals[0].rationale

    def test_writes_pending_synthesis_input(
        self, session: CooldownSession, cycles: CycleManager, run_store: RunStore, synthesis_dir: Path
    ) -> None:
        cycle = cycles.create(name="Spring")
        cycles.add_bet(cycle.id, "Docs", 20, kata={"type": "ad-hoc", "stages": ["plan"]})
        (run,) = cycles.start(cycle.id, run_store)
        run_store.append_observation(run.id, InsightObservation(content="docs are stale"))

        prepared = session.prepare(cycle.id, depth="thorough")

        path = pending_path(synthesis_dir, prepared.synthesis_input_id)
        assert prepared.synthesis_input_path == str(path)
        document = json.loads(path.read_text(encoding="utf-8"))
        assert document["cycle_id"] == cycle.id
        assert document["depth"] == "thorough"
        assert document["cycle_name"] == "Spring"
        assert [o["content"] for o in document["observations"]] == ["docs are stale"]

    def test_without_synthesis_dir_nothing_is_written(
        self, cycles: CycleManager, knowledge: KnowledgeStore, history: ExecutionHistory
    ) -> None:
        session = CooldownSession(cycles, knowledge, history)
        cycle = cycles.create()

        prepared = session.prepare(cycle.id)

        assert prepared.synthesis_input_id
        assert prepared.synthesis_input_path == ""

    def test_unmatched_outcomes_are_warned_not_fatal(
        self, caplog: pytest.LogCaptureFixture, session: CooldownSession, cycles: CycleManager
    ) -> None:
        cycle, _, _ = _cycle_with_two_bets(cycles)

        with caplog.at_level(logging.WARNING, logger="kata_engine.cooldown"):
            prepared = session.prepare(cycle.id, [{"bet_id": "ghost", "outcome": "complete"}])

        assert "nonexistent bet IDs: ghost" in caplog.text
        assert prepared.report.completion_rate == 50.0

    @pytest.mark.parametrize("start", [False, True])
    def test_failure_rolls_back_to_previous_state(
        self,
        monkeypatch: pytest.MonkeyPatch,
        session: CooldownSession,
        cycles: CycleManager,
        run_store: RunStore,
        start: bool,
    ) -> None:
        cycle = cycles.create()
        if start:
            cycles.start(cycle.id, run_store)
        before = cycles.get(cycle.id).state

        def explode(_cycle_id: str) -> list[CycleProposal]:
            raise RuntimeError("proposal generation failed")

        monkeypatch.setattr(session.proposal_generator, "generate", explode)

        with pytest.raises(RuntimeError, match="proposal generation failed"):
            session.prepare(cycle.id)

        assert cycles.get(cycle.id).state == before
        assert before == ("active" if start else "planning")

    def test_rollback_failure_is_logged_and_original_error_raised(
        self,
        caplog: pytest.LogCaptureFixture,
        monkeypatch: pytest.MonkeyPatch,
        session: CooldownSession,
        cycles: CycleManager,
    ) -> None:
        cycle = cycles.create()

        def explode(_cycle_id: str) -> list[CycleProposal]:
            raise RuntimeError("original")

        def restore_fails(_cycle_id: str, _state: str):
            raise OSError("disk full")

        monkeypatch.setattr(session.proposal_generator, "generate", explode)
        monkeypatch.setattr(cycles, "restore_state", restore_fails)

        with caplog.at_level(logging.ERROR, logger="kata_engine.cooldown"):
            with pytest.raises(RuntimeError, match="original"):
                session.prepare(cycle.id)

        assert "Failed to roll back cycle" in caplog.text


class TestCautionaryLearnings:
    def test_low_completion_and_overspend(
        self,
        session: CooldownSession,
        cycles: CycleManager,
        knowledge: KnowledgeStore,
        history: ExecutionHistory,
    ) -> None:
        cycle = cycles.create({"token_budget": 1_000})
        cycles.add_bet(cycle.id, "Only bet", 30)
        history.record(
            ExecutionHistoryEntry(
                pipeline_id="p1", stage_type="build", adapter="manual", cycle_id=cycle.id,
                token_usage=TokenUsage(total=1_500),
            )
        )

        prepared = session.prepare(cycle.id)

        assert prepared.learnings_captured == 2
        learnings = {item.category: item for item in knowledge.query()}
        assert learnings["cycle-management"].confidence == 0.6
        assert learnings["budget-management"].confidence == 0.7
        assert "exceeded token budget (150.0% utilization)" in learnings["budget-management"].content
        assert learnings["budget-management"].evidence[0].pipeline_id == cycle.id
        assert learnings["budget-management"].evidence[0].stage_type == "cooldown"

    def test_under_utilization(self, session: CooldownSession, cycles: CycleManager, knowledge: KnowledgeStore) -> None:
        cycle, _, _ = _cycle_with_two_bets(cycles)

        session.prepare(cycle.id)

        (learning,) = knowledge.query()
        assert learning.category == "budget-management"
        assert learning.confidence == 0.5
        assert "under-utilized" in learning.content

    def test_capture_failures_do_not_abort_prepare(
        self, monkeypatch: pytest.MonkeyPatch, session: CooldownSession, cycles: CycleManager, knowledge: KnowledgeStore
    ) -> None:
        cycle = cycles.create()
        cycles.add_bet(cycle.id, "Never finished", 20)

        def refuse(*_args, **_kwargs):
            raise OSError("read-only")

        monkeypatch.setattr(knowledge, "capture", refuse)

        prepared = session.prepare(cycle.id)

        assert prepared.learnings_captured == 0
        assert cycles.get(cycle.id).state == "cooldown"


class TestComplete:
    def test_applies_only_accepted_proposals(
        self, session: CooldownSession, cycles: CycleManager, knowledge: KnowledgeStore, synthesis_dir: Path
    ) -> None:
        existing = knowledge.capture("stage", "testing", "Mock time.", confidence=0.5)
        stale = knowledge.capture("stage", "testing", "Skip linting.", confidence=0.4)
        cycle = cycles.create()
        prepared = session.prepare(cycle.id)

        new = NewLearningProposal(
            confidence=0.8,
            proposed_content="Pin dependency versions.",
            proposed_tier="category",
            proposed_category="build",
            citations=["obs-1"],
        )
        update = UpdateLearningProposal(
            confidence=0.9, target_learning_id=existing.id, proposed_content="Freeze time.", confidence_delta=0.7
        )
        archive = ArchiveProposal(confidence=0.9, target_learning_id=stale.id, reason="contradicted")
        advisory = MethodologyRecommendationProposal(confidence=0.6, recommendation="Pair more", area="review")
        rejected = NewLearningProposal(
            confidence=0.3, proposed_content="Rejected idea.", proposed_tier="stage", proposed_category="misc"
        )
        write_result(
            synthesis_dir,
            SynthesisResult(
                input_id=prepared.synthesis_input_id,
                proposals=[new, update, archive, advisory, rejected],
            ),
        )

        completed = session.complete(
            cycle.id,
            prepared.synthesis_input_id,
            accepted_proposal_ids=[new.id, update.id, archive.id, advisory.id],
        )

        assert cycles.get(cycle.id).state == "complete"
        assert len(completed.synthesis_proposals) == 5
        contents = {item.content for item in knowledge.query()}
        assert "Pin dependency versions." in contents
        assert "Rejected idea." not in contents
        refreshed = knowledge.get(existing.id)
        assert (refreshed.content, refreshed.confidence) == ("Freeze time.", 1.0)
        assert knowledge.get(stale.id).archived_reason == "contradicted"
        stored = read_result(synthesis_dir, prepared.synthesis_input_id)
        assert stored.applied_proposal_ids == [new.id, update.id, archive.id]
        assert stored.applied_at is not None

    def test_missing_result_completes_without_proposals(
        self, session: CooldownSession, cycles: CycleManager
    ) -> None:
        cycle = cycles.create()
        prepared = session.prepare(cycle.id)

        completed = session.complete(cycle.id, prepared.synthesis_input_id)

        assert completed.synthesis_proposals is None
        assert completed.report.cycle_id == cycle.id
        assert "State: complete" in completed.report.summary

    def test_requires_cooldown_state(self, session: CooldownSession, cycles: CycleManager) -> None:
        cycle = cycles.create()

        with pytest.raises(StateTransitionError):
            session.complete(cycle.id)

        assert cycles.get(cycle.id).state == "planning"

    def test_unknown_target_applies_nothing(
        self, session: CooldownSession, cycles: CycleManager, knowledge: KnowledgeStore, synthesis_dir: Path
    ) -> None:
        cycle = cycles.create()
        prepared = session.prepare(cycle.id)
        new = NewLearningProposal(
            confidence=0.8, proposed_content="Do X.", proposed_tier="stage", proposed_category="build"
        )
        ghost = ArchiveProposal(confidence=0.9, target_learning_id="ghost", reason="gone")
        write_result(synthesis_dir, SynthesisResult(input_id=prepared.synthesis_input_id, proposals=[new, ghost]))

        for _ in range(2):
            with pytest.raises(LearningNotFoundError):
                session.complete(cycle.id, prepared.synthesis_input_id, accepted_proposal_ids=[new.id, ghost.id])

        assert [item for item in knowledge.query() if item.content == "Do X."] == []
        assert cycles.get(cycle.id).state == "cooldown"
        assert read_result(synthesis_dir, prepared.synthesis_input_id).applied_proposal_ids is None

    def test_retry_skips_already_applied_proposals(
        self, session: CooldownSession, cycles: CycleManager, knowledge: KnowledgeStore, synthesis_dir: Path
    ) -> None:
        cycle = cycles.create()
        prepared = session.prepare(cycle.id)
        done = NewLearningProposal(
            confidence=0.8, proposed_content="Already saved.", proposed_tier="stage", proposed_category="build"
        )
        pending = NewLearningProposal(
            confidence=0.8, proposed_content="Still pending.", proposed_tier="stage", proposed_category="build"
        )
        write_result(
            synthesis_dir,
            SynthesisResult(
                input_id=prepared.synthesis_input_id,
                proposals=[done, pending],
                applied_proposal_ids=[done.id],
            ),
        )

        session.complete(cycle.id, prepared.synthesis_input_id, accepted_proposal_ids=[done.id, pending.id])

        contents = [item.content for item in knowledge.query()]
        assert "Already saved." not in contents
        assert contents.count("Still pending.") == 1
        stored = read_result(synthesis_dir, prepared.synthesis_input_id)
        assert stored.applied_proposal_ids == [done.id, pending.id]


class TestProposalGenerator:
    def test_completed_spike_suggests_follow_up(
        self, cycles: CycleManager, knowledge: KnowledgeStore, run_store: RunStore
    ) -> None:
        cycle = cycles.create()
        cycle = cycles.add_bet(cycle.id, "Explore search", 20, kata={"type": "named", "pattern": "spike"})
        cycles.add_bet(cycle.id, "Abandoned thing", 10, kata={"type": "ad-hoc", "stages": ["build"]})
        cycles.start(cycle.id, run_store, KataCatalog())
        bets = cycles.get(cycle.id).bets
        cycles.update_bet_outcomes(
            cycle.id,
            [{"bet_id": bets[0].id, "outcome": "complete"}, {"bet_id": bets[1].id, "outcome": "abandoned"}],
        )

        proposals = ProposalGenerator(cycles, knowledge, run_store).generate(cycle.id)

        assert [(p.description, p.source) for p in proposals] == [
            ("Retry: Abandoned thing", "unfinished"),
            ('Follow-up: Implementation from "Explore search"', "dependency"),
        ]
        assert proposals[1].suggested_appetite == 30

    def test_learning_proposals_group_by_category(self, cycles: CycleManager, knowledge: KnowledgeStore) -> None:
        knowledge.capture("category", "testing", "Run tests first.", confidence=0.75)
        best = knowledge.capture("category", "testing", "x" * 100, confidence=0.9)
        knowledge.capture("category", "estimation", "Too unsure.", confidence=0.4)
        cycle = cycles.create()

        proposals = ProposalGenerator(cycles, knowledge).generate(cycle.id)

        assert len(proposals) == 1
        assert proposals[0].description == "Learning-driven: " + "x" * 80 + "..."
        assert proposals[0].suggested_appetite == 10
        assert best.id in proposals[0].related_learning_ids
        assert len(proposals[0].related_learning_ids) == 2

    def test_prioritize_dedupes_and_orders(self) -> None:
        low = CycleProposal(description="A", rationale="r", suggested_appetite=10, priority="low", source="learning")
        dup = CycleProposal(description=" a ", rationale="r", suggested_appetite=10, priority="high", source="unfinished")
        high = CycleProposal(description="B", rationale="r", suggested_appetite=10, priority="high", source="dependency")
        first = CycleProposal(description="C", rationale="r", suggested_appetite=10, priority="high", source="unfinished")

        ordered = ProposalGenerator.prioritize([low, dup, high, first])

        assert [p.description for p in ordered] == ["C", "B", "A"]
