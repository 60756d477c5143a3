"""Synthesis documents exchanged between cooldown prepare and complete.

``prepare`` writes ``pending-<id>.json`` (a :class:`SynthesisInput`); an
external synthesizer answers with ``result-<id>.json`` (a
:class:`SynthesisResult`) whose proposals ``complete`` may apply.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from kata_engine.cycles import CooldownReport
from kata_engine.knowledge import Learning, LearningTier
from kata_engine.schemas import Observation, new_id, utc_now
from kata_engine.stores import JsonStore

SynthesisDepth = Literal["quick", "standard", "thorough"]
SYNTHESIS_DEPTHS: tuple[str, ...] = ("quick", "standard", "thorough")


class _ProposalBase(BaseModel):
    id: str = Field(default_factory=new_id)
    confidence: float = Field(ge=0.0, le=1.0)
    citations: list[str] = Field(default_factory=list)
    reasoning: str = ""
    created_at: str = Field(default_factory=utc_now)


class NewLearningProposal(_ProposalBase):
    type: Literal["new-learning"] = "new-learning"
    proposed_content: str = Field(min_length=1)
    proposed_tier: LearningTier
    proposed_category: str = Field(min_length=1)


class UpdateLearningProposal(_ProposalBase):
    type: Literal["update-learning"] = "update-learning"
    target_learning_id: str
    proposed_content: str
    confidence_delta: float = Field(ge=-1.0, le=1.0)


class PromoteProposal(_ProposalBase):
    type: Literal["promote"] = "promote"
    target_learning_id: str
    from_tier: LearningTier
    to_tier: LearningTier


class ArchiveProposal(_ProposalBase):
    type: Literal["archive"] = "archive"
    target_learning_id: str
    reason: str


class MethodologyRecommendationProposal(_ProposalBase):
    type: Literal["methodology-recommendation"] = "methodology-recommendation"
    recommendation: str
    area: str


SynthesisProposal = Annotated[
    Union[
        NewLearningProposal,
        UpdateLearningProposal,
        PromoteProposal,
        ArchiveProposal,
        MethodologyRecommendationProposal,
    ],
    Field(discriminator="type"),
]


class SynthesisInput(BaseModel):
    """Snapshot handed to the synthesizer; ``id`` matches the pending file suffix."""

    id: str = Field(default_factory=new_id)
    cycle_id: str
    created_at: str = Field(default_factory=utc_now)
    depth: SynthesisDepth = "standard"
    observations: list[Observation] = Field(default_factory=list)
    learnings: list[Learning] = Field(default_factory=list)
    cycle_name: str | None = None
    token_budget: int | None = None
    tokens_used: int | None = None
    report: CooldownReport | None = None


class SynthesisResult(BaseModel):
    input_id: str
    proposals: list[SynthesisProposal] = Field(default_factory=list)
    applied_at: str | None = None
    applied_proposal_ids: list[str] | None = None


def pending_path(synthesis_dir: str | Path, input_id: str) -> Path:
    return Path(synthesis_dir) / f"pending-{input_id}.json"


def result_path(synthesis_dir: str | Path, input_id: str) -> Path:
    return Path(synthesis_dir) / f"result-{input_id}.json"


def write_input(synthesis_dir: str | Path, synthesis_input: SynthesisInput) -> Path:
    path = pending_path(synthesis_dir, synthesis_input.id)
    JsonStore.write(path, synthesis_input, SynthesisInput)
    return path


def read_result(synthesis_dir: str | Path, input_id: str) -> SynthesisResult | None:
    """The synthesizer's answer, or ``None`` when none has been written."""
    path = result_path(synthesis_dir, input_id)
    if not JsonStore.exists(path):
        return None
    return JsonStore.read(path, SynthesisResult)


def write_result(synthesis_dir: str | Path, result: SynthesisResult) -> Path:
    path = result_path(synthesis_dir, result.input_id)
    JsonStore.write(path, result, SynthesisResult)
    return path
