"""Accumulated, citable knowledge: learnings and their filesystem store.

Learnings are never deleted. Archiving flips ``archived``, pushes a version
snapshot carrying the reason, and records an ``archived`` edge in the
learning's citation list.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

from kata_engine.errors import LearningNotFoundError, NotFoundError
from kata_engine.schemas import new_id, utc_now
from kata_engine.stores import JsonStore, validate

logger = logging.getLogger(__name__)

LearningTier = Literal["step", "flavor", "stage", "category", "agent"]
Permanence = Literal["operational", "strategic", "constitutional"]
LearningSource = Literal["extracted", "synthesized", "imported", "user"]


class LearningEvidence(BaseModel):
    pipeline_id: str
    stage_type: str
    observation: str
    recorded_at: str = Field(default_factory=utc_now)


class LearningVersion(BaseModel):
    content: str
    confidence: float
    updated_at: str = Field(default_factory=utc_now)
    change_reason: str | None = None


class Citation(BaseModel):
    """One edge of the citation graph between learnings and observations."""

    relation: str
    observation_id: str | None = None
    learning_id: str | None = None
    note: str | None = None
    cited_at: str = Field(default_factory=utc_now)


class Learning(BaseModel):
    id: str = Field(default_factory=new_id)
    tier: LearningTier
    category: str = Field(min_length=1)
    content: str = Field(min_length=1)
    evidence: list[LearningEvidence] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    stage_type: str | None = None
    agent_id: str | None = None
    permanence: Permanence | None = None
    source: LearningSource | None = None
    derived_from: list[str] = Field(default_factory=list)
    archived: bool = False
    archived_reason: str | None = None
    versions: list[LearningVersion] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)


class LearningFilter(BaseModel):
    tier: LearningTier | None = None
    category: str | None = None
    stage_type: str | None = None
    agent_id: str | None = None
    permanence: Permanence | None = None
    source: LearningSource | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    include_archived: bool = False

    def matches(self, learning: Learning) -> bool:
        if learning.archived and not self.include_archived:
            return False
        for field in ("tier", "category", "stage_type", "agent_id", "permanence", "source"):
            wanted = getattr(self, field)
            if wanted is not None and getattr(learning, field) != wanted:
                return False
        if self.min_confidence is not None and learning.confidence < self.min_confidence:
            return False
        return True


class KnowledgeStats(BaseModel):
    total: int = 0
    archived: int = 0
    by_tier: dict[str, int] = Field(default_factory=dict)
    by_category: dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0


class KnowledgeBackend(Protocol):
    """What the cooldown session and friction analyzer need from a store."""

    def capture(self, tier: str, category: str, content: str, **fields: Any) -> Learning: ...

    def get(self, learning_id: str) -> Learning: ...

    def query(self, criteria: LearningFilter | None = None, **kwargs: Any) -> list[Learning]: ...

    def archive_learning(self, learning_id: str, reason: str | None = None) -> Learning: ...

    def update(self, learning_id: str, **changes: Any) -> Learning: ...


class KnowledgeStore:
    """One JSON document per learning under ``<base>/learnings/``."""

    def __init__(self, base_path: str | Path) -> None:
        self.base_path = Path(base_path)
        self.learnings_dir = self.base_path / "learnings"

    def _path(self, learning_id: str) -> Path:
        return self.learnings_dir / f"{learning_id}.json"

    def _write(self, learning: Learning) -> Learning:
        return JsonStore.write(self._path(learning.id), learning, Learning)

    def capture(self, tier: str, category: str, content: str, **fields: Any) -> Learning:
        """Validate and persist a new learning; ``id`` and timestamps are generated."""
        fields.pop("id", None)
        now = utc_now()
        learning = validate(
            {
                "tier": tier,
                "category": category,
                "content": content,
                "created_at": now,
                "updated_at": now,
                **fields,
            },
            Learning,
            label="learning",
        )
        learning = self._write(learning)
        logger.info("Captured learning %s (%s/%s)", learning.id, learning.tier, learning.category)
        return learning

    def get(self, learning_id: str) -> Learning:
        try:
            return JsonStore.read(self._path(learning_id), Learning)
        except NotFoundError:
            raise LearningNotFoundError(learning_id) from None

    def all(self) -> list[Learning]:
        return JsonStore.list(self.learnings_dir, Learning)

    def query(self, criteria: LearningFilter | None = None, **kwargs: Any) -> list[Learning]:
        """Return learnings matching *criteria* (or keyword criteria), oldest first."""
        if criteria is None:
            criteria = LearningFilter(**kwargs)
        elif kwargs:
            criteria = criteria.model_copy(update=kwargs)
        matched = [learning for learning in self.all() if criteria.matches(learning)]
        return sorted(matched, key=lambda learning: learning.created_at)

    def load_for_stage(self, stage_type: str, category: str | None = None) -> list[Learning]:
        """Active learnings relevant to a stage, highest confidence first."""
        selected = [
            learning
            for learning in self.all()
            if not learning.archived
            and (
                learning.stage_type == stage_type
                or (category is not None and learning.tier == "category" and learning.category == category)
            )
        ]
        return sorted(selected, key=lambda learning: learning.confidence, reverse=True)

    def archive_learning(
        self,
        learning_id: str,
        reason: str | None = None,
        *,
        cited_by: str | None = None,
    ) -> Learning:
        """Soft-archive a learning. Archiving an archived learning is a no-op."""
        existing = self.get(learning_id)
        if existing.archived:
            return existing
        now = utc_now()
        change_reason = reason or "archived"
        updated = existing.model_copy(
            update={
                "archived": True,
                "archived_reason": change_reason,
                "updated_at": now,
                "versions": [
                    *existing.versions,
                    LearningVersion(
                        content=existing.content,
                        confidence=existing.confidence,
                        updated_at=now,
                        change_reason=change_reason,
                    ),
                ],
                "citations": [
                    *existing.citations,
                    Citation(relation="archived", observation_id=cited_by, note=change_reason, cited_at=now),
                ],
            }
        )
        logger.info("Archived learning %s (%s)", learning_id, change_reason)
        return self._write(updated)

    def update(
        self,
        learning_id: str,
        *,
        content: str | None = None,
        confidence: float | None = None,
        evidence: list[LearningEvidence] | None = None,
        change_reason: str | None = None,
    ) -> Learning:
        """Change content/confidence/evidence, snapshotting the previous version."""
        existing = self.get(learning_id)
        now = utc_now()
        changes: dict[str, Any] = {
            "updated_at": now,
            "versions": [
                *existing.versions,
                LearningVersion(
                    content=existing.content,
                    confidence=existing.confidence,
                    updated_at=now,
                    change_reason=change_reason,
                ),
            ],
        }
        if content is not None:
            changes["content"] = content
        if confidence is not None:
            changes["confidence"] = confidence
        if evidence is not None:
            changes["evidence"] = evidence
        return self._write(existing.model_copy(update=changes))

    def stats(self) -> KnowledgeStats:
        learnings = self.all()
        active = [learning for learning in learnings if not learning.archived]
        by_tier: dict[str, int] = {}
        by_category: dict[str, int] = {}
        for learning in active:
            by_tier[learning.tier] = by_tier.get(learning.tier, 0) + 1
            by_category[learning.category] = by_category.get(learning.category, 0) + 1
        average = sum(learning.confidence for learning in active) / len(active) if active else 0.0
        return KnowledgeStats(
            total=len(active),
            archived=len(learnings) - len(active),
            by_tier=by_tier,
            by_category=by_category,
            average_confidence=average,
        )
