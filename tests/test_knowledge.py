"""Tests for the learning store."""

from __future__ import annotations

import pytest

from kata_engine.errors import LearningNotFoundError, ValidationError
from kata_engine.knowledge import KnowledgeStore, LearningFilter

pytestmark = pytest.mark.unit


def test_capture_generates_identity_and_persists(knowledge: KnowledgeStore) -> None:
    learning = knowledge.capture("stage", "testing", "Run the suite before review.", confidence=0.8, id="ignored")

    assert learning.id != "ignored"
    assert learning.created_at == learning.updated_at
    assert knowledge.get(learning.id) == learning


def test_capture_rejects_invalid_fields(knowledge: KnowledgeStore) -> None:
    with pytest.raises(ValidationError) as exc_info:
        knowledge.capture("stage", "testing", "x", confidence=1.4)

    assert exc_info.value.issues[0]["loc"] == ("confidence",)

    assert knowledge.all() == []


def test_get_unknown_raises(knowledge: KnowledgeStore) -> None:
    with pytest.raises(LearningNotFoundError):
        knowledge.get("nope")


def test_query_filters_and_hides_archived(knowledge: KnowledgeStore) -> None:
    low = knowledge.capture("category", "estimation", "Pad spikes.", confidence=0.4)
    high = knowledge.capture("category", "estimation", "Split large bets.", confidence=0.9)
    other = knowledge.capture("stage", "testing", "Use fixtures.", confidence=0.9)
    knowledge.archive_learning(other.id)

    assert [item.id for item in knowledge.query(category="estimation")] == [low.id, high.id]
    assert [item.id for item in knowledge.query(min_confidence=0.7)] == [high.id]
    assert [item.id for item in knowledge.query(LearningFilter(tier="stage"), include_archived=True)] == [other.id]


def test_archive_is_soft_and_idempotent(knowledge: KnowledgeStore) -> None:
    learning = knowledge.capture("stage", "testing", "Mock the clock.", confidence=0.6)

    archived = knowledge.archive_learning(learning.id, "superseded", cited_by="obs-1")
    again = knowledge.archive_learning(learning.id, "other reason")

    assert archived.archived is True
    assert archived.archived_reason == "superseded"
    assert archived.versions[-1].change_reason == "superseded"
    assert archived.citations[-1].relation == "archived"
    assert archived.citations[-1].observation_id == "obs-1"
    assert again == archived
    assert knowledge.get(learning.id).archived is True


def test_update_snapshots_previous_version(knowledge: KnowledgeStore) -> None:
    learning = knowledge.capture("stage", "testing", "Old advice.", confidence=0.5)

    updated = knowledge.update(learning.id, content="New advice.", confidence=0.7, change_reason="refined")

    assert updated.content == "New advice."
    assert updated.confidence == 0.7
    assert [(v.content, v.confidence, v.change_reason) for v in updated.versions] == [
        ("Old advice.", 0.5, "refined")
    ]


def test_update_rejects_out_of_range_confidence(knowledge: KnowledgeStore) -> None:
    learning = knowledge.capture("stage", "testing", "Advice.", confidence=0.5)

    with pytest.raises(ValidationError):
        knowledge.update(learning.id, confidence=2.0)

    assert knowledge.get(learning.id).confidence == 0.5


def test_load_for_stage_orders_by_confidence(knowledge: KnowledgeStore) -> None:
    weak = knowledge.capture("stage", "testing", "Weak.", stage_type="build", confidence=0.3)
    strong = knowledge.capture("stage", "testing", "Strong.", stage_type="build", confidence=0.9)
    category = knowledge.capture("category", "build", "Category wide.", confidence=0.5)
    knowledge.capture("stage", "testing", "Elsewhere.", stage_type="review", confidence=1.0)

    ids = [item.id for item in knowledge.load_for_stage("build", category="build")]

    assert ids == [strong.id, category.id, weak.id]


def test_stats_counts_active_learnings(knowledge: KnowledgeStore) -> None:
    a = knowledge.capture("stage", "testing", "A.", confidence=0.4)
    knowledge.capture("agent", "testing", "B.", confidence=0.8)
    knowledge.archive_learning(a.id)

    stats = knowledge.stats()

    assert stats.total == 1
    assert stats.archived == 1
    assert stats.by_tier == {"agent": 1}
    assert stats.average_confidence == pytest.approx(0.8)
