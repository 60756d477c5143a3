"""Pair prediction observations with the outcomes that settle them."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from kata_engine.reflection.keywords import keyword_overlap_ratio
from kata_engine.run_store import RunStore
from kata_engine.schemas import (
    OutcomeObservation,
    PredictionObservation,
    UnmatchedReflection,
    ValidationReflection,
)

logger = logging.getLogger(__name__)

CORRECT_OVERLAP = 0.6
NO_OUTCOME = "no-outcome-found"


class PredictionMatch(BaseModel):
    prediction_id: str
    outcome_id: str
    correct: bool


class UnmatchedPrediction(BaseModel):
    prediction_id: str
    reason: str


class PredictionMatchResult(BaseModel):
    run_id: str
    matched: list[PredictionMatch] = Field(default_factory=list)
    unmatched: list[UnmatchedPrediction] = Field(default_factory=list)
    reflections_written: int = 0


class PredictionMatcher:
    """Write a validation or unmatched reflection for every prediction in a run.

    Each prediction takes the unused outcome with the highest keyword
    overlap. Any overlap counts as a match; it is *correct* when at least
    60% of the prediction's keywords appear in the outcome.
    """

    def __init__(self, run_store: RunStore) -> None:
        self.run_store = run_store

    def match(self, run_id: str) -> PredictionMatchResult:
        observations = self.run_store.read_run_and_stage_observations(run_id)
        predictions = [o for o in observations if isinstance(o, PredictionObservation)]
        outcomes = [o for o in observations if isinstance(o, OutcomeObservation)]

        result = PredictionMatchResult(run_id=run_id)
        used: set[str] = set()
        for prediction in predictions:
            best: OutcomeObservation | None = None
            best_ratio = 0.0
            for outcome in outcomes:
                if outcome.id in used:
                    continue
                ratio = keyword_overlap_ratio(prediction.content, outcome.content)
                if ratio > best_ratio:
                    best, best_ratio = outcome, ratio

            if best is not None:
                used.add(best.id)
                correct = best_ratio >= CORRECT_OVERLAP
                self.run_store.append_reflection(
                    run_id,
                    ValidationReflection(
                        observation_ids=[prediction.id, best.id],
                        prediction_id=prediction.id,
                        outcome_id=best.id,
                        correct=correct,
                    ),
                )
                result.matched.append(
                    PredictionMatch(prediction_id=prediction.id, outcome_id=best.id, correct=correct)
                )
            else:
                self.run_store.append_reflection(
                    run_id,
                    UnmatchedReflection(
                        observation_ids=[prediction.id],
                        prediction_id=prediction.id,
                        reason=NO_OUTCOME,
                    ),
                )
                result.unmatched.append(UnmatchedPrediction(prediction_id=prediction.id, reason=NO_OUTCOME))

        result.reflections_written = len(result.matched) + len(result.unmatched)
        logger.info(
            "Run %s: %d prediction(s) matched, %d unmatched",
            run_id, len(result.matched), len(result.unmatched),
        )
        return result
