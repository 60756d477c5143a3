"""Detect systematic prediction bias in a run.

The detector folds a run's validation reflections together with its
prediction observations and writes one calibration reflection per bias
it finds. Each rule has a minimum amount of data below which it never
fires:

=====================  ===========================================  ==========================================
bias                   minimum data                                 trigger
=====================  ===========================================  ==========================================
overconfidence         5 validations                                >70% incorrect and >50% of predictions use
                                                                    confident language
estimation-drift       3 quantitative predictions                   >25% of matched ones incorrect
predictor-divergence   8 agent-attributed observations, 2 agents    best/worst agent accuracy spread >0.4
domain-bias            5 validations, 2 stage categories            best/worst category accuracy spread >0.4
=====================  ===========================================  ==========================================
"""

from __future__ import annotations

import logging
import re

from pydantic import BaseModel, Field

from kata_engine.run_store import ObservationTarget, RunStore
from kata_engine.schemas import (
    CalibrationBias,
    CalibrationReflection,
    Observation,
    PredictionObservation,
    StageCategory,
    SynthesisReflection,
    ValidationReflection,
)

logger = logging.getLogger(__name__)

CONFIDENT_WORDS = frozenset({"will", "definitely", "certainly", "always", "guaranteed"})
MULTIPLE_BIASES_INSIGHT = (
    "Multiple calibration biases detected - review prediction discipline before next run"
)

OVERCONFIDENCE_MIN_VALIDATIONS = 5
OVERCONFIDENCE_INCORRECT_RATE = 0.7
OVERCONFIDENCE_CONFIDENT_RATE = 0.5
DRIFT_MIN_QUANTITATIVE = 3
DRIFT_MISS_RATE = 0.25
DIVERGENCE_MIN_OBSERVATIONS = 8
DOMAIN_MIN_VALIDATIONS = 5
ACCURACY_SPREAD = 0.4

_LETTERS = re.compile(r"[^a-z]")


def has_confident_language(content: str) -> bool:
    return any(_LETTERS.sub("", word) in CONFIDENT_WORDS for word in content.lower().split())


def _accuracy(validations: list[ValidationReflection]) -> float:
    return sum(1 for v in validations if v.correct) / len(validations)


class CalibrationResult(BaseModel):
    biases_detected: list[CalibrationBias] = Field(default_factory=list)
    calibrations_written: int = 0
    synthesis_written: bool = False


class CalibrationDetector:
    """Write calibration reflections for the biases a run exhibits.

    Usage::

        detector = CalibrationDetector(run_store)
        result = detector.detect(run.id)
        if result.synthesis_written:
            ...
    """

    def __init__(self, run_store: RunStore) -> None:
        self.run_store = run_store

    def detect(self, run_id: str) -> CalibrationResult:
        validations = [
            r for r in self.run_store.read_reflections(run_id) if isinstance(r, ValidationReflection)
        ]
        observations = self.run_store.read_run_and_stage_observations(run_id)

        calibrations = [
            calibration
            for calibration in (
                self._overconfidence(validations, observations),
                self._estimation_drift(validations, observations),
                self._predictor_divergence(validations, observations),
                self._domain_bias(run_id, validations),
            )
            if calibration is not None
        ]
        for calibration in calibrations:
            self.run_store.append_reflection(run_id, calibration)

        synthesis_written = False
        if len(calibrations) >= 2:
            self.run_store.append_reflection(
                run_id,
                SynthesisReflection(
                    source_reflection_ids=[c.id for c in calibrations],
                    insight=MULTIPLE_BIASES_INSIGHT,
                ),
            )
            synthesis_written = True

        result = CalibrationResult(
            biases_detected=[c.bias for c in calibrations],
            calibrations_written=len(calibrations),
            synthesis_written=synthesis_written,
        )
        if calibrations:
            logger.info("Run %s: calibration biases %s", run_id, ", ".join(result.biases_detected))
        return result

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def _overconfidence(
        validations: list[ValidationReflection], observations: list[Observation]
    ) -> CalibrationReflection | None:
        if len(validations) < OVERCONFIDENCE_MIN_VALIDATIONS:
            return None
        incorrect = sum(1 for v in validations if not v.correct)
        if incorrect / len(validations) <= OVERCONFIDENCE_INCORRECT_RATE:
            return None
        predictions = [o for o in observations if isinstance(o, PredictionObservation)]
        if not predictions:
            return None
        confident = sum(1 for p in predictions if has_confident_language(p.content))
        if confident / len(predictions) <= OVERCONFIDENCE_CONFIDENT_RATE:
            return None
        correct = len(validations) - incorrect
        return CalibrationReflection(
            observation_ids=[v.prediction_id for v in validations],
            domain="global",
            total_predictions=len(validations),
            correct_predictions=correct,
            accuracy_rate=correct / len(validations),
            bias="overconfidence",
        )

    @staticmethod
    def _estimation_drift(
        validations: list[ValidationReflection], observations: list[Observation]
    ) -> CalibrationReflection | None:
        quantitative = [
            o for o in observations if isinstance(o, PredictionObservation) and o.quantitative is not None
        ]
        if len(quantitative) < DRIFT_MIN_QUANTITATIVE:
            return None
        by_prediction = {v.prediction_id: v for v in validations}
        matched = [by_prediction[p.id] for p in quantitative if p.id in by_prediction]
        if not matched:
            return None
        misses = sum(1 for v in matched if not v.correct)
        if misses / len(matched) <= DRIFT_MISS_RATE:
            return None
        return CalibrationReflection(
            observation_ids=[p.id for p in quantitative],
            domain="quantitative",
            total_predictions=len(matched),
            correct_predictions=len(matched) - misses,
            accuracy_rate=(len(matched) - misses) / len(matched),
            bias="estimation-drift",
        )

    @staticmethod
    def _lowest_group(
        groups: dict[str, list[ValidationReflection]],
    ) -> tuple[str, list[ValidationReflection], float] | None:
        """The worst group when the accuracy spread across groups exceeds the limit."""
        accuracy = {key: _accuracy(vals) for key, vals in groups.items() if vals}
        if len(accuracy) < 2:
            return None
        worst = min(accuracy, key=accuracy.__getitem__)
        if max(accuracy.values()) - accuracy[worst] <= ACCURACY_SPREAD:
            return None
        return worst, groups[worst], accuracy[worst]

    def _predictor_divergence(
        self, validations: list[ValidationReflection], observations: list[Observation]
    ) -> CalibrationReflection | None:
        attributed = [o for o in observations if o.agent_id]
        if len(attributed) < DIVERGENCE_MIN_OBSERVATIONS:
            return None
        agent_of = {o.id: o.agent_id for o in attributed if isinstance(o, PredictionObservation)}
        groups: dict[str, list[ValidationReflection]] = {}
        for validation in validations:
            agent = agent_of.get(validation.prediction_id)
            if agent:
                groups.setdefault(agent, []).append(validation)
        lowest = self._lowest_group(groups)
        if lowest is None:
            return None
        agent, worst, accuracy = lowest
        return CalibrationReflection(
            observation_ids=[v.prediction_id for v in worst],
            domain="agent",
            agent_id=agent,
            total_predictions=len(worst),
            correct_predictions=sum(1 for v in worst if v.correct),
            accuracy_rate=accuracy,
            bias="predictor-divergence",
        )

    def _domain_bias(
        self, run_id: str, validations: list[ValidationReflection]
    ) -> CalibrationReflection | None:
        if len(validations) < DOMAIN_MIN_VALIDATIONS:
            return None
        category_of: dict[str, str] = {}
        for category in StageCategory:
            for observation in self.run_store.read_observations(run_id, ObservationTarget.stage(category)):
                if isinstance(observation, PredictionObservation):
                    category_of[observation.id] = category.value
        groups: dict[str, list[ValidationReflection]] = {}
        for validation in validations:
            category = category_of.get(validation.prediction_id)
            if category:
                groups.setdefault(category, []).append(validation)
        lowest = self._lowest_group(groups)
        if lowest is None:
            return None
        category, worst, accuracy = lowest
        return CalibrationReflection(
            observation_ids=[v.prediction_id for v in worst],
            domain=category,
            total_predictions=len(worst),
            correct_predictions=sum(1 for v in worst if v.correct),
            accuracy_rate=accuracy,
            bias="domain-bias",
        )
