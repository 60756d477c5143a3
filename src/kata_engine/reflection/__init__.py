"""Reflection intelligence: derive reflections from a run's observations.

Typical order after a run finishes::

    PredictionMatcher(run_store).match(run_id)      # validation / unmatched
    CalibrationDetector(run_store).detect(run_id)   # calibration / synthesis
    FrictionAnalyzer(run_store, knowledge).analyze(run_id)  # resolution
"""

from kata_engine.reflection.calibration import CalibrationDetector, CalibrationResult
from kata_engine.reflection.friction import FrictionAnalysisResult, FrictionAnalyzer, FrictionResolution
from kata_engine.reflection.keywords import extract_keywords, keyword_overlap_ratio
from kata_engine.reflection.predictions import PredictionMatcher, PredictionMatchResult

__all__ = [
    "CalibrationDetector",
    "CalibrationResult",
    "FrictionAnalysisResult",
    "FrictionAnalyzer",
    "FrictionResolution",
    "PredictionMatchResult",
    "PredictionMatcher",
    "extract_keywords",
    "keyword_overlap_ratio",
]
