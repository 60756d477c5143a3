"""Exception hierarchy shared by every kata-engine component.

Callers branch on the concrete class; all of them derive from
:class:`KataError` so a single ``except KataError`` catches every
domain failure.
"""

from __future__ import annotations

from typing import Any


class KataError(Exception):
    """Base class for all kata-engine failures."""


class ConfigError(KataError):
    """A configuration or catalog file could not be parsed."""


class StoreError(KataError):
    """A persisted whole document exists but cannot be read back."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(KataError):
    """A requested entity does not exist."""


class RunNotFoundError(NotFoundError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f'Run not found: "{run_id}"')
        self.run_id = run_id


class CycleNotFoundError(NotFoundError):
    def __init__(self, cycle_id: str) -> None:
        super().__init__(f'Cycle not found: "{cycle_id}"')
        self.cycle_id = cycle_id


class BetNotFoundError(NotFoundError):
    def __init__(self, cycle_id: str, bet_id: str) -> None:
        super().__init__(f'Bet "{bet_id}" not found in cycle "{cycle_id}"')
        self.cycle_id = cycle_id
        self.bet_id = bet_id


class FlavorNotFoundError(NotFoundError):
    def __init__(self, stage_category: str, name: str) -> None:
        super().__init__(f'Flavor not found: "{stage_category}/{name}"')
        self.stage_category = stage_category
        self.name = name


class StepNotFoundError(NotFoundError):
    def __init__(self, step_type: str, flavor: str | None = None) -> None:
        label = f"{step_type}:{flavor}" if flavor else step_type
        super().__init__(f'Step not found: "{label}"')
        self.step_type = step_type
        self.flavor = flavor


class LearningNotFoundError(NotFoundError):
    def __init__(self, learning_id: str) -> None:
        super().__init__(f'Learning not found: "{learning_id}"')
        self.learning_id = learning_id


class DecisionNotFoundError(NotFoundError):
    def __init__(self, decision_id: str) -> None:
        super().__init__(f'Decision not found: "{decision_id}"')
        self.decision_id = decision_id


# ---------------------------------------------------------------------------
# Rule violations
# ---------------------------------------------------------------------------

class ValidationError(KataError):
    """Schema violation, budget overflow, or malformed kata assignment.

    ``issues`` holds structured details (pydantic error dicts or plain
    strings) so callers can report every problem at once.
    """

    def __init__(self, message: str, issues: list[Any] | None = None) -> None:
        super().__init__(message)
        self.issues: list[Any] = list(issues or [])


class OrchestratorError(KataError):
    """The pipeline cannot run (empty pipeline, no flavors, stage failure)."""


class GateEvaluationError(KataError):
    """A ``command-passes`` condition could not spawn its process."""


class StateTransitionError(KataError):
    """A cycle was asked to move to a state its lifecycle does not allow."""

    def __init__(self, message: str, *, current: str = "", requested: str = "") -> None:
        super().__init__(message)
        self.current = current
        self.requested = requested
