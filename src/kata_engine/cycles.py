"""Cycle and bet models plus the budget rules that govern them."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, PositiveInt

from kata_engine.errors import ValidationError
from kata_engine.schemas import StageCategory, new_id, utc_now

CycleState = Literal["planning", "active", "cooldown", "complete"]
BetOutcome = Literal["pending", "complete", "partial", "abandoned"]
BudgetAlertLevel = Literal["info", "warning", "critical"]

# Forward-only lifecycle; rollback goes through CycleManager.restore_state.
CYCLE_TRANSITIONS: dict[str, frozenset[str]] = {
    "planning": frozenset({"active", "cooldown"}),
    "active": frozenset({"cooldown"}),
    "cooldown": frozenset({"complete"}),
    "complete": frozenset(),
}


class Budget(BaseModel):
    token_budget: PositiveInt | None = None
    time_budget: str | None = None


class NamedKata(BaseModel):
    type: Literal["named"] = "named"
    pattern: str = Field(min_length=1)


class AdHocKata(BaseModel):
    type: Literal["ad-hoc"] = "ad-hoc"
    stages: list[StageCategory] = Field(min_length=1)


KataAssignment = Annotated[Union[NamedKata, AdHocKata], Field(discriminator="type")]


class Bet(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str = Field(min_length=1)
    appetite: int = Field(ge=0, le=100)
    project_ref: str | None = None
    issue_refs: list[str] = Field(default_factory=list)
    outcome: BetOutcome = "pending"
    outcome_notes: str | None = None
    kata: KataAssignment | None = None
    run_id: str | None = None


class PipelineMapping(BaseModel):
    pipeline_id: str
    bet_id: str


class Cycle(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str | None = None
    budget: Budget = Field(default_factory=Budget)
    bets: list[Bet] = Field(default_factory=list)
    pipeline_mappings: list[PipelineMapping] = Field(default_factory=list)
    state: CycleState = "planning"
    cooldown_reserve: int = Field(default=10, ge=0, le=100)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    def find_bet(self, bet_id: str) -> Bet | None:
        return next((bet for bet in self.bets if bet.id == bet_id), None)


class BetOutcomeRecord(BaseModel):
    bet_id: str
    outcome: Literal["complete", "partial", "abandoned"]
    notes: str | None = None


class BudgetStatus(BaseModel):
    cycle_id: str
    budget: Budget
    tokens_used: int = 0
    utilization_percent: float = 0.0
    alert_level: BudgetAlertLevel | None = None
    appetite_remaining: int = 0


class CooldownBetReport(BaseModel):
    bet_id: str
    description: str
    appetite: int
    outcome: BetOutcome
    outcome_notes: str | None = None
    pipeline_count: int = 0


class CooldownReport(BaseModel):
    cycle_id: str
    cycle_name: str | None = None
    budget: Budget
    tokens_used: int = 0
    utilization_percent: float = 0.0
    alert_level: BudgetAlertLevel | None = None
    bets: list[CooldownBetReport] = Field(default_factory=list)
    completion_rate: float = 0.0
    summary: str = ""


# ---------------------------------------------------------------------------
# Budget rules
# ---------------------------------------------------------------------------

def alert_level_for(percent: float) -> BudgetAlertLevel | None:
    """Fixed thresholds: >=100 critical, >=90 warning, >=75 info."""
    if percent >= 100:
        return "critical"
    if percent >= 90:
        return "warning"
    if percent >= 75:
        return "info"
    return None


def calculate_utilization(budget: Budget, tokens_used: int) -> tuple[float, BudgetAlertLevel | None]:
    if not budget.token_budget:
        return 0.0, None
    percent = tokens_used / budget.token_budget * 100
    return percent, alert_level_for(percent)


def appetite_remaining(bets: list[Bet], cooldown_reserve: int) -> int:
    return max(0, 100 - sum(bet.appetite for bet in bets) - cooldown_reserve)


def validate_appetite(bets: list[Bet], cooldown_reserve: int) -> None:
    """Raise :class:`ValidationError` when appetite plus reserve exceeds 100%."""
    total = sum(bet.appetite for bet in bets)
    with_reserve = total + cooldown_reserve
    if with_reserve > 100:
        message = (
            f"Total appetite ({total}%) + cooldown reserve ({cooldown_reserve}%) = "
            f"{with_reserve}%, which exceeds 100%"
        )
        raise ValidationError(message, [message])


def completion_rate(bets: list[Bet]) -> float:
    """Percentage of bets whose outcome is ``complete``."""
    if not bets:
        return 0.0
    return sum(1 for bet in bets if bet.outcome == "complete") / len(bets) * 100


def cooldown_summary(cycle: Cycle, rate: float) -> str:
    lines = [
        f"Cycle: {cycle.name or cycle.id}",
        f"State: {cycle.state}",
        f"Bets: {len(cycle.bets)}",
        f"Completion rate: {rate:.1f}%",
    ]
    if cycle.budget.token_budget:
        lines.append(f"Token budget: {cycle.budget.token_budget:,}")
    if cycle.budget.time_budget:
        lines.append(f"Time budget: {cycle.budget.time_budget}")
    counts: dict[str, int] = {}
    for bet in cycle.bets:
        counts[bet.outcome] = counts.get(bet.outcome, 0) + 1
    lines.extend(f"  {outcome}: {count}" for outcome, count in counts.items())
    return "\n".join(lines)
