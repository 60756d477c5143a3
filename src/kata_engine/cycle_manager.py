"""Cycle manager: owns cycles, bets and their budget accounting.

Cycles are persisted as ``<cycles_dir>/<cycleId>.json``. Every mutation
is validated in memory first and written as one atomic document, so a
rejected operation leaves the stored cycle untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from kata_engine.catalog import KataCatalog
from kata_engine.cycles import (
    CYCLE_TRANSITIONS,
    AdHocKata,
    Bet,
    BetOutcomeRecord,
    Budget,
    BudgetStatus,
    CooldownBetReport,
    CooldownReport,
    Cycle,
    CycleState,
    KataAssignment,
    NamedKata,
    PipelineMapping,
    appetite_remaining,
    calculate_utilization,
    completion_rate,
    cooldown_summary,
    validate_appetite,
)
from kata_engine.errors import (
    BetNotFoundError,
    CycleNotFoundError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from kata_engine.run_store import RunStore
from kata_engine.schemas import Run, StageCategory, utc_now
from kata_engine.stores import JsonStore

logger = logging.getLogger(__name__)

_KATA_ADAPTER: TypeAdapter = TypeAdapter(KataAssignment)


def _build(model: Any, data: dict[str, Any], label: str) -> Any:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {label}", exc.errors(include_url=False)) from exc


class CycleManager:
    """Create, query and advance cycles.

    Parameters
    ----------
    cycles_dir:
        Directory holding one JSON document per cycle.
    cooldown_reserve:
        Percent of appetite held back for cooldown when ``create`` is not
        given one.
    """

    def __init__(self, cycles_dir: str | Path, *, cooldown_reserve: int = 10) -> None:
        self.cycles_dir = Path(cycles_dir)
        self.cooldown_reserve = cooldown_reserve

    def _path(self, cycle_id: str) -> Path:
        return self.cycles_dir / f"{cycle_id}.json"

    def _save(self, cycle: Cycle) -> Cycle:
        cycle = cycle.model_copy(update={"updated_at": utc_now()})
        return JsonStore.write(self._path(cycle.id), cycle, Cycle)

    def _require_state(self, cycle: Cycle, allowed: set[str], action: str) -> None:
        if cycle.state not in allowed:
            raise StateTransitionError(
                f'Cannot {action} cycle "{cycle.id}" in state "{cycle.state}"',
                current=cycle.state,
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(
        self,
        budget: Budget | dict[str, Any] | None = None,
        name: str | None = None,
        cooldown_reserve: int | None = None,
    ) -> Cycle:
        if isinstance(budget, Budget):
            budget = budget.model_dump()
        if cooldown_reserve is None:
            cooldown_reserve = self.cooldown_reserve
        cycle = _build(
            Cycle,
            {"name": name, "budget": budget or {}, "cooldown_reserve": cooldown_reserve},
            "cycle",
        )
        cycle = JsonStore.write(self._path(cycle.id), cycle, Cycle)
        logger.info("Created cycle %s (%s)", cycle.id, cycle.name or "unnamed")
        return cycle

    def get(self, cycle_id: str) -> Cycle:
        try:
            return JsonStore.read(self._path(cycle_id), Cycle)
        except NotFoundError:
            raise CycleNotFoundError(cycle_id) from None

    def list(self) -> list[Cycle]:
        return sorted(JsonStore.list(self.cycles_dir, Cycle), key=lambda c: c.created_at)

    # ------------------------------------------------------------------
    # Bets
    # ------------------------------------------------------------------

    def add_bet(
        self,
        cycle_id: str,
        description: str,
        appetite: int,
        *,
        kata: KataAssignment | dict[str, Any] | None = None,
        project_ref: str | None = None,
        issue_refs: Iterable[str] = (),
    ) -> Cycle:
        """Add a bet; rejected as a whole if appetite + reserve would exceed 100%."""
        cycle = self.get(cycle_id)
        self._require_state(cycle, {"planning"}, "add bets to")
        if isinstance(kata, (NamedKata, AdHocKata)):
            kata = kata.model_dump()
        bet = _build(
            Bet,
            {
                "description": description,
                "appetite": appetite,
                "kata": kata,
                "project_ref": project_ref,
                "issue_refs": list(issue_refs),
            },
            "bet",
        )
        bets = [*cycle.bets, bet]
        validate_appetite(bets, cycle.cooldown_reserve)
        return self._save(cycle.model_copy(update={"bets": bets}))

    def set_bet_kata(self, cycle_id: str, bet_id: str, kata: KataAssignment | dict[str, Any]) -> Cycle:
        cycle = self.get(cycle_id)
        self._require_state(cycle, {"planning"}, "assign katas in")
        if cycle.find_bet(bet_id) is None:
            raise BetNotFoundError(cycle_id, bet_id)
        try:
            assignment = _KATA_ADAPTER.validate_python(
                kata.model_dump() if hasattr(kata, "model_dump") else kata
            )
        except PydanticValidationError as exc:
            raise ValidationError("Invalid kata assignment", exc.errors(include_url=False)) from exc
        bets = [
            bet.model_copy(update={"kata": assignment}) if bet.id == bet_id else bet
            for bet in cycle.bets
        ]
        return self._save(cycle.model_copy(update={"bets": bets}))

    def map_pipeline(self, cycle_id: str, pipeline_id: str, bet_id: str) -> Cycle:
        cycle = self.get(cycle_id)
        if cycle.find_bet(bet_id) is None:
            raise BetNotFoundError(cycle_id, bet_id)
        mapping = PipelineMapping(pipeline_id=pipeline_id, bet_id=bet_id)
        if mapping in cycle.pipeline_mappings:
            return cycle
        return self._save(cycle.model_copy(update={"pipeline_mappings": [*cycle.pipeline_mappings, mapping]}))

    def update_bet_outcomes(
        self, cycle_id: str, outcomes: Iterable[BetOutcomeRecord | dict[str, Any]]
    ) -> list[str]:
        """Apply outcomes to matching bets; returns the ids that matched no bet."""
        cycle = self.get(cycle_id)
        by_id: dict[str, BetOutcomeRecord] = {}
        unmatched: list[str] = []
        for raw in outcomes:
            record = raw if isinstance(raw, BetOutcomeRecord) else _build(BetOutcomeRecord, raw, "bet outcome")
            if cycle.find_bet(record.bet_id) is None:
                unmatched.append(record.bet_id)
                continue
            by_id[record.bet_id] = record
        if by_id:
            bets = [
                bet.model_copy(update={"outcome": by_id[bet.id].outcome, "outcome_notes": by_id[bet.id].notes})
                if bet.id in by_id
                else bet
                for bet in cycle.bets
            ]
            self._save(cycle.model_copy(update={"bets": bets}))
        return unmatched

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _stages_for(self, bet: Bet, catalog: KataCatalog | None) -> list[StageCategory] | str:
        """Stage sequence for *bet*, or a problem description."""
        if bet.kata is None:
            return f'Bet "{bet.description}" ({bet.id}) has no kata assignment'
        if isinstance(bet.kata, AdHocKata):
            return list(bet.kata.stages)
        if catalog is None:
            return f'Bet "{bet.description}" uses named kata "{bet.kata.pattern}" but no catalog was given'
        if not catalog.has_kata(bet.kata.pattern):
            return f'Bet "{bet.description}" references unknown kata "{bet.kata.pattern}"'
        return list(catalog.kata(bet.kata.pattern).stages)

    def start(self, cycle_id: str, run_store: RunStore, catalog: KataCatalog | None = None) -> list[Run]:
        """Activate a planning cycle, creating one run tree per bet.

        Every bet is validated before anything is written: if any bet lacks
        a usable kata, the cycle stays in ``planning`` and no run exists.
        """
        cycle = self.get(cycle_id)
        if cycle.state != "planning":
            raise StateTransitionError(
                f'Cycle "{cycle_id}" cannot be started from state "{cycle.state}"',
                current=cycle.state,
                requested="active",
            )

        plans: list[tuple[Bet, list[StageCategory]]] = []
        problems: list[str] = []
        for bet in cycle.bets:
            stages = self._stages_for(bet, catalog)
            if isinstance(stages, str):
                problems.append(stages)
            else:
                plans.append((bet, stages))
        if problems:
            raise ValidationError(
                f'Cycle "{cycle_id}" cannot start: {len(problems)} bet(s) are not ready',
                problems,
            )

        runs: list[Run] = []
        bets: list[Bet] = []
        for bet, stages in plans:
            run = run_store.create_run_tree(
                Run(
                    cycle_id=cycle.id,
                    bet_id=bet.id,
                    bet_prompt=bet.description,
                    kata_pattern=bet.kata.pattern if isinstance(bet.kata, NamedKata) else None,
                    stage_sequence=stages,
                )
            )
            runs.append(run)
            bets.append(bet.model_copy(update={"run_id": run.id}))
        self._save(cycle.model_copy(update={"bets": bets, "state": "active"}))
        logger.info("Started cycle %s with %d run(s)", cycle_id, len(runs))
        return runs

    def update_state(self, cycle_id: str, state: CycleState) -> Cycle:
        """Move a cycle forward along its lifecycle."""
        cycle = self.get(cycle_id)
        if state == cycle.state:
            return cycle
        if state not in CYCLE_TRANSITIONS.get(cycle.state, frozenset()):
            raise StateTransitionError(
                f'Cycle "{cycle_id}" cannot move from "{cycle.state}" to "{state}"',
                current=cycle.state,
                requested=state,
            )
        return self._save(cycle.model_copy(update={"state": state}))

    def restore_state(self, cycle_id: str, state: CycleState) -> Cycle:
        """Compensating write used to roll back a failed transition."""
        cycle = self.get(cycle_id)
        logger.warning('Restoring cycle %s state "%s" -> "%s"', cycle_id, cycle.state, state)
        return self._save(cycle.model_copy(update={"state": state}))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_budget_status(self, cycle_id: str, tokens_used: int = 0) -> BudgetStatus:
        cycle = self.get(cycle_id)
        percent, alert = calculate_utilization(cycle.budget, tokens_used)
        return BudgetStatus(
            cycle_id=cycle.id,
            budget=cycle.budget,
            tokens_used=tokens_used,
            utilization_percent=percent,
            alert_level=alert,
            appetite_remaining=appetite_remaining(cycle.bets, cycle.cooldown_reserve),
        )

    def generate_cooldown(self, cycle_id: str, tokens_used: int = 0) -> CooldownReport:
        cycle = self.get(cycle_id)
        percent, alert = calculate_utilization(cycle.budget, tokens_used)
        bets = [
            CooldownBetReport(
                bet_id=bet.id,
                description=bet.description,
                appetite=bet.appetite,
                outcome=bet.outcome,
                outcome_notes=bet.outcome_notes,
                pipeline_count=sum(1 for m in cycle.pipeline_mappings if m.bet_id == bet.id),
            )
            for bet in cycle.bets
        ]
        rate = completion_rate(cycle.bets)
        return CooldownReport(
            cycle_id=cycle.id,
            cycle_name=cycle.name,
            budget=cycle.budget,
            tokens_used=tokens_used,
            utilization_percent=percent,
            alert_level=alert,
            bets=bets,
            completion_rate=rate,
            summary=cooldown_summary(cycle, rate),
        )
