"""Execution history and token-usage ledger.

Each stage execution appends one entry to ``history.jsonl``. The cooldown
session queries it to learn how many tokens a cycle actually consumed.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field

from kata_engine.schemas import new_id, utc_now
from kata_engine.stores import JsonlStore

logger = logging.getLogger(__name__)

HISTORY_FILE = "history.jsonl"


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cache_creation_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)


class ExecutionHistoryEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    pipeline_id: str
    stage_type: str
    stage_flavor: str | None = None
    stage_index: int = Field(default=0, ge=0)
    adapter: str
    token_usage: TokenUsage | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    artifact_names: list[str] = Field(default_factory=list)
    entry_gate_passed: bool | None = None
    exit_gate_passed: bool | None = None
    learning_ids: list[str] = Field(default_factory=list)
    cycle_id: str | None = None
    bet_id: str | None = None
    started_at: str = Field(default_factory=utc_now)
    completed_at: str = Field(default_factory=utc_now)


class ExecutionHistory:
    """Append-only ledger of stage executions."""

    def __init__(self, history_dir: str | Path) -> None:
        self.history_dir = Path(history_dir)
        self.jsonl_path = self.history_dir / HISTORY_FILE

    def record(self, entry: ExecutionHistoryEntry) -> ExecutionHistoryEntry:
        return JsonlStore.append(self.jsonl_path, entry, ExecutionHistoryEntry)

    def entries(
        self,
        *,
        cycle_id: str | None = None,
        bet_id: str | None = None,
        pipeline_id: str | None = None,
    ) -> list[ExecutionHistoryEntry]:
        entries = JsonlStore.read_all(self.jsonl_path, ExecutionHistoryEntry)
        if cycle_id is not None:
            entries = [e for e in entries if e.cycle_id == cycle_id]
        if bet_id is not None:
            entries = [e for e in entries if e.bet_id == bet_id]
        if pipeline_id is not None:
            entries = [e for e in entries if e.pipeline_id == pipeline_id]
        return entries

    @staticmethod
    def _sum_tokens(entries: list[ExecutionHistoryEntry]) -> int:
        return sum(e.token_usage.total for e in entries if e.token_usage is not None)

    def tokens_for_cycle(self, cycle_id: str) -> int:
        return self._sum_tokens(self.entries(cycle_id=cycle_id))

    def tokens_for_bet(self, bet_id: str) -> int:
        return self._sum_tokens(self.entries(bet_id=bet_id))
