"""Assemble every engine component from one :class:`EngineConfig`.

Usage::

    engine = KataEngine.open(".")
    cycle = engine.cycles.create({"token_budget": 200_000}, name="October")
    ...
    engine.start_cycle(cycle.id)
    result = engine.pipeline.run_pipeline(["research", "build"], bet={"title": "Add export"})
    prepared = engine.cooldown.prepare(cycle.id)
"""

from __future__ import annotations

import logging
from pathlib import Path

from kata_engine.adapters import ExecutionAdapter
from kata_engine.catalog import KataCatalog
from kata_engine.config import EngineConfig, load_config
from kata_engine.cooldown import CooldownSession
from kata_engine.cycle_manager import CycleManager
from kata_engine.decisions import DecisionRegistry
from kata_engine.history import ExecutionHistory
from kata_engine.knowledge import KnowledgeStore
from kata_engine.pipeline.executor import StepFlavorExecutor
from kata_engine.pipeline.orchestrator import PipelineOrchestrator
from kata_engine.run_store import RunStore
from kata_engine.schemas import Run
from kata_engine.steps import FlavorRegistry, StepRegistry

logger = logging.getLogger(__name__)


class KataEngine:
    """Stores, registries, executor, pipeline and cooldown for one project.

    Parameters
    ----------
    config:
        Resolved configuration; every directory and tuning value is taken
        from here.
    adapter:
        Adapter instance overriding ``config.adapter``.
    """

    def __init__(self, config: EngineConfig, *, adapter: ExecutionAdapter | None = None) -> None:
        self.config = config
        self.catalog = KataCatalog(config.catalog_path)
        self.run_store = RunStore(config.runs_dir)
        self.cycles = CycleManager(config.cycles_dir, cooldown_reserve=config.cooldown_reserve_percent)
        self.knowledge = KnowledgeStore(config.knowledge_dir)
        self.history = ExecutionHistory(config.history_dir)
        self.steps = StepRegistry(config.steps_dir)
        self.flavors = FlavorRegistry(config.flavors_dir)
        self.decisions = DecisionRegistry(config.decisions_dir)
        self.executor = StepFlavorExecutor(
            self.steps,
            adapter or config.adapter,
            history=self.history,
            gate_timeout=config.gate_command_timeout_seconds,
            gate_output_limit=config.gate_output_limit,
            cwd=str(config.project_dir),
        )
        self.pipeline = PipelineOrchestrator(
            self.flavors,
            self.decisions,
            self.executor,
            catalog=self.catalog,
            max_parallel_flavors=config.max_parallel_flavors,
        )
        self.cooldown = CooldownSession(
            self.cycles,
            self.knowledge,
            self.history,
            synthesis_dir=config.synthesis_dir,
            synthesis_depth=config.synthesis_depth,
            run_store=self.run_store,
        )
        logger.debug("Engine ready at %s (adapter=%s)", config.kata_dir, self.executor.adapter.name)

    @classmethod
    def open(
        cls,
        project_dir: str | Path = ".",
        *,
        adapter: ExecutionAdapter | None = None,
        create_dirs: bool = True,
    ) -> KataEngine:
        """Load ``<project_dir>/.kata/config.yaml`` and build the engine."""
        config = load_config(project_dir)
        if create_dirs:
            config.ensure_dirs()
        return cls(config, adapter=adapter)

    def start_cycle(self, cycle_id: str) -> list[Run]:
        return self.cycles.start(cycle_id, self.run_store, self.catalog)
